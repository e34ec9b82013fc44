#!/usr/bin/env python3

import sys
import os
import argparse
import logging
import datetime
import dateutil.parser
import tempfile
import atexit
import shutil
import json
import socket

# Setup aws configuration
# Create ~/.aws/credentials
#[default]
#aws_access_key_id = YOUR_ACCESS_KEY
#aws_secret_access_key = YOUR_SECRET_KEY
# Create ~/.aws/config
#[default]
#region=us-west-2
# https://boto3.amazonaws.com/v1/documentation/api/latest/guide/quickstart.html
import boto3
import logzero

from boto3.exceptions import S3UploadFailedError
from io import StringIO
from logzero import logger

from chaosmongo.common import (
    DEFAULT_CHAOS_CHECKPOINT_DELAY,
    DEFAULT_CHAOS_DOCKER_HOST,
    DEFAULT_CHAOS_MEMBERS,
    DEFAULT_CHAOS_SSH_CONFIG_FILE,
    DEFAULT_CHAOS_URI,
    DEFAULT_CHAOS_WATCHDOG_TIMEOUT,
    remove_chaos_temp_dir,
)
from chaosmongo.control import DockerControlSurface
from chaosmongo.policy import InvalidPolicy, TimeoutPolicy, parse_milliseconds
from chaosmongo.scenarios import get_scenarios, result_to_dict, run_scenario

# Per-scenario parameters that may be overridden with --scenarios
SCENARIO_PARAMETERS = {
    'watchdog-timeout': float,
    'checkpoint-delay': float,
    'retries': int,
}


# Command-line Argument Parsing
def str2bool(v):
    if v.lower() in ('yes', 'true', 't', 'y', '1'):
        return True
    elif v.lower() in ('no', 'false', 'f', 'n', '0'):
        return False
    else:
        raise argparse.ArgumentTypeError(
            'Boolean value (yes, no, true, false, y, n, 1, or 0) expected.')


LOG_LEVEL_HELP = """Logging level.
                      [LOG-LEVEL]: notset, debug, info, warning, error, critical
                      Default: info"""
levels = {
    'notset': logging.NOTSET,
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL
}


def log_level(v):
    if v.lower() in levels.keys():
        return levels[v.lower()]
    else:
        raise argparse.ArgumentTypeError(
            'Expected one of the following: {}.'.format(
                 ', '.join(levels.keys())))


def milliseconds(v):
    try:
        return parse_milliseconds('timeout', v)
    except InvalidPolicy as e:
        raise argparse.ArgumentTypeError(str(e))


def scenario_dict(v):
    common_msg = "Invalid scenario dictionary."
    scenarios = {}
    try:
        scenarios = json.loads(v)
    except Exception as e:
        raise argparse.ArgumentTypeError('{} Reason: {}'.format(common_msg,
                                                                e))
    if not isinstance(scenarios, dict):
        raise argparse.ArgumentTypeError('{} Expected a JSON object.'.format(
            common_msg))

    ds = default_scenarios()
    invalid_scenarios = [scenario for scenario in scenarios
                         if scenario not in ds]
    if invalid_scenarios:
        message = "{} The following scenarios do " \
                  "not exist: {}".format(common_msg, invalid_scenarios)
        raise argparse.ArgumentTypeError(message)

    for scenario, parameters in scenarios.items():
        invalid_parameters = [parameter for parameter in parameters
                              if parameter not in SCENARIO_PARAMETERS]
        if invalid_parameters:
            message = "{} Scenario {} does not take parameters: {}".format(
                common_msg, scenario, invalid_parameters)
            raise argparse.ArgumentTypeError(message)
    return scenarios


def scenario_exclude_list(v):
    scenarios = v.split(',')
    ds = default_scenarios()
    invalid_scenarios = []
    for scenario in scenarios:
        if scenario not in ds:
             invalid_scenarios.append(scenario)

    if invalid_scenarios:
        message = "Invalid exclude list. The following scenarios do " \
                  "not exist: {}".format(invalid_scenarios)
        raise argparse.ArgumentTypeError(message)
    return scenarios


def program_args():
    parser = argparse.ArgumentParser()

    parser.add_argument('--job-id', help='The job ID. This will typically be ' \
                        'the Jenkins \'BUILD_TAG\'.', default='chaosmongo')

    parser.add_argument('--uri', help='Replica set connection string. ' \
                        'Default: {}'.format(DEFAULT_CHAOS_URI),
                        default=DEFAULT_CHAOS_URI)

    parser.add_argument('--members', help='Comma separated list of replica ' \
                        'set member container names, in declaration order. ' \
                        'Default: {}'.format(DEFAULT_CHAOS_MEMBERS),
                        default=DEFAULT_CHAOS_MEMBERS)

    parser.add_argument('--docker-host', help='SSH alias of the Docker host ' \
                        'running the members. Omit to use the local Docker.',
                        default=DEFAULT_CHAOS_DOCKER_HOST)

    parser.add_argument('--ssh-config-file', help='SSH config file used to ' \
                        'reach the Docker host. Default: {}'.format(
                            DEFAULT_CHAOS_SSH_CONFIG_FILE),
                        default=DEFAULT_CHAOS_SSH_CONFIG_FILE)

    parser.add_argument('--op-timeout-ms', type=milliseconds, help='Time ' \
                        'limit of each operation of a bounded scenario. ' \
                        'Overrides the OP_MAXTIME_MS environment variable.',
                        default=None)

    parser.add_argument('--wtimeout-ms', type=milliseconds, help='Write ' \
                        'concern timeout of a bounded scenario. Overrides ' \
                        'the W_TIMEOUT_MS environment variable.', default=None)

    parser.add_argument('--commit-timeout-ms', type=milliseconds, help='' \
                        'maxCommitTimeMS of a bounded scenario. Overrides ' \
                        'the MAX_COMMIT_MS environment variable.',
                        default=None)

    parser.add_argument('--watchdog-timeout', type=float, help='Seconds to ' \
                        'wait on a transaction before declaring it ' \
                        'suspended. Default: {}'.format(
                            DEFAULT_CHAOS_WATCHDOG_TIMEOUT),
                        default=DEFAULT_CHAOS_WATCHDOG_TIMEOUT)

    parser.add_argument('--s3bucket', help='The name of the S3 bucket in ' \
                        ' which to store scenario output (succeed or fail).'\
                        ' Default: None', nargs='?', const=None, default=None)

    parser.add_argument('--scenarios', type=scenario_dict, help='A JSON ' \
                        'document/string enumerating the scenarios to run ' \
                        'and the parameters to pass to each scenario. ' \
                        'Omitting this option results in all scenarios ' \
                        'being run with their default parameters. Example: ' \
                        '--scenarios=\'{{"hang-on-commit": ' \
                        '{{"watchdog-timeout": 30}}, "kill-member": {{}}}}\'. ' \
                        'Parameters: {}. Default: None'.format(
                            ', '.join(SCENARIO_PARAMETERS)), default=None)

    parser.add_argument('--exclude', type=scenario_exclude_list, help='A ' \
                        'comma separated list of scenarios to exclude. ' \
                        'Default: None', default=None)

    parser.add_argument('-c', '--cleanup', type=str2bool, help='Each call to ' \
                        'this script creates a temporary directory. Each ' \
                        'scenario executed by this script creates a ' \
                        'directory in the temporary directory. Each ' \
                        'scenario\'s directory will contain the results of ' \
                        'the scenario. These results are uploaded to an S3 ' \
                        'bucket if the bucket name is provided (see ' \
                        '--s3bucket argument). Should this temporary ' \
                        'directory be deleted when this script exits? ' \
                        'Default: Y Options (case insensitive): y, yes, true,' \
                        ' 1, n, no, false, 0', nargs='?', const='Y',
                        default='Y')

    parser.add_argument('-t', '--test', action='store_true',
                        default=False, help='Runs unit tests and exits.')

    parser.add_argument('-l', '--log-level', type=log_level, nargs='?',
                        const=logging.INFO, default=logging.INFO,
                        help=LOG_LEVEL_HELP)

    return parser


def parse_args(argv=None, parser=program_args()):
    return parser.parse_args(args=argv)


# Clean up anything that is created by this script
def clean_up(job_dir):
    logger.info("Deleting job dir %s...", job_dir)
    shutil.rmtree(job_dir, ignore_errors=True)
    remove_chaos_temp_dir()


def init(args):
    logzero.loglevel(args.log_level)
    logger.debug("Initializing...")
    logger.debug("args: %s", args)


def create_job_dir(build_tag):
    # Get ISO 8601 formatted datetime and create a job dirname
    job_dirname = "{}-{}".format(build_tag, datetime.datetime.now().isoformat())
    job_dir_path = tempfile.mkdtemp(prefix=job_dirname)
    logger.debug("Temporary Job Dir: {}".format(job_dir_path))
    return job_dir_path


def bounded_policy(args):
    return TimeoutPolicy.from_env(operation_timeout=args.op_timeout_ms,
                                  write_concern_timeout=args.wtimeout_ms,
                                  commit_timeout=args.commit_timeout_ms)


def run_scenario_in_job(job_dir, scenario, parameters, control, **kwargs):
    # Each scenario run by each job gets it's own directory.
    scenario_dir_path = os.path.join(job_dir, scenario)
    os.makedirs(scenario_dir_path, exist_ok=True)
    logger.debug("Created directory {} for" \
                 " scenario {}".format(scenario_dir_path, scenario))

    for parameter, value in parameters.items():
        kwargs[parameter.replace('-', '_')] = SCENARIO_PARAMETERS[parameter](
            value)

    result = run_scenario(get_scenarios()[scenario], control, **kwargs)

    # Write the scenario result to a "run.out" file in the scenario dir.
    # It will be useful during the analyze step.
    run_out_file = os.path.join(scenario_dir_path, "run.out")
    with open(run_out_file, 'w') as outfile:
        json.dump(result_to_dict(result), outfile, indent=4, default=str)

    # Write an entry to the "report" file in the job_dir
    report_file = os.path.join(job_dir, "report")
    with open(report_file, 'a') as report:
        report.write("{}: {} ({})\n".format(scenario, result.status,
                                            result.reason))
    return result


def default_scenarios():
    return {name: {} for name in get_scenarios()}


def run_scenarios(job_dir, control, scenarios=None, exclude=None, **kwargs):
    if not scenarios:
        scenarios = default_scenarios()
        logger.debug("Using default set of scenarios: %s",
                     ', '.join(list(scenarios.keys())))
    exclude = exclude or []

    results = []
    # Run each scenario iff it is not explicitly excluded.
    for scenario, parameters in scenarios.items():
        if scenario not in exclude:
            parameters_msg = ""
            if parameters:
                parameters_list = ', '.join(list(parameters.keys()))
                parameters_msg = " and overriding default " \
                                 "parameters: {}".format(parameters_list)
            logger.info("Running scenario %s%s", scenario, parameters_msg)
            results.append(run_scenario_in_job(job_dir, scenario, parameters,
                                               control, **kwargs))
        else:
            logger.debug("Skipping {} scenario. Found in" \
                         " exclude list.".format(scenario))
    return results


def upload(job_dir, s3bucket):
    # Upload results to S3
    s3 = boto3.client('s3')
    prefix = os.path.basename(job_dir)
    uploaded = True
    for root, dirs, files in os.walk(job_dir):
        for file in files:
            path = os.path.join(root, file)
            key = "/".join([prefix, os.path.relpath(path, job_dir)])
            logger.debug("Uploading %s to s3://%s/%s", path, s3bucket, key)
            try:
                s3.upload_file(path, s3bucket, key)
            except S3UploadFailedError as e:
                logger.error("Failed to upload %s to %s: %s", path, s3bucket,
                             e)
                uploaded = False
    return uploaded


def notify(output_location):
    logger.info("Chaos scenario results can be found in %s", output_location)


def process_results(job_dir, s3bucket, results):
    logger.debug("Processing scenario results located in {}".format(job_dir))
    for result in results:
        logger.info("%s: %s (%s)", result.scenario, result.status.upper(),
                    result.reason)

    # Upload results to S3?
    uploaded = False
    if s3bucket:
        uploaded = upload(job_dir, s3bucket)
    if uploaded:
        notify("S3 Bucket: {}".format(s3bucket))
    else:
        notify("Temporary Job Directory: {}:{}".format(socket.gethostname(),
                                                       job_dir))
    return uploaded


def main(args):
    try:
        init(args)
    except Exception:
        logger.error('Unable to initialize script')
        raise

    # Create a <JENKINS BUILD_TAG>-<ISO 8601 datetime> folder
    try:
        job_dir = create_job_dir(args.job_id)
    except OSError:
        logger.error('Unable to create job dir')
        raise
    logzero.logfile(os.path.join(job_dir, "chaosmongo.log"))

    # The cleanup argument is overriden to False if an s3bucket argument is not
    # given. Doing so preserves scenario results.
    if not args.s3bucket and args.cleanup:
        logger.info('An S3 bucket is not given. Cleanup of the Temporary Job' \
                    ' Dir will be skipped in order to preserve job results.')
        args.cleanup = False

    if args.cleanup:
        logger.info('Clean up will be done on exit.')
        atexit.register(clean_up, job_dir)
    else:
        logger.info('Clean up will NOT be done on exit.')

    try:
        policy = bounded_policy(args)
    except InvalidPolicy as e:
        logger.error("Invalid timeout configuration: %s", e)
        return 1

    control = DockerControlSurface(args.members, docker_host=args.docker_host,
                                   ssh_config_file=args.ssh_config_file)
    results = run_scenarios(job_dir, control, args.scenarios, args.exclude,
                            bounded_policy=policy, uri=args.uri,
                            watchdog_timeout=args.watchdog_timeout,
                            checkpoint_delay=DEFAULT_CHAOS_CHECKPOINT_DELAY)
    # Process results
    uploaded = process_results(job_dir, args.s3bucket, results)
    if args.cleanup and not uploaded:
        logger.info('Upload failed. Cleanup of the Temporary Job Dir will ' \
                    'be skipped in order to preserve job results.')
        atexit.unregister(clean_up)
    return int(not all(result.passed for result in results))


# **************
# *  UNIT TESTS !!!!! (use -t to run them)
# ***************
import unittest


def test(args, module='__main__'):
    t = unittest.main(argv=['chaosmongo_test'], module=module, exit=False,
                      verbosity=10)
    return int(not t.result.wasSuccessful())


class TestRun(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        sys.stderr = StringIO()
        logzero.loglevel(logging.CRITICAL + 1)

    @classmethod
    def tearDownClass(cls):
        sys.stderr = sys.__stderr__

    def test_arg_log_level(self):
        for k, v in levels.items():
            test_args = parse_args(['-l', k])
            self.assertEqual(test_args.log_level, v)

        test_args = parse_args(['-l'])
        self.assertEqual(test_args.log_level, logging.INFO,
                         msg='Invalid const level')
        test_args = parse_args([])
        self.assertEqual(test_args.log_level, logging.INFO,
                         msg='Invalid default level')

    def test_timeout_knobs(self):
        test_args = parse_args(['--op-timeout-ms', '500',
                                '--wtimeout-ms', '700'])
        self.assertEqual(test_args.op_timeout_ms, 500)
        self.assertEqual(test_args.wtimeout_ms, 700)
        self.assertIsNone(test_args.commit_timeout_ms)

        policy = bounded_policy(test_args)
        self.assertEqual(policy.operation_timeout, 500)
        self.assertEqual(policy.write_concern_timeout, 700)
        self.assertFalse(policy.is_unbounded)

        # argparse exits if the type raises, so call it directly
        with self.assertRaises(argparse.ArgumentTypeError):
            milliseconds('-1')
        with self.assertRaises(argparse.ArgumentTypeError):
            milliseconds('soon')

    def test_scenarios_dict(self):
        scenarios_dict_sample = {
            'hang-on-commit': {
                'watchdog-timeout': 30
            }
        }
        test_args = parse_args(['--scenarios',
                                json.dumps(scenarios_dict_sample)])
        self.assertEqual(test_args.scenarios, scenarios_dict_sample)

        with self.assertRaises(argparse.ArgumentTypeError):
            scenario_dict(json.dumps({'no-such-scenario': {}}))
        with self.assertRaises(argparse.ArgumentTypeError):
            scenario_dict(json.dumps({'kill-member': {'color': 'red'}}))

    def test_scenario_exclude_list(self):
        defaults = default_scenarios().keys()
        all_scenarios = ','.join(defaults)
        test_args = parse_args(['--exclude', all_scenarios])
        self.assertEqual(test_args.exclude, list(defaults))

    def test_create_job_dir(self):
        build_tag = "foo"
        delimiter = "-"
        job_dir_path = create_job_dir(build_tag)
        self.assertTrue(os.path.exists(job_dir_path))

        try:
            tokens = os.path.basename(job_dir_path).split(delimiter)
            create_datetime = delimiter.join(tokens[1:])
            create_datetime = create_datetime[0:-8]
            create_datetime = dateutil.parser.parse(create_datetime)
        except Exception as error:
            self.fail("Failed to extract and parse ISO 8601 datetime from" \
                      " temporary directory created by create_job_dir.")
        finally:
            shutil.rmtree(job_dir_path, ignore_errors=True)

        now_datetime = datetime.datetime.now()
        self.assertAlmostEqual(create_datetime, now_datetime,
                               delta=datetime.timedelta(seconds=5))

    def test_default_scenarios(self):
        scenarios = default_scenarios()
        self.assertEqual(type(scenarios), dict)
        for name in ('lose-majority', 'stepdown', 'kill-member',
                     'hang-on-write', 'hang-on-commit'):
            self.assertIn(name, scenarios)
        for k, v in scenarios.items():
            self.assertEqual(v, {})

    def test_run_scenarios_exclude(self):
        job_dir_path = create_job_dir("bar")
        scenarios = default_scenarios()
        exclude_list = list(scenarios.keys())
        # Skip all default scenarios. The control surface is never used.
        results = run_scenarios(job_dir_path, None, exclude=exclude_list)
        self.assertEqual(results, [])
        # Expect an empty temp dir
        if (os.path.exists(job_dir_path) and
            os.path.isdir(job_dir_path)):
            if os.listdir(job_dir_path):
                self.fail("All scenarios should have been " \
                          "skipped. Expected an empty directory, but " \
                          "found a non-empty directory.")
        else:
            self.fail("Job dir {} either does not exist or is not a " \
                      "directory")
        shutil.rmtree(job_dir_path, ignore_errors=True)


if __name__ == '__main__':
    arguments = parse_args()

    if arguments.test:
        exit_code = test(arguments)
        sys.exit(exit_code)
    else:
        sys.exit(main(arguments))
