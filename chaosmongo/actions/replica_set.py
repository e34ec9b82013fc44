import json
from chaosmongo.common import *
from chaosmongo.execute.execute import get_executor
from chaosmongo.probes.member import wait_healthy
from chaosmongo.probes.primary import get_primary
from logzero import logger
from time import sleep
from typing import List, Union


def init_replica_set(members: Union[str, List[str]] = None,
    replica_set: str = DEFAULT_CHAOS_REPLICA_SET,
    port: int = DEFAULT_CHAOS_MEMBER_PORT,
    election_wait: Union[str,int] = 5,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Wait for every member to answer a ping and initiate the replica set.

    The first member gets priority 1 and every other member 0.5, so the first
    member is elected primary while it is healthy.

    :param members: Comma separated string or list of member names.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_MEMBERS)
    :type members: Union[str, List[str]]
    :param replica_set: Replica set name.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_REPLICA_SET)
    :type replica_set: str
    :param port: mongod port inside the Docker network.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_MEMBER_PORT)
    :type port: int
    :param election_wait: Seconds to wait for the first election.
        Optional. (Default: 5)
    :type election_wait: Union[str,int]
    :return: bool
    """
    members = get_members(members)
    logger.info("Waiting for members to be ready...")
    for member in members:
        if not wait_healthy(member, docker_host=docker_host,
                            ssh_config_file=ssh_config_file):
            logger.error("Failed to connect to %s", member)
            return False
        logger.debug("%s is ready", member)

    config = {
        '_id': replica_set,
        'members': [
            {'_id': index, 'host': "{}:{}".format(member, port),
             'priority': 1 if index == 0 else 0.5}
            for index, member in enumerate(members)
        ]
    }
    logger.info("All members are ready. Initiating replica set %s...",
                replica_set)
    executor = get_executor(docker_host, ssh_config_file)
    command = "docker exec {} mongosh --quiet --eval 'rs.initiate({})'".format(
        members[0], json.dumps(config))
    result = executor.execute(docker_host, command,
                              timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT)
    if result.return_code != 0:
        logger.error("Failed to initiate replica set %s: %s", replica_set,
                     result.stderr.strip())
        return False

    logger.info("Waiting for replica set to elect primary...")
    sleep(int(election_wait))
    primary = get_primary(members, docker_host=docker_host,
                          ssh_config_file=ssh_config_file)
    if not primary:
        logger.error("Replica set %s has no primary", replica_set)
        return False
    logger.info("Replica set initialization complete! Primary: %s", primary)
    return True


def stepdown_primary(members: Union[str, List[str]] = None,
    seconds: Union[str,int] = DEFAULT_CHAOS_STEPDOWN_SECONDS,
    tries: Union[str,int] = DEFAULT_CHAOS_HEALTH_CHECK_TRIES,
    sleep_between_checks: Union[str,int,float] = DEFAULT_CHAOS_HEALTH_CHECK_SLEEP,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Force the current primary to step down and stay ineligible for `seconds`,
    then wait until another member has been elected primary.

    The primary closes client connections while stepping down, so the
    stepdown command itself may report an error. That does not fail this
    action. Only the election result counts: the action fails if there is no
    primary to step down or if no other member becomes primary within
    `tries` checks.

    :param members: Comma separated string or list of member names.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_MEMBERS)
    :type members: Union[str, List[str]]
    :param seconds: Seconds the former primary may not be re-elected.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_STEPDOWN_SECONDS)
    :type seconds: Union[str,int]
    :param tries: How many times to look for the new primary.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_HEALTH_CHECK_TRIES)
    :type tries: Union[str,int]
    :param sleep_between_checks: Seconds to sleep between checks.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_HEALTH_CHECK_SLEEP)
    :type sleep_between_checks: Union[str,int,float]
    :return: bool
    """
    logger.info("Finding current primary...")
    primary = get_primary(members, docker_host=docker_host,
                          ssh_config_file=ssh_config_file)
    if not primary:
        logger.error("Could not find primary member")
        return False

    logger.info("Forcing primary %s to step down for %s seconds...", primary,
                seconds)
    executor = get_executor(docker_host, ssh_config_file)
    command = "docker exec {} mongosh --quiet --eval " \
              "'db.adminCommand({{replSetStepDown: {}}})'".format(primary,
                                                                 int(seconds))
    result = executor.execute(docker_host, command,
                              timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT)
    if result.return_code != 0:
        logger.info("replSetStepDown on %s returned %d: %s", primary,
                    result.return_code, result.stderr.strip())

    logger.info("Waiting for a new primary...")
    for attempt in range(1, int(tries) + 1):
        new_primary = get_primary(members, docker_host=docker_host,
                                  ssh_config_file=ssh_config_file)
        if new_primary and new_primary != primary:
            logger.info("Primary moved from %s to %s", primary, new_primary)
            return True
        logger.debug("Primary is %s after %d check(s)", new_primary, attempt)
        if attempt < int(tries):
            sleep(float(sleep_between_checks))
    logger.error("%s did not step down: no other member became primary",
                 primary)
    return False
