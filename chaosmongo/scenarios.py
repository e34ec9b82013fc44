"""
Named scenarios.

A scenario pairs a timeout policy with an operation spec and a fault schedule
keyed by checkpoint, and states what the run is expected to end in:

- committed: the transaction must commit (the classifier is not involved)
- classified: the transaction must fail with one of the listed categories
- suspended: the run must still be blocked when the watchdog gives up,
  optionally at a specific checkpoint

A run moves through CONFIGURING -> RUNNING -> RESOLVED or SUSPENDED.
SUSPENDED is only ever a pass for a scenario whose policy is unbounded. A
bounded run that suspends is the most severe failure a scenario can report.
"""
import threading

from collections import namedtuple
from enum import Enum
from time import monotonic, sleep

from logzero import logger

from chaosmongo import run
from chaosmongo.classifier import (
    FailureCategory,
    RecoveryAction,
    classify,
    log_classified_failure,
)
from chaosmongo.common import (
    DEFAULT_CHAOS_CHECKPOINT_DELAY,
    DEFAULT_CHAOS_COLLECTION,
    DEFAULT_CHAOS_DATABASE,
    DEFAULT_CHAOS_URI,
    DEFAULT_CHAOS_WATCHDOG_TIMEOUT,
    MemberRole,
)
from chaosmongo.control import ControlSurfaceError
from chaosmongo.policy import InvalidPolicy, TimeoutPolicy
from chaosmongo.transaction import (
    BEFORE_COMMIT,
    DURING_COMMIT,
    AbortedWithError,
    Committed,
    Operation,
    OperationKind,
    StillPending,
    TimedOut,
    before_op,
    create_client,
    generate_run_id,
    insert_then_update,
    inserts,
    outcome_to_dict,
    run_transaction,
)

from typing import Callable, Dict, Iterable, List, Tuple

# Member availability is shared by every scenario. Scenarios that change it
# must not overlap.
_availability_lock = threading.Lock()


class ScenarioState(Enum):
    CONFIGURING = 'Configuring'
    RUNNING = 'Running'
    RESOLVED = 'Resolved'
    SUSPENDED = 'Suspended'


class ExpectedOutcome(Enum):
    COMMITTED = 'committed'
    CLASSIFIED = 'classified'
    SUSPENDED = 'suspended'


class PolicyKind(Enum):
    BOUNDED = 'bounded'
    UNBOUNDED = 'unbounded'


# action: stop, kill, pause, partition or stepdown. count: how many
# secondaries to target (ignored by stepdown).
FaultStep = namedtuple('FaultStep', ['action', 'count'])
FaultStep.__new__.__defaults__ = (1,)

Expectation = namedtuple('Expectation', ['outcome', 'categories',
                                         'suspended_at'])
Expectation.__new__.__defaults__ = (frozenset(), None)

Scenario = namedtuple('Scenario', ['name', 'description', 'policy',
                                   'operations', 'injections', 'expected'])

ScenarioResult = namedtuple('ScenarioResult', ['scenario', 'run_id', 'state',
                                               'passed', 'status', 'reason',
                                               'outcome', 'classified',
                                               'checkpoints', 'injected',
                                               'attempts', 'elapsed'])


def _duplicate_inserts() -> List[Operation]:
    return [Operation(OperationKind.INSERT, {'operationNumber': 1}),
            Operation(OperationKind.INSERT, {'operationNumber': 1})]


SCENARIOS = [
    Scenario('lose-majority',
             'Stop two secondaries before the last operation. The commit '
             'cannot reach a majority within wtimeout.',
             PolicyKind.BOUNDED, lambda: inserts(2),
             {before_op(2): [FaultStep('stop', 2)]},
             Expectation(ExpectedOutcome.CLASSIFIED,
                         frozenset([FailureCategory.WRITE_CONCERN_TIMEOUT]))),
    Scenario('stepdown',
             'Force the primary to step down between the two operations.',
             PolicyKind.BOUNDED, insert_then_update,
             {before_op(2): [FaultStep('stepdown')]},
             Expectation(ExpectedOutcome.CLASSIFIED,
                         frozenset([FailureCategory.TOPOLOGY_CHANGE,
                                    FailureCategory.RETRYABLE]))),
    Scenario('kill-member',
             'Kill one secondary mid-run. The majority is intact and the '
             'transaction commits.',
             PolicyKind.BOUNDED, insert_then_update,
             {before_op(2): [FaultStep('kill', 1)]},
             Expectation(ExpectedOutcome.COMMITTED)),
    Scenario('hang-on-write',
             'Partition two secondaries between two operations with no '
             'timeouts configured.',
             PolicyKind.UNBOUNDED, lambda: inserts(2),
             {before_op(2): [FaultStep('partition', 2)]},
             Expectation(ExpectedOutcome.SUSPENDED)),
    Scenario('hang-on-commit',
             'Pause two secondaries after the last operation, before commit, '
             'with no timeouts configured. The commit never returns.',
             PolicyKind.UNBOUNDED, lambda: inserts(3),
             {BEFORE_COMMIT: [FaultStep('pause', 2)]},
             Expectation(ExpectedOutcome.SUSPENDED,
                         suspended_at=DURING_COMMIT)),
    Scenario('hang-partition-on-commit',
             'Partition two secondaries before commit with no timeouts '
             'configured. The commit never returns.',
             PolicyKind.UNBOUNDED, lambda: inserts(3),
             {BEFORE_COMMIT: [FaultStep('partition', 2)]},
             Expectation(ExpectedOutcome.SUSPENDED,
                         suspended_at=DURING_COMMIT)),
    Scenario('partition-bounded',
             'Partition two secondaries before commit with bounded timeouts. '
             'The commit fails fast.',
             PolicyKind.BOUNDED, lambda: inserts(3),
             {BEFORE_COMMIT: [FaultStep('partition', 2)]},
             Expectation(ExpectedOutcome.CLASSIFIED,
                         frozenset([FailureCategory.WRITE_CONCERN_TIMEOUT,
                                    FailureCategory.COMMIT_TIMEOUT]))),
    Scenario('duplicate-key',
             'Insert the same document identity twice. The unique index '
             'rejects the second insert.',
             PolicyKind.BOUNDED, _duplicate_inserts, {},
             Expectation(ExpectedOutcome.CLASSIFIED,
                         frozenset([FailureCategory.UNCLASSIFIED]))),
]


def get_scenarios() -> Dict[str, Scenario]:
    return {scenario.name: scenario for scenario in SCENARIOS}


def collection_for(scenario: Scenario,
                   collection: str = DEFAULT_CHAOS_COLLECTION) -> str:
    """Each scenario writes to its own collection."""
    return "{}_{}".format(collection, scenario.name.replace('-', '_'))


def resolve_policy(scenario: Scenario,
                   bounded_policy: TimeoutPolicy = None) -> TimeoutPolicy:
    """
    The policy a scenario runs under. Bounded scenarios use the caller's
    bounded policy (from environment/command line) when one is given.
    """
    if scenario.policy is PolicyKind.UNBOUNDED:
        return TimeoutPolicy.unbounded()
    if scenario.policy is PolicyKind.BOUNDED:
        if bounded_policy is None:
            return TimeoutPolicy.bounded()
        if bounded_policy.is_unbounded:
            raise InvalidPolicy("Scenario {} requires a bounded policy".format(
                scenario.name))
        return bounded_policy
    if isinstance(scenario.policy, TimeoutPolicy):
        return scenario.policy
    raise InvalidPolicy("Scenario {} does not declare a policy".format(
        scenario.name))


def topology_is_valid(topology) -> bool:
    """Every member reachable and exactly one primary."""
    primaries = [state for state in topology
                 if state.role is MemberRole.PRIMARY]
    return bool(topology) and len(primaries) == 1 and \
        all(state.reachable for state in topology)


def _inject(control, step: FaultStep) -> Tuple[List[str], Dict[str, str]]:
    """
    Apply one fault step. Returns the targeted members and the fault the
    control surface actually applied to each of them.
    """
    logger.info("Injecting fault: %s x%d", step.action, step.count)
    if step.action == 'stepdown':
        control.stepdown()
        return [], {}
    targets = control.secondaries()[:step.count]
    if len(targets) < step.count:
        raise ControlSurfaceError("Need {} secondaries to {}, found {}".format(
            step.count, step.action, targets))
    if step.action == 'partition':
        applied = dict(control.partition(*targets) or {})
    elif step.action in ('stop', 'kill', 'pause'):
        applied = {}
        for member in targets:
            applied[member] = getattr(control, step.action)(member)
    else:
        raise ControlSurfaceError("Unknown fault action {}".format(
            step.action))
    applied = {member: applied.get(member) or step.action
               for member in targets}
    substituted = {member: action for member, action in applied.items()
                   if action != step.action}
    if substituted:
        logger.warning("Requested %s but applied %s", step.action,
                       substituted)
    return targets, applied


class _CheckpointHandler(object):
    """
    Records every checkpoint the executor reaches and injects the faults
    scheduled for it.
    """

    def __init__(self, control, injections, delay=0):
        self.control = control
        self.injections = injections or {}
        self.delay = delay
        self.reached = []
        self.injected = []
        self.errors = []

    def __call__(self, checkpoint):
        self.reached.append(checkpoint)
        steps = self.injections.get(checkpoint, [])
        if not steps:
            return
        try:
            for step in steps:
                targets, applied = _inject(self.control, step)
                self.injected.append({'checkpoint': checkpoint,
                                      'action': step.action,
                                      'members': targets,
                                      'applied': applied})
        except Exception as e:
            self.errors.append(e)
            raise
        if self.delay:
            logger.info("Proceeding in %s seconds...", self.delay)
            sleep(self.delay)

    @property
    def last_checkpoint(self):
        if self.reached:
            return self.reached[-1]
        return None


def _evaluate(scenario, policy, state, outcome, classified):
    """Compare an observed run with the scenario's expectation. Returns
    (passed, reason)."""
    expected = scenario.expected
    if state is ScenarioState.SUSPENDED:
        if not policy.is_unbounded:
            return False, "bounded run did not terminate"
        if expected.outcome is not ExpectedOutcome.SUSPENDED:
            return False, "expected {} but the run suspended".format(
                expected.outcome.value)
        if expected.suspended_at and \
                outcome.last_checkpoint != expected.suspended_at:
            return False, "suspended at {} instead of {}".format(
                outcome.last_checkpoint, expected.suspended_at)
        return True, "suspended as expected"

    if isinstance(outcome, Committed):
        if expected.outcome is ExpectedOutcome.COMMITTED:
            return True, "committed as expected"
        return False, "expected {} but the transaction committed".format(
            expected.outcome.value)

    if expected.outcome is ExpectedOutcome.CLASSIFIED and \
            classified.category in expected.categories:
        return True, "{} as expected".format(classified.category.value)
    if expected.outcome is ExpectedOutcome.CLASSIFIED:
        wanted = " or ".join(sorted(category.value
                                    for category in expected.categories))
        return False, "expected {} but got {}".format(
            wanted, classified.category.value)
    return False, "expected {} but the transaction failed with {}".format(
        expected.outcome.value, classified.category.value)


def _restore(control) -> bool:
    try:
        control.restore_all()
    except ControlSurfaceError as e:
        logger.error("Failed to restore members: %s", e)
        return False
    return True


def run_scenario(scenario: Scenario, control,
                 client_factory: Callable = None,
                 bounded_policy: TimeoutPolicy = None,
                 uri: str = DEFAULT_CHAOS_URI,
                 database: str = DEFAULT_CHAOS_DATABASE,
                 collection: str = DEFAULT_CHAOS_COLLECTION,
                 watchdog_timeout: float = DEFAULT_CHAOS_WATCHDOG_TIMEOUT,
                 checkpoint_delay: float = DEFAULT_CHAOS_CHECKPOINT_DELAY,
                 retries: int = 0,
                 validate_topology: bool = True) -> ScenarioResult:
    """
    Run one scenario end to end and report whether the observed behavior
    matches the expected one.

    The transaction runs under a watchdog of `watchdog_timeout` seconds. Faults
    are injected through `control` at the scenario's checkpoints. Disrupted
    members are restored afterwards whether the scenario passed or not.

    The topology check, the run and the restore all hold one module level
    lock. Scenarios started from several threads therefore see the replica
    set one at a time and never validate against another scenario's faults.

    When the classifier recommends RetryTransaction and `retries` allows it,
    the transaction is run again on a brand-new session (and without faults)
    after the members are restored. The first attempt decides pass/fail;
    later attempts are recorded in `attempts`.

    :param scenario: The scenario to run. Required.
    :param control: A chaosmongo.control.ControlSurface. Required.
    :param client_factory: Callable taking a TimeoutPolicy and returning a
        client. Optional. (Default: chaosmongo.transaction.create_client for
        `uri`)
    :param bounded_policy: Policy for bounded scenarios.
        Optional. (Default: TimeoutPolicy.bounded())
    :return: ScenarioResult
    """
    policy = resolve_policy(scenario, bounded_policy)
    if client_factory is None:
        def client_factory(policy):
            return create_client(policy, uri)
    run_id = generate_run_id(scenario.name)
    target_collection = collection_for(scenario, collection)
    state = ScenarioState.CONFIGURING
    start = monotonic()

    logger.info("=" * 60)
    logger.info("Scenario %s (run %s)", scenario.name, run_id)
    logger.info(scenario.description)
    logger.info("=" * 60)

    def _result(state, passed, status, reason, outcome=None, classified=None,
                handler=None, attempts=()):
        return ScenarioResult(scenario.name, run_id, state, passed, status,
                              reason, outcome, classified,
                              list(handler.reached) if handler else [],
                              list(handler.injected) if handler else [],
                              list(attempts), monotonic() - start)

    # The gate reads member availability, so it runs under the same lock as
    # the scenarios that change it.
    lock = _availability_lock \
        if scenario.injections or validate_topology else None
    handler = _CheckpointHandler(control, scenario.injections,
                                 checkpoint_delay)
    if lock:
        lock.acquire()
    try:
        if validate_topology:
            topology = control.current_topology()
            if not topology_is_valid(topology):
                reason = "replica set is not healthy: {}".format(
                    ", ".join("{}={}".format(member.name, member.role.value)
                              for member in topology))
                logger.error("Scenario %s is invalid: %s", scenario.name,
                             reason)
                return _result(state, False, 'invalid', reason)

        restored = None
        try:
            client = client_factory(policy)
            state = ScenarioState.RUNNING
            finished, outcome = run(run_transaction, watchdog_timeout,
                                    client, policy, scenario.operations(),
                                    run_id=run_id, database=database,
                                    collection=target_collection,
                                    checkpoint=handler)
            if not finished:
                state = ScenarioState.SUSPENDED
                outcome = StillPending(run_id, handler.last_checkpoint,
                                       monotonic() - start)
                logger.info("Run %s is still pending at %s after %s seconds",
                            run_id, handler.last_checkpoint, watchdog_timeout)
                # The blocked call keeps its client. Closing it here would
                # interrupt the very call under observation.
            else:
                state = ScenarioState.RESOLVED
                client.close()

            classified = None
            if isinstance(outcome, (AbortedWithError, TimedOut)):
                classified = classify(outcome.failure)
                log_classified_failure(classified)

            attempts = [outcome_to_dict(outcome)]
            if handler.errors:
                passed, reason = False, "fault injection failed: {}".format(
                    handler.errors[0])
            else:
                passed, reason = _evaluate(scenario, policy, state, outcome,
                                           classified)

            restored = _restore(control)
            if classified is not None and retries and restored and \
                    classified.recommended_action is \
                    RecoveryAction.RETRY_TRANSACTION:
                attempts.extend(_retry(scenario, policy, client_factory,
                                       retries, run_id, database,
                                       target_collection, watchdog_timeout))
            if not restored and passed:
                passed, reason = False, "{}, but members could not be " \
                                        "restored".format(reason)
        finally:
            if restored is None:
                _restore(control)
    finally:
        if lock:
            lock.release()

    status = 'passed' if passed else 'failed'
    logger.info("Scenario %s %s: %s", scenario.name, status.upper(), reason)
    return _result(state, passed, status, reason, outcome, classified,
                   handler, attempts)


def _retry(scenario, policy, client_factory, retries, run_id, database,
           collection, watchdog_timeout) -> List[Dict]:
    attempts = []
    for attempt in range(1, int(retries) + 1):
        logger.info("Retrying transaction %s on a new session (attempt %d "
                    "of %d)", run_id, attempt, retries)
        client = client_factory(policy)
        finished, outcome = run(run_transaction, watchdog_timeout, client,
                                policy, scenario.operations(), run_id=run_id,
                                database=database, collection=collection)
        if not finished:
            attempts.append(outcome_to_dict(StillPending(run_id, None,
                                                         watchdog_timeout)))
            break
        client.close()
        attempts.append(outcome_to_dict(outcome))
        if not isinstance(outcome, (AbortedWithError, TimedOut)):
            break
        if classify(outcome.failure).recommended_action is not \
                RecoveryAction.RETRY_TRANSACTION:
            break
    return attempts


def run_scenarios(names: Iterable[str], control, **kwargs) -> List[ScenarioResult]:
    """
    Run scenarios one after the other. Unknown names raise KeyError before
    anything runs.
    """
    scenarios = get_scenarios()
    selected = [scenarios[name] for name in names]
    return [run_scenario(scenario, control, **kwargs)
            for scenario in selected]


def result_to_dict(result: ScenarioResult) -> Dict:
    rtn = result._asdict()
    rtn['state'] = result.state.value
    rtn['outcome'] = outcome_to_dict(result.outcome) \
        if result.outcome is not None else None
    if result.classified is not None:
        rtn['classified'] = {
            'category': result.classified.category.value,
            'recommended_action': result.classified.recommended_action.value,
            'commit_ambiguous': result.classified.commit_ambiguous,
            'raw': result.classified.raw.to_dict(),
        }
    return rtn
