import pymongo

from collections import namedtuple
from datetime import datetime
from enum import Enum
from time import monotonic

from logzero import logger
from pymongo import ASCENDING, MongoClient
from pymongo.errors import (
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from chaosmongo.classifier import RawFailure
from chaosmongo.common import (
    DEFAULT_CHAOS_COLLECTION,
    DEFAULT_CHAOS_DATABASE,
    DEFAULT_CHAOS_URI,
)
from chaosmongo.policy import InvalidPolicy, TimeoutPolicy

from typing import Callable, Dict, Iterable, List, Optional

# Checkpoints, in the order they are reached. 'before-op-<n>' is reached once
# per operation (1-based), before the operation is issued.
BEFORE_OP = 'before-op-{}'
BEFORE_COMMIT = 'after-last-op-before-commit'
DURING_COMMIT = 'during-commit'


def before_op(operation_number: int) -> str:
    return BEFORE_OP.format(operation_number)


class OperationKind(Enum):
    INSERT = 'insert'
    UPDATE = 'update'


Operation = namedtuple('Operation', ['kind', 'payload'])
Operation.__new__.__defaults__ = (None,)

RunStats = namedtuple('RunStats', ['operations', 'inserted', 'modified',
                                   'commit_latency', 'elapsed'])

# Run outcomes. Exactly one is produced per run.
Committed = namedtuple('Committed', ['run_id', 'stats'])
AbortedWithError = namedtuple('AbortedWithError', ['run_id', 'failure',
                                                   'stage', 'elapsed'])
TimedOut = namedtuple('TimedOut', ['run_id', 'elapsed', 'failure', 'stage'])
StillPending = namedtuple('StillPending', ['run_id', 'last_checkpoint',
                                           'elapsed'])

CheckpointCallback = Callable[[str], None]


def inserts(count: int) -> List[Operation]:
    """An operation spec of `count` inserts."""
    return [Operation(OperationKind.INSERT) for _ in range(count)]


def insert_then_update() -> List[Operation]:
    """Insert one document and update it in the same transaction."""
    return [Operation(OperationKind.INSERT),
            Operation(OperationKind.UPDATE, {'value': 'updated'})]


def generate_run_id(prefix: str = 'test') -> str:
    """Time based run identifier, unique per run."""
    return "{}-{}".format(prefix, datetime.now().strftime("%Y%m%dT%H%M%S%f"))


def create_client(policy: TimeoutPolicy, uri: str = DEFAULT_CHAOS_URI,
                  **kwargs) -> MongoClient:
    """
    Create a replica set client whose socket and server selection timeouts
    come from the policy.
    """
    if not isinstance(policy, TimeoutPolicy):
        raise InvalidPolicy("A TimeoutPolicy is required, got {!r}".format(
            policy))
    options = policy.client_options()
    options.update(kwargs)
    logger.debug("Creating client for %s with options %s", uri, options)
    return MongoClient(uri, **options)


def outcome_to_dict(outcome) -> Dict:
    rtn = {'outcome': type(outcome).__name__}
    for field, value in outcome._asdict().items():
        if isinstance(value, RawFailure):
            value = value.to_dict()
        elif isinstance(value, RunStats):
            value = value._asdict()
        rtn[field] = value
    return rtn


def _ensure_unique_index(collection) -> None:
    try:
        collection.create_index([('testId', ASCENDING),
                                 ('operationNumber', ASCENDING)],
                                unique=True)
        logger.debug("Ensured unique index on testId/operationNumber")
    except PyMongoError as e:
        # Index might already exist with other options
        logger.info("Could not ensure unique index on %s: %s",
                    collection.name, e)


def _apply(collection, session, run_id, operation_number, operation):
    """Issue a single operation. Returns (inserted, modified)."""
    payload = dict(operation.payload or {})
    if operation.kind is OperationKind.INSERT:
        document = {
            'testId': run_id,
            'operationNumber': operation_number,
            'value': 'operation-{}'.format(operation_number),
            'timestamp': datetime.now(),
        }
        document.update(payload)
        collection.insert_one(document, session=session)
        return 1, 0
    elif operation.kind is OperationKind.UPDATE:
        payload['updatedAt'] = datetime.now()
        result = collection.update_one({'testId': run_id},
                                       {'$set': payload}, session=session)
        return 0, result.modified_count
    raise ValueError("Unsupported operation kind {!r}".format(operation.kind))


def _abort_once(session) -> None:
    if not session.in_transaction:
        return
    try:
        logger.info("Attempting to abort transaction...")
        session.abort_transaction()
        logger.info("Transaction aborted")
    except PyMongoError as e:
        logger.error("Failed to abort transaction: %s", e)


def run_transaction(client, policy: TimeoutPolicy,
                    operations: Iterable[Operation], run_id: str = None,
                    database: str = DEFAULT_CHAOS_DATABASE,
                    collection: str = DEFAULT_CHAOS_COLLECTION,
                    checkpoint: Optional[CheckpointCallback] = None,
                    ensure_index: bool = True):
    """
    Run `operations` as one transaction and report exactly one outcome.

    The transaction uses majority read concern and a majority write concern
    whose wtimeout, like maxCommitTimeMS and each operation's time limit,
    comes from `policy`. An UNBOUNDED knob is passed through as "no limit":
    nothing here puts a ceiling on a wait the policy leaves unbounded. A
    caller that needs bounded wall clock time must wrap the call in a watchdog
    (see chaosmongo.run).

    `checkpoint` is called with 'before-op-<n>' before each operation,
    'after-last-op-before-commit' after the last operation and
    'during-commit' right before the commit is issued. It runs
    synchronously: fault injection done there has taken effect before the
    run continues.

    On failure the transaction is aborted once (an abort failure is logged
    and does not replace the original failure).

    :return: Committed, AbortedWithError or TimedOut
    """
    if not isinstance(policy, TimeoutPolicy):
        raise InvalidPolicy("A TimeoutPolicy is required, got {!r}".format(
            policy))
    if run_id is None:
        run_id = generate_run_id()
    operations = list(operations)
    coll = client[database][collection]

    logger.info("Running transaction %s with %d operation(s)", run_id,
                len(operations))
    logger.info("Timeout policy: %s", policy)

    def _checkpoint(name):
        if checkpoint is not None:
            logger.debug("Checkpoint %s", name)
            checkpoint(name)

    if ensure_index:
        _ensure_unique_index(coll)

    start = monotonic()
    stage = 'start'
    inserted = 0
    modified = 0
    commit_latency = None
    session = client.start_session()
    try:
        session.start_transaction(
            read_concern=policy.read_concern(),
            write_concern=policy.write_concern(),
            max_commit_time_ms=policy.max_commit_time_ms())
        logger.info("Transaction started")

        operation_timeout = policy.operation_timeout_seconds()
        for number, operation in enumerate(operations, 1):
            _checkpoint(before_op(number))
            stage = 'operation-{}'.format(number)
            logger.info("Operation %d: %s (time limit: %s)", number,
                        operation.kind.value, policy.operation_timeout)
            if operation_timeout is None:
                counts = _apply(coll, session, run_id, number, operation)
            else:
                with pymongo.timeout(operation_timeout):
                    counts = _apply(coll, session, run_id, number, operation)
            inserted += counts[0]
            modified += counts[1]
            logger.info("Operation %d completed", number)

        _checkpoint(BEFORE_COMMIT)
        _checkpoint(DURING_COMMIT)
        stage = 'commit'
        logger.info("Committing transaction (maxCommitTimeMS: %s, "
                    "wtimeout: %s)...", policy.commit_timeout,
                    policy.write_concern_timeout)
        commit_start = monotonic()
        session.commit_transaction()
        commit_latency = monotonic() - commit_start
        logger.info("Transaction %s committed in %.3fs", run_id,
                    commit_latency)
        return Committed(run_id, RunStats(len(operations), inserted, modified,
                                          commit_latency,
                                          monotonic() - start))
    except Exception as e:
        elapsed = monotonic() - start
        failure = RawFailure.from_exception(e)
        logger.error("Transaction %s failed during %s after %.3fs: %s",
                     run_id, stage, elapsed, e)
        _abort_once(session)
        if isinstance(e, (NetworkTimeout, ServerSelectionTimeoutError)):
            return TimedOut(run_id, elapsed, failure, stage)
        return AbortedWithError(run_id, failure, stage, elapsed)
    finally:
        session.end_session()
        logger.debug("Session ended")
