"""
Failure classification.

A failure reported by the storage engine is captured verbatim as a
RawFailure and mapped to exactly one FailureCategory and a recommended
RecoveryAction. The rules are evaluated in a fixed order and the first match
wins, because a single failure may carry more than one signal (for example a
commit timeout that is also labeled as retryable).
"""
from collections import namedtuple
from enum import Enum

from logzero import logger
from pymongo.errors import PyMongoError

from typing import Optional, Tuple

TRANSIENT_TRANSACTION_ERROR = 'TransientTransactionError'
UNKNOWN_TRANSACTION_COMMIT_RESULT = 'UnknownTransactionCommitResult'


class FailureCategory(Enum):
    OPERATION_TIMEOUT = 'OperationTimeout'
    WRITE_CONCERN_TIMEOUT = 'WriteConcernTimeout'
    COMMIT_TIMEOUT = 'CommitTimeout'
    TOPOLOGY_CHANGE = 'TopologyChange'
    RETRYABLE = 'Retryable'
    UNCLASSIFIED = 'Unclassified'


class RecoveryAction(Enum):
    ABORT = 'Abort'
    RETRY_TRANSACTION = 'RetryTransaction'
    RETRY_OPERATION = 'RetryOperation'
    NONE = 'None'


# Server error codes and code names for each rule
OPERATION_TIMEOUT_CODES = {50}
OPERATION_TIMEOUT_NAMES = {'MaxTimeMSExpired'}

WRITE_CONCERN_TIMEOUT_CODES = {64}
WRITE_CONCERN_TIMEOUT_NAMES = {'WriteConcernFailed', 'WriteConcernTimeout'}

COMMIT_TIMEOUT_CODES = {262}
COMMIT_TIMEOUT_NAMES = {'ExceededTimeLimit'}

TOPOLOGY_CHANGE_NAMES = {
    'NotWritablePrimary',
    'NotMaster',
    'NotPrimaryNoSecondaryOk',
    'NotMasterNoSlaveOk',
    'NotPrimaryOrSecondary',
    'NotMasterOrSecondary',
    'InterruptedDueToReplStateChange',
    'PrimarySteppedDown',
    'InterruptedAtShutdown',
    'ShutdownInProgress',
}
# Driver exceptions that carry no server code name but mean the same thing
TOPOLOGY_CHANGE_ERROR_TYPES = {'NotPrimaryError'}


_RawFailureBase = namedtuple('_RawFailureBase', ['code', 'symbolic_name',
                                                 'message',
                                                 'retryable_label_present',
                                                 'error_type', 'labels'])


class RawFailure(_RawFailureBase):
    """
    A failure exactly as the storage engine (or the driver) reported it.

    :param code: Server error code, or None.
    :param symbolic_name: Server code name (e.g. 'WriteConcernFailed'), or
        None.
    :param message: Error message.
    :param retryable_label_present: True if the TransientTransactionError
        label is attached.
    :param error_type: Name of the exception class that carried the failure.
    :param labels: Every error label attached to the failure.
    """
    __slots__ = ()

    def __new__(cls, code: Optional[int], symbolic_name: Optional[str],
                message: str, retryable_label_present: bool = False,
                error_type: Optional[str] = None, labels: Tuple[str, ...] = ()):
        labels = tuple(labels)
        if retryable_label_present and TRANSIENT_TRANSACTION_ERROR not in labels:
            labels = labels + (TRANSIENT_TRANSACTION_ERROR,)
        return super().__new__(cls, code, symbolic_name, message,
                               bool(retryable_label_present), error_type,
                               labels)

    @classmethod
    def from_exception(cls, error: BaseException) -> 'RawFailure':
        code = getattr(error, 'code', None)
        details = getattr(error, 'details', None)
        symbolic_name = None
        labels = []
        if isinstance(details, dict):
            symbolic_name = details.get('codeName')
            labels = list(details.get('errorLabels', []))
        if isinstance(error, PyMongoError):
            # Labels added by the driver are not in the server's details
            for label in (TRANSIENT_TRANSACTION_ERROR,
                          UNKNOWN_TRANSACTION_COMMIT_RESULT):
                if error.has_error_label(label) and label not in labels:
                    labels.append(label)
        if not isinstance(code, int) or isinstance(code, bool):
            code = None
        return cls(code, symbolic_name, str(error),
                   retryable_label_present=TRANSIENT_TRANSACTION_ERROR in labels,
                   error_type=type(error).__name__, labels=labels)

    def to_dict(self):
        return {
            'code': self.code,
            'symbolic_name': self.symbolic_name,
            'message': self.message,
            'retryable_label_present': self.retryable_label_present,
            'error_type': self.error_type,
            'labels': list(self.labels),
        }


ClassifiedFailure = namedtuple('ClassifiedFailure', ['category',
                                                     'recommended_action',
                                                     'commit_ambiguous',
                                                     'raw'])


def _matches(raw, codes, names):
    return raw.code in codes or raw.symbolic_name in names


def classify(raw: RawFailure) -> ClassifiedFailure:
    """
    Map a RawFailure to a category and a recommended recovery action.

    Rules, first match wins:
      1. operation exceeded its own time limit -> OperationTimeout,
         RetryOperation
      2. write concern not satisfied within wtimeout -> WriteConcernTimeout,
         Abort
      3. commit exceeded maxCommitTimeMS -> CommitTimeout, Abort
      4. TransientTransactionError label -> Retryable, RetryTransaction
      5. replica set role/state change -> TopologyChange, RetryTransaction
      6. anything else -> Unclassified, Abort

    Never raises. A commit is reported as ambiguous when it timed out or the
    driver attached the UnknownTransactionCommitResult label: whether it was
    applied on a minority cannot be decided from the client.
    """
    try:
        if _matches(raw, OPERATION_TIMEOUT_CODES, OPERATION_TIMEOUT_NAMES):
            category = FailureCategory.OPERATION_TIMEOUT
            action = RecoveryAction.RETRY_OPERATION
        elif _matches(raw, WRITE_CONCERN_TIMEOUT_CODES,
                      WRITE_CONCERN_TIMEOUT_NAMES):
            category = FailureCategory.WRITE_CONCERN_TIMEOUT
            action = RecoveryAction.ABORT
        elif _matches(raw, COMMIT_TIMEOUT_CODES, COMMIT_TIMEOUT_NAMES):
            category = FailureCategory.COMMIT_TIMEOUT
            action = RecoveryAction.ABORT
        elif raw.retryable_label_present:
            category = FailureCategory.RETRYABLE
            action = RecoveryAction.RETRY_TRANSACTION
        elif (raw.symbolic_name in TOPOLOGY_CHANGE_NAMES or
              raw.error_type in TOPOLOGY_CHANGE_ERROR_TYPES):
            category = FailureCategory.TOPOLOGY_CHANGE
            action = RecoveryAction.RETRY_TRANSACTION
        else:
            category = FailureCategory.UNCLASSIFIED
            action = RecoveryAction.ABORT
        commit_ambiguous = (category is FailureCategory.COMMIT_TIMEOUT or
                            UNKNOWN_TRANSACTION_COMMIT_RESULT in (raw.labels or ()))
    except TypeError as e:
        # Unhashable or otherwise malformed fields
        logger.debug("Malformed raw failure %r: %s", raw, e)
        category = FailureCategory.UNCLASSIFIED
        action = RecoveryAction.ABORT
        commit_ambiguous = False
    return ClassifiedFailure(category, action, commit_ambiguous, raw)


def log_classified_failure(classified: ClassifiedFailure) -> None:
    """Report the raw signal next to the derived classification."""
    raw = classified.raw
    logger.error("Error Code: %s", raw.code)
    logger.error("Error Name: %s", raw.symbolic_name or 'N/A')
    logger.error("Error Type: %s", raw.error_type or 'N/A')
    logger.error("Error Labels: %s", ", ".join(raw.labels) or 'N/A')
    logger.error("Error Message: %s", raw.message)
    logger.error("Category: %s Recommended action: %s",
                 classified.category.value,
                 classified.recommended_action.value)
    if classified.commit_ambiguous:
        logger.error("Commit outcome is ambiguous: the transaction may have "
                     "been applied on a minority of members. Only retry if "
                     "the operations are idempotent.")
