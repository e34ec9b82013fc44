"""
Timeout policy for a transaction run.

A replica set client has several independent timeout knobs. A run is only
meaningful if every knob is declared, so a policy never has a "missing" knob:
a knob is either a non-negative number of milliseconds or the UNBOUNDED
sentinel. Zero is a valid bounded value and is never read as "no timeout".
"""
import os

from collections import namedtuple

from logzero import logger
from pymongo import WriteConcern
from pymongo.read_concern import ReadConcern

from chaosmongo.common import (
    DEFAULT_CHAOS_BOUNDED_COMMIT_TIMEOUT_MS,
    DEFAULT_CHAOS_BOUNDED_OPERATION_TIMEOUT_MS,
    DEFAULT_CHAOS_BOUNDED_SERVER_SELECTION_TIMEOUT_MS,
    DEFAULT_CHAOS_BOUNDED_SOCKET_TIMEOUT_MS,
    DEFAULT_CHAOS_BOUNDED_WRITE_CONCERN_TIMEOUT_MS,
    DEFAULT_CHAOS_UNBOUNDED_SERVER_SELECTION_TIMEOUT_MS,
)

from typing import Dict, Union


class InvalidPolicy(ValueError):
    """A timeout knob is neither a non-negative duration nor UNBOUNDED."""


class _Unbounded(object):
    """Singleton sentinel for a knob that is explicitly configured to never
    time out."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'UNBOUNDED'

    def __reduce__(self):
        return (_Unbounded, ())


UNBOUNDED = _Unbounded()

Duration = Union[int, _Unbounded]

# Environment variable for each knob that may be overridden by the caller
ENV_OPERATION_TIMEOUT = 'OP_MAXTIME_MS'
ENV_WRITE_CONCERN_TIMEOUT = 'W_TIMEOUT_MS'
ENV_COMMIT_TIMEOUT = 'MAX_COMMIT_MS'


def _validate(name, value):
    if value is UNBOUNDED:
        return value
    # bool is an int subclass, but True is not a duration
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPolicy("{} must be a non-negative number of milliseconds"
                            " or UNBOUNDED, got {!r}".format(name, value))
    if value < 0:
        raise InvalidPolicy("{} must not be negative, got {}".format(name,
                                                                     value))
    return value


_PolicyBase = namedtuple('_PolicyBase', ['operation_timeout',
                                         'write_concern_timeout',
                                         'commit_timeout',
                                         'socket_timeout',
                                         'server_selection_timeout'])


class TimeoutPolicy(_PolicyBase):
    """
    Immutable set of timeout knobs, all in milliseconds.

    :param operation_timeout: Server-side time limit of each individual
        operation, or UNBOUNDED.
    :param write_concern_timeout: wtimeout of the majority write concern, or
        UNBOUNDED.
    :param commit_timeout: maxCommitTimeMS of the transaction, or UNBOUNDED.
    :param socket_timeout: Client socket timeout, or UNBOUNDED.
    :param server_selection_timeout: How long the client looks for a suitable
        server. Always finite.
    """
    __slots__ = ()

    def __new__(cls, operation_timeout: Duration, write_concern_timeout: Duration,
                commit_timeout: Duration, socket_timeout: Duration,
                server_selection_timeout: int):
        if server_selection_timeout is UNBOUNDED:
            raise InvalidPolicy("server_selection_timeout must be finite")
        return super().__new__(
            cls,
            _validate('operation_timeout', operation_timeout),
            _validate('write_concern_timeout', write_concern_timeout),
            _validate('commit_timeout', commit_timeout),
            _validate('socket_timeout', socket_timeout),
            _validate('server_selection_timeout', server_selection_timeout))

    # namedtuple's _make and _replace bypass __new__
    @classmethod
    def _make(cls, iterable) -> 'TimeoutPolicy':
        return cls(*iterable)

    def _replace(self, **kwargs) -> 'TimeoutPolicy':
        knobs = self._asdict()
        unknown = set(kwargs) - set(knobs)
        if unknown:
            raise ValueError("Got unexpected field names: {}".format(
                sorted(unknown)))
        knobs.update(kwargs)
        return type(self)(**knobs)

    @classmethod
    def bounded(cls, operation_timeout: Duration = DEFAULT_CHAOS_BOUNDED_OPERATION_TIMEOUT_MS,
                write_concern_timeout: Duration = DEFAULT_CHAOS_BOUNDED_WRITE_CONCERN_TIMEOUT_MS,
                commit_timeout: Duration = DEFAULT_CHAOS_BOUNDED_COMMIT_TIMEOUT_MS) -> 'TimeoutPolicy':
        """Production-safe preset: every knob is small and finite."""
        return cls(operation_timeout, write_concern_timeout, commit_timeout,
                   DEFAULT_CHAOS_BOUNDED_SOCKET_TIMEOUT_MS,
                   DEFAULT_CHAOS_BOUNDED_SERVER_SELECTION_TIMEOUT_MS)

    @classmethod
    def unbounded(cls) -> 'TimeoutPolicy':
        """
        The configuration observed in production when writes hang: no socket
        timeout, no wtimeout, no maxCommitTimeMS. Server selection stays
        finite (but large) so the client still attempts to connect.
        """
        return cls(UNBOUNDED, UNBOUNDED, UNBOUNDED, UNBOUNDED,
                   DEFAULT_CHAOS_UNBOUNDED_SERVER_SELECTION_TIMEOUT_MS)

    @classmethod
    def from_env(cls, environ: Dict[str, str] = None,
                 **overrides) -> 'TimeoutPolicy':
        """
        Build a bounded policy from the OP_MAXTIME_MS, W_TIMEOUT_MS and
        MAX_COMMIT_MS environment variables.

        Keyword overrides (operation_timeout, write_concern_timeout,
        commit_timeout) that are not None win over the environment. An absent
        knob maps to the Bounded preset's default, never to UNBOUNDED.
        """
        if environ is None:
            environ = os.environ
        knobs = {
            'operation_timeout': ENV_OPERATION_TIMEOUT,
            'write_concern_timeout': ENV_WRITE_CONCERN_TIMEOUT,
            'commit_timeout': ENV_COMMIT_TIMEOUT,
        }
        kwargs = {}
        for knob, variable in knobs.items():
            value = overrides.get(knob)
            if value is None:
                value = parse_milliseconds(variable, environ.get(variable))
            if value is not None:
                kwargs[knob] = value
        policy = cls.bounded(**kwargs)
        logger.debug("Timeout policy from environment: %s", policy)
        return policy

    @property
    def is_unbounded(self) -> bool:
        """True if any knob that can hold up a commit is UNBOUNDED."""
        return any(knob is UNBOUNDED for knob in (self.write_concern_timeout,
                                                  self.commit_timeout,
                                                  self.socket_timeout))

    def write_concern(self) -> WriteConcern:
        if self.write_concern_timeout is UNBOUNDED:
            return WriteConcern(w='majority')
        return WriteConcern(w='majority', wtimeout=self.write_concern_timeout)

    def read_concern(self) -> ReadConcern:
        return ReadConcern('majority')

    def max_commit_time_ms(self):
        if self.commit_timeout is UNBOUNDED:
            return None
        return self.commit_timeout

    def operation_timeout_seconds(self):
        if self.operation_timeout is UNBOUNDED:
            return None
        return self.operation_timeout / 1000.0

    def client_options(self) -> Dict:
        """Keyword arguments for pymongo.MongoClient."""
        socket_timeout = None
        if self.socket_timeout is not UNBOUNDED:
            socket_timeout = self.socket_timeout
        return {
            'socketTimeoutMS': socket_timeout,
            'serverSelectionTimeoutMS': self.server_selection_timeout,
        }

    def to_dict(self) -> Dict:
        return {name: (None if value is UNBOUNDED else value)
                for name, value in self._asdict().items()}


def parse_milliseconds(name: str, value: str):
    """
    Parse a millisecond value supplied as text (environment variable or
    command line).

    Returns None for an absent or empty value. Raises InvalidPolicy for
    anything other than a non-negative integer.
    """
    if value is None or value.strip() == '':
        return None
    try:
        milliseconds = int(value)
    except ValueError:
        raise InvalidPolicy("{} must be an integer number of milliseconds, "
                            "got {!r}".format(name, value))
    if milliseconds < 0:
        raise InvalidPolicy("{} must not be negative, got {}".format(name,
                                                                     value))
    return milliseconds
