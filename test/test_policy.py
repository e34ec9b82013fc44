import pickle
import pytest

from chaosmongo import transaction
from chaosmongo.policy import *
from test import patch


def no_network(*args, **kwargs):
    raise AssertionError("A client must not be created")


def test_bounded_preset():
    policy = TimeoutPolicy.bounded()
    assert policy.operation_timeout == 1000
    assert policy.write_concern_timeout == 2000
    assert policy.commit_timeout == 1500
    assert policy.socket_timeout == 30000
    assert policy.server_selection_timeout == 30000
    assert not policy.is_unbounded

    assert policy.write_concern().document == {'w': 'majority',
                                               'wtimeout': 2000}
    assert policy.read_concern().level == 'majority'
    assert policy.max_commit_time_ms() == 1500
    assert policy.operation_timeout_seconds() == 1.0
    assert policy.client_options() == {'socketTimeoutMS': 30000,
                                       'serverSelectionTimeoutMS': 30000}


def test_unbounded_preset():
    policy = TimeoutPolicy.unbounded()
    assert policy.is_unbounded
    assert policy.operation_timeout is UNBOUNDED
    assert policy.write_concern_timeout is UNBOUNDED
    assert policy.commit_timeout is UNBOUNDED
    assert policy.socket_timeout is UNBOUNDED
    assert policy.server_selection_timeout == 300000

    assert policy.write_concern().document == {'w': 'majority'}
    assert policy.max_commit_time_ms() is None
    assert policy.operation_timeout_seconds() is None
    assert policy.client_options() == {'socketTimeoutMS': None,
                                       'serverSelectionTimeoutMS': 300000}
    assert policy.to_dict()['commit_timeout'] is None


def test_zero_is_not_unbounded():
    policy = TimeoutPolicy.bounded(write_concern_timeout=0)
    assert policy.write_concern_timeout == 0
    assert policy.write_concern_timeout is not UNBOUNDED
    assert policy.write_concern().document == {'w': 'majority',
                                               'wtimeout': 0}
    assert not policy.is_unbounded


def test_negative_duration_is_invalid_and_never_connects():
    with patch(transaction, 'MongoClient', no_network):
        for knob in ('operation_timeout', 'write_concern_timeout',
                     'commit_timeout'):
            with pytest.raises(InvalidPolicy):
                policy = TimeoutPolicy.bounded(**{knob: -1})
                transaction.create_client(policy)

        with pytest.raises(InvalidPolicy):
            TimeoutPolicy(1, 1, 1, -5, 1000)


def test_invalid_values():
    with pytest.raises(InvalidPolicy):
        TimeoutPolicy.bounded(operation_timeout=True)

    with pytest.raises(InvalidPolicy):
        TimeoutPolicy.bounded(commit_timeout="1500")

    with pytest.raises(InvalidPolicy):
        TimeoutPolicy.bounded(write_concern_timeout=None)

    with pytest.raises(InvalidPolicy):
        TimeoutPolicy(1, 1, 1, 1, UNBOUNDED)

    # InvalidPolicy is a ValueError
    with pytest.raises(ValueError):
        TimeoutPolicy.bounded(operation_timeout=-1)


def test_policy_is_immutable():
    policy = TimeoutPolicy.bounded()
    with pytest.raises(AttributeError):
        policy.commit_timeout = 10


def test_replace_and_make_validate():
    policy = TimeoutPolicy.bounded()
    with pytest.raises(InvalidPolicy):
        policy._replace(commit_timeout=-1)
    with pytest.raises(InvalidPolicy):
        TimeoutPolicy._make([-5, 2000, 1500, 30000, 30000])
    with pytest.raises(ValueError):
        policy._replace(no_such_knob=1)

    relaxed = policy._replace(write_concern_timeout=UNBOUNDED)
    assert isinstance(relaxed, TimeoutPolicy)
    assert relaxed.write_concern_timeout is UNBOUNDED
    assert relaxed.commit_timeout == policy.commit_timeout
    assert TimeoutPolicy._make(list(policy)) == policy


def test_negative_replaced_policy_never_reaches_the_executor():
    with patch(transaction, 'MongoClient', no_network):
        with pytest.raises(InvalidPolicy):
            policy = TimeoutPolicy.bounded()._replace(operation_timeout=-1000)
            transaction.create_client(policy)


def test_unbounded_sentinel():
    assert UNBOUNDED is type(UNBOUNDED)()
    assert pickle.loads(pickle.dumps(UNBOUNDED)) is UNBOUNDED
    policy = pickle.loads(pickle.dumps(TimeoutPolicy.unbounded()))
    assert policy == TimeoutPolicy.unbounded()
    assert policy.commit_timeout is UNBOUNDED


def test_from_env():
    policy = TimeoutPolicy.from_env(environ={})
    assert policy == TimeoutPolicy.bounded()

    policy = TimeoutPolicy.from_env(environ={'OP_MAXTIME_MS': '250',
                                             'W_TIMEOUT_MS': '',
                                             'MAX_COMMIT_MS': '0'})
    assert policy.operation_timeout == 250
    assert policy.write_concern_timeout == 2000
    assert policy.commit_timeout == 0


def test_from_env_overrides_win():
    policy = TimeoutPolicy.from_env(environ={'W_TIMEOUT_MS': '5000'},
                                    write_concern_timeout=700,
                                    commit_timeout=None)
    assert policy.write_concern_timeout == 700
    assert policy.commit_timeout == 1500


def test_from_env_invalid():
    with pytest.raises(InvalidPolicy):
        TimeoutPolicy.from_env(environ={'OP_MAXTIME_MS': 'abc'})

    with pytest.raises(InvalidPolicy):
        TimeoutPolicy.from_env(environ={'MAX_COMMIT_MS': '-5'})


def test_parse_milliseconds():
    assert parse_milliseconds('x', None) is None
    assert parse_milliseconds('x', '  ') is None
    assert parse_milliseconds('x', '42') == 42
    with pytest.raises(InvalidPolicy):
        parse_milliseconds('x', '1.5')
