import pytest

from chaosmongo.actions import member
from chaosmongo.common import DISRUPTED_MEMBERS_STATE_FILE, FaultStrategy
from chaosmongo.execute.execute import Result
from chaosmongo.probes import member as member_probes
from test import patch
from test.fakes import FakeExecutor


class StateFiles(object):
    """In-memory replacement for the chaos temp dir state files."""

    def __init__(self):
        self.files = {}

    def read(self, name):
        return dict(self.files.get(name, {}))

    def write(self, name, state):
        self.files[name] = dict(state)


@pytest.fixture
def state():
    files = StateFiles()
    with patch(member, 'read_state_file', files.read), \
            patch(member, 'write_state_file', files.write):
        yield files


def patched_executor(executor):
    get_executor = lambda *args, **kwargs: executor
    return patch(member, 'get_executor', get_executor), \
        patch(member_probes, 'get_executor', get_executor)


def container_status(status, fail=None):
    def responder(command):
        if command.startswith("docker inspect"):
            return Result(0, status + '\n', '')
        if fail and fail in command:
            return Result(1, '', 'iptables: Permission denied\n')
        return Result(0, '', '')
    return responder


def test_stop_member(state):
    executor = FakeExecutor()
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert member.stop_member('mongo2')
    assert executor.commands == ['docker stop mongo2']


def test_failed_command_returns_false(state):
    executor = FakeExecutor(lambda command: Result(1, '', 'No such container'))
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert not member.kill_member('mongo9')
        assert not member.disrupt_member('mongo9', FaultStrategy.KILL)
    assert DISRUPTED_MEMBERS_STATE_FILE not in state.files


def test_disrupt_member_records_strategy(state):
    executor = FakeExecutor()
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert member.disrupt_member('mongo2', FaultStrategy.PAUSE)
        assert member.disrupt_member('mongo3', 1)
    assert executor.commands == ['docker pause mongo2', 'docker stop mongo3']
    assert state.files[DISRUPTED_MEMBERS_STATE_FILE] == {'mongo2': 'PAUSE',
                                                          'mongo3': 'STOP'}


def test_disrupt_member_invalid_strategy(state):
    executor = FakeExecutor()
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert not member.disrupt_member('mongo2', 9)
    assert executor.commands == []


def test_partition_member():
    executor = FakeExecutor()
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert member.partition_member('mongo2') is FaultStrategy.PARTITION
    assert executor.commands[0].startswith("docker exec mongo2 sh -c '")
    assert 'iptables -A INPUT -j DROP' in executor.commands[0]


def test_partition_falls_back_to_pause(state):
    executor = FakeExecutor(container_status('running', fail='iptables'))
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert member.partition_member('mongo2',
                                       fallback_to_pause=False) is None
        assert member.disrupt_member('mongo2', FaultStrategy.PARTITION) \
            is FaultStrategy.PAUSE
    assert executor.commands[-1] == 'docker pause mongo2'
    assert state.files[DISRUPTED_MEMBERS_STATE_FILE] == {'mongo2': 'PAUSE'}


def test_disrupt_members(state):
    executor = FakeExecutor(container_status('running', fail='mongo3'))
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert member.disrupt_members(['mongo2'], FaultStrategy.STOP) == \
            {'mongo2': FaultStrategy.STOP}
        # iptables and the pause fallback both fail on mongo3
        assert member.disrupt_members(['mongo2', 'mongo3'],
                                      FaultStrategy.PARTITION) is False
    assert executor.commands[0] == 'docker stop mongo2'
    assert state.files[DISRUPTED_MEMBERS_STATE_FILE] == {'mongo2': 'PARTITION'}


def test_restore_paused_member(state):
    state.write(DISRUPTED_MEMBERS_STATE_FILE, {'mongo2': 'PAUSE'})
    executor = FakeExecutor(container_status('paused'))
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert member.restore_member('mongo2', wait=False)
    assert executor.commands[-1] == 'docker unpause mongo2'
    assert state.files[DISRUPTED_MEMBERS_STATE_FILE] == {}


def test_restore_stopped_member(state):
    state.write(DISRUPTED_MEMBERS_STATE_FILE, {'mongo3': 'KILL'})
    executor = FakeExecutor(container_status('exited'))
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert member.restore_member('mongo3', wait=False)
    assert executor.commands[-1] == 'docker start mongo3'
    assert state.files[DISRUPTED_MEMBERS_STATE_FILE] == {}


def test_restore_partitioned_member(state):
    state.write(DISRUPTED_MEMBERS_STATE_FILE, {'mongo2': 'PARTITION'})
    executor = FakeExecutor(container_status('running'))
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert member.restore_member('mongo2', wait=False)
    assert executor.commands[-1].startswith("docker exec mongo2 sh -c 'iptables -F")


def test_restore_unknown_status(state):
    executor = FakeExecutor(lambda command: Result(1, '', 'No such object'))
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        assert not member.restore_member('mongo9', wait=False)


def test_restore_disrupted_members(state):
    executor = FakeExecutor(container_status('paused'))
    patch_member, patch_probes = patched_executor(executor)
    with patch_member, patch_probes:
        # Nothing to restore
        assert member.restore_disrupted_members(wait=False)
        assert executor.commands == []

        state.write(DISRUPTED_MEMBERS_STATE_FILE, {'mongo2': 'PAUSE',
                                                   'mongo3': 'PAUSE'})
        assert member.restore_disrupted_members(wait=False)
    assert 'docker unpause mongo2' in executor.commands
    assert 'docker unpause mongo3' in executor.commands
    assert state.files[DISRUPTED_MEMBERS_STATE_FILE] == {}
