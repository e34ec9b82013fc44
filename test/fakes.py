"""
In-memory stand-ins for a replica set client and the fault injection control
surface.
"""
from collections import namedtuple

from pymongo.errors import DuplicateKeyError

from chaosmongo.common import MemberRole
from chaosmongo.control import ControlSurface, ControlSurfaceError
from chaosmongo.execute.execute import RemoteExecutor, Result
from chaosmongo.probes.member import MemberState

UpdateResult = namedtuple('UpdateResult', ['matched_count', 'modified_count'])


class FakeSession(object):
    """
    Session whose operations and commit can be made to fail or block.

    A commit that has been attempted leaves the transaction, like the driver
    does, so it cannot be aborted afterwards.
    """

    def __init__(self, client):
        self.client = client
        self.in_transaction = False
        self.options = None
        self.operations = 0
        self.committed = False
        self.aborted = 0
        self.ended = False

    def start_transaction(self, read_concern=None, write_concern=None,
                          max_commit_time_ms=None):
        self.in_transaction = True
        self.options = {'read_concern': read_concern,
                        'write_concern': write_concern,
                        'max_commit_time_ms': max_commit_time_ms}

    def next_operation(self):
        self.operations += 1
        error = self.client.operation_errors.pop(self.operations, None)
        if error is not None:
            raise error

    def commit_transaction(self):
        self.in_transaction = False
        if self.client.commit_blocker is not None:
            self.client.commit_blocker.wait()
        if self.client.commit_error is not None:
            error, self.client.commit_error = self.client.commit_error, None
            raise error
        self.committed = True
        self.client.documents.extend(self.client.pending)
        self.client.pending = []

    def abort_transaction(self):
        self.aborted += 1
        self.in_transaction = False
        self.client.pending = []
        if self.client.abort_error is not None:
            raise self.client.abort_error

    def end_session(self):
        self.ended = True


class FakeCollection(object):

    def __init__(self, client, name):
        self.client = client
        self.name = name

    def create_index(self, keys, unique=False):
        self.client.indexes.append((self.name, keys, unique))

    def _identities(self):
        return {(doc['testId'], doc['operationNumber'])
                for doc in self.client.documents + self.client.pending}

    def insert_one(self, document, session=None):
        session.next_operation()
        identity = (document['testId'], document['operationNumber'])
        if self.client.indexes and identity in self._identities():
            raise DuplicateKeyError(
                "E11000 duplicate key error collection: {}".format(self.name),
                code=11000,
                details={'code': 11000, 'errmsg': 'E11000 duplicate key'})
        self.client.pending.append(dict(document, collection=self.name))

    def update_one(self, filter, update, session=None):
        session.next_operation()
        modified = 0
        for document in self.client.pending + self.client.documents:
            if document['testId'] == filter['testId']:
                document.update(update['$set'])
                modified = 1
                break
        return UpdateResult(modified, modified)

    def find_one(self, filter):
        for document in self.client.documents:
            if all(document.get(k) == v for k, v in filter.items()):
                return document
        return None


class FakeDatabase(object):

    def __init__(self, client):
        self.client = client

    def __getitem__(self, name):
        return FakeCollection(self.client, name)

    def get_collection(self, name, read_concern=None):
        return FakeCollection(self.client, name)


class FakeClient(object):
    """
    :param operation_errors: Dict mapping 1-based operation number to the
        exception raised by that operation. Each error is raised once.
    :param commit_error: Exception raised by the next commit.
    :param commit_blocker: threading.Event the commit waits on.
    """

    def __init__(self, operation_errors=None, commit_error=None,
                 commit_blocker=None, abort_error=None):
        self.operation_errors = dict(operation_errors or {})
        self.commit_error = commit_error
        self.commit_blocker = commit_blocker
        self.abort_error = abort_error
        self.documents = []
        self.pending = []
        self.indexes = []
        self.sessions = []
        self.closed = False

    def __getitem__(self, name):
        return FakeDatabase(self)

    def start_session(self):
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    def close(self):
        self.closed = True


class FakeControlSurface(ControlSurface):
    """
    Three healthy members, the first one primary. Faults only change what
    current_topology reports. With `partition_fallback` a partition pauses
    the member instead, like a container without iptables.
    """

    def __init__(self, members=('mongo1', 'mongo2', 'mongo3'), primary=0,
                 fail_actions=False, on_fault=None, partition_fallback=False):
        self._members = list(members)
        self.roles = {member: MemberRole.SECONDARY for member in members}
        self.roles[self._members[primary]] = MemberRole.PRIMARY
        self.fail_actions = fail_actions
        self.on_fault = on_fault
        self.partition_fallback = partition_fallback
        self.calls = []

    @property
    def members(self):
        return list(self._members)

    def _fault(self, action, member, role):
        if self.fail_actions:
            raise ControlSurfaceError("Failed to {} {}".format(action,
                                                               member))
        self.calls.append((action, member))
        self.roles[member] = role
        if self.on_fault is not None:
            self.on_fault(action, member)
        return action

    def stop(self, member):
        return self._fault('stop', member, MemberRole.DOWN)

    def kill(self, member):
        return self._fault('kill', member, MemberRole.DOWN)

    def pause(self, member):
        return self._fault('pause', member, MemberRole.PAUSED)

    def partition(self, *members):
        applied = {}
        for member in members:
            if self.partition_fallback:
                applied[member] = self.pause(member)
            else:
                applied[member] = self._fault('partition', member,
                                              MemberRole.UNREACHABLE)
        return applied

    def restore(self, *members):
        for member in members:
            self.calls.append(('restore', member))
            self.roles[member] = MemberRole.SECONDARY

    def stepdown(self):
        self.calls.append(('stepdown', None))
        primary = [member for member in self._members
                   if self.roles[member] is MemberRole.PRIMARY]
        for member in primary:
            self.roles[member] = MemberRole.SECONDARY
        self.roles[self._members[-1]] = MemberRole.PRIMARY

    def wait_healthy(self, member, timeout=None):
        return self.roles[member] in (MemberRole.PRIMARY,
                                      MemberRole.SECONDARY)

    def current_topology(self):
        return [MemberState(member, self.roles[member],
                            self.roles[member] in (MemberRole.PRIMARY,
                                                   MemberRole.SECONDARY))
                for member in self._members]

    def restore_all(self):
        self.calls.append(('restore_all', None))
        for member in self._members:
            if self.roles[member] not in (MemberRole.PRIMARY,
                                          MemberRole.SECONDARY):
                self.roles[member] = MemberRole.SECONDARY


class FakeExecutor(RemoteExecutor):
    """
    Records every command. `responder` maps a command line to a Result;
    by default every command succeeds with empty output.
    """

    def __init__(self, responder=None):
        self.responder = responder
        self.commands = []

    def _execute_on_host(self, host, action, user=None, as_sudo=False,
                         **kwargs):
        self.commands.append(action)
        if self.responder is None:
            return Result(0, '', '')
        return self.responder(action)


class InlineProcess(object):
    """multiprocessing.Process stand-in that runs the target in the calling
    process."""

    def __init__(self, target=None, args=(), kwargs=None):
        self.target = target
        self.args = args
        self.kwargs = kwargs or {}

    def start(self):
        self.target(*self.args, **self.kwargs)

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return False

    def terminate(self):
        pass
