"""
Fault injection control surface.

The scenarios only talk to the replica set's infrastructure through this
interface. Every fault call blocks until the fault has taken effect and
raises ControlSurfaceError if it did not. Fault calls report the fault that
was actually applied ('stop', 'kill', 'pause' or 'partition'), since an
implementation may substitute one it can apply, e.g. pause for partition.
"""
import abc

from logzero import logger

from chaosmongo.actions.member import (
    disrupt_member,
    disrupt_members,
    restore_disrupted_members,
    restore_member,
)
from chaosmongo.actions.replica_set import stepdown_primary
from chaosmongo.common import (
    DEFAULT_CHAOS_DOCKER_HOST,
    DEFAULT_CHAOS_SSH_CONFIG_FILE,
    DEFAULT_CHAOS_STEPDOWN_SECONDS,
    FaultStrategy,
    get_members,
)
from chaosmongo.probes.member import current_topology, wait_healthy

from typing import Dict, List


class ControlSurfaceError(Exception):
    """A fault or restore action did not take effect."""


class ControlSurface(abc.ABC):

    @abc.abstractmethod
    def stop(self, member: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def kill(self, member: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def pause(self, member: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def partition(self, *members: str) -> Dict[str, str]:
        """Returns the fault applied to each member."""
        raise NotImplementedError

    @abc.abstractmethod
    def restore(self, *members: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def stepdown(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def wait_healthy(self, member: str, timeout: float) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def current_topology(self) -> List:
        raise NotImplementedError

    @abc.abstractmethod
    def restore_all(self) -> None:
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def members(self) -> List[str]:
        raise NotImplementedError

    def secondaries(self) -> List[str]:
        """Members that are not the current primary, in declaration order."""
        primary = [state.name for state in self.current_topology()
                   if state.role.value == 'PRIMARY']
        return [member for member in self.members if member not in primary]


class DockerControlSurface(ControlSurface):
    """
    Control surface for replica set members running as Docker containers on
    a local or remote (SSH) Docker host.
    """

    def __init__(self, members=None, docker_host=DEFAULT_CHAOS_DOCKER_HOST,
                 ssh_config_file=DEFAULT_CHAOS_SSH_CONFIG_FILE,
                 stepdown_seconds=DEFAULT_CHAOS_STEPDOWN_SECONDS):
        self._members = get_members(members)
        self.docker_host = docker_host
        self.ssh_config_file = ssh_config_file
        self.stepdown_seconds = stepdown_seconds

    @property
    def members(self) -> List[str]:
        return list(self._members)

    def _kwargs(self):
        return {'docker_host': self.docker_host,
                'ssh_config_file': self.ssh_config_file}

    def _disrupt(self, member, strategy) -> str:
        applied = disrupt_member(member, strategy, **self._kwargs())
        if not applied:
            raise ControlSurfaceError("Failed to {} {}".format(
                strategy.name.lower(), member))
        if isinstance(applied, FaultStrategy):
            strategy = applied
        return strategy.name.lower()

    def stop(self, member: str) -> str:
        return self._disrupt(member, FaultStrategy.STOP)

    def kill(self, member: str) -> str:
        return self._disrupt(member, FaultStrategy.KILL)

    def pause(self, member: str) -> str:
        return self._disrupt(member, FaultStrategy.PAUSE)

    def partition(self, *members: str) -> Dict[str, str]:
        applied = disrupt_members(list(members), FaultStrategy.PARTITION,
                                  **self._kwargs())
        if not applied:
            raise ControlSurfaceError("Failed to partition {}".format(
                ", ".join(members)))
        return {member: strategy.name.lower()
                for member, strategy in applied.items()}

    def restore(self, *members: str) -> None:
        failed = [member for member in members
                  if not restore_member(member, **self._kwargs())]
        if failed:
            raise ControlSurfaceError("Failed to restore {}".format(
                ", ".join(failed)))

    def stepdown(self) -> None:
        if not stepdown_primary(self._members, seconds=self.stepdown_seconds,
                                **self._kwargs()):
            raise ControlSurfaceError("Failed to step down the primary")

    def wait_healthy(self, member: str, timeout: float = None) -> bool:
        return wait_healthy(member, timeout=timeout, **self._kwargs())

    def current_topology(self) -> List:
        return current_topology(self._members, **self._kwargs())

    def restore_all(self) -> None:
        logger.debug("Restoring every disrupted member")
        if not restore_disrupted_members(**self._kwargs()):
            raise ControlSurfaceError("Failed to restore disrupted members")
