import abc
import os

from collections import namedtuple

from logzero import logger
from multiprocessing import Process, Queue
from queue import Empty

from fabric import Connection, Config
from invoke import Context
from paramiko import AuthenticationException

from chaosmongo.common import (
    DEFAULT_CHAOS_COMMAND_TIMEOUT,
    DEFAULT_CHAOS_DOCKER_HOST,
    DEFAULT_CHAOS_SSH_CONFIG_FILE,
)

Result = namedtuple('Result', ['return_code', 'stdout', 'stderr'])


class RemoteExecutor(abc.ABC):
    """
    Runs shell commands on the host that owns the replica set containers.

    Every fault action is a `docker ...` command line, so the only thing an
    action needs to know is which host runs the Docker daemon.
    """

    def execute(self, host: str, action: str, user: str = None, as_sudo=False, **kwargs) -> Result:
        rtn = self._execute_on_host(host, action, user=user, as_sudo=as_sudo, **kwargs)
        logger.debug("host: %s action: >%s< return_code: %s", host, action, rtn.return_code)
        return rtn

    @abc.abstractmethod
    def _execute_on_host(self, host: str, action: str, user: str = None, as_sudo=False, **kwargs) -> Result:
        raise NotImplementedError('users must define _execute_on_host to use this base class')


class LocalExecutor(RemoteExecutor):
    """
    Runs commands against the local Docker daemon. The host argument is
    ignored.
    """

    def __init__(self):
        self.context = Context()

    def _execute_on_host(self, host: str, action: str, user: str = None, as_sudo=False,
                         timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT, **kwargs) -> Result:
        if as_sudo:
            rtn = self.context.sudo(action, hide=True, warn=True, timeout=timeout)
        else:
            rtn = self.context.run(action, hide=True, warn=True, timeout=timeout)
        return Result(rtn.return_code, rtn.stdout, rtn.stderr)


class FabricExecutor(RemoteExecutor):
    @staticmethod
    def _multiprocess_execute_on_host(q, host, action, config, user=None, as_sudo=False, connect_kwargs=None):
        with Connection(host, config=config, user=user, connect_kwargs=connect_kwargs) as c:
            if as_sudo:
                rtn = c.sudo(action, hide=True, warn=True)
            else:
                rtn = c.run(action, hide=True, warn=True)

            q.put(Result(rtn.return_code, rtn.stdout, rtn.stderr))

    config = None

    def __init__(self, ssh_config_file=None):
        self.config = FabricExecutor._create_config(ssh_config_file=ssh_config_file)

    @staticmethod
    def _create_config(ssh_config_file=None):
        if ssh_config_file:
            FabricExecutor._is_readable_file(ssh_config_file, 'ssh_config')
        return Config(runtime_ssh_path=ssh_config_file)

    @staticmethod
    def _is_readable_file(path, file_kind):
        if not isinstance(path, str):
            raise ValueError("path to file must be a string")

        if os.access(path, os.R_OK):
            if os.path.isfile(path):
                return
            else:
                raise OSError("Path is not to a file -- '%s'" % str(path))
        else:
            raise OSError("Unable to access the file (not readable) -- %s -- '%s'" % (file_kind, path))

    @staticmethod
    def _collect_connect_kwargs(identity_file):
        connect_kwargs = {}

        if identity_file:
            FabricExecutor._is_readable_file(identity_file, 'identity_file')
            connect_kwargs['key_filename'] = identity_file

        if not connect_kwargs:
            connect_kwargs = None

        return connect_kwargs

    def _execute_on_host(self, host: str, action: str, user: str = None, as_sudo=False, identity_file=None,
                         timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT, **kwargs) -> Result:
        connect_kwargs = self._collect_connect_kwargs(identity_file)

        p = None
        q = Queue()
        try:
            # Running execution in a subprocess - Did this to avoid errors in paramiko clean up.
            p = Process(target=FabricExecutor._multiprocess_execute_on_host,
                        args=(q, host, action, self.config),
                        kwargs={'user': user, "as_sudo": as_sudo, "connect_kwargs": connect_kwargs})
            p.start()
            p.join(timeout=timeout)
            if p.is_alive():
                raise Exception("Remote execution has exceeded timeout")
            rtn = q.get(timeout=0.1)
        except AuthenticationException as e:
            raise e
        except Empty:
            raise Exception("Remote execution did not provide results")
        finally:
            if p:
                p.terminate()

        return rtn


def get_executor(docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
                 ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> RemoteExecutor:
    """
    Pick an executor for the Docker host.

    :param docker_host: SSH alias/hostname of the Docker host. None means the
        Docker daemon is local.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_DOCKER_HOST)
    :type docker_host: str
    :param ssh_config_file: The relative or absolute path to the SSH config
        file. Only used for a remote Docker host.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_SSH_CONFIG_FILE)
    :type ssh_config_file: str
    :return: RemoteExecutor
    """
    if docker_host:
        return FabricExecutor(ssh_config_file=os.path.expanduser(ssh_config_file))
    return LocalExecutor()
