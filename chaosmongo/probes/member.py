import json, socket
from chaosmongo.common import *
from chaosmongo.execute.execute import get_executor
from collections import namedtuple
from logzero import logger
from time import monotonic, sleep
from typing import Dict, List, Union

MemberState = namedtuple('MemberState', ['name', 'role', 'reachable'])

PING_COMMAND = "mongosh --quiet --eval \"db.adminCommand('ping').ok\""
STATUS_COMMAND = "mongosh --quiet --eval 'JSON.stringify(rs.status().members" \
                 ".map(m => ({name: m.name, state: m.stateStr, " \
                 "health: m.health})))'"


def get_container_status(member: str,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> Union[str, None]:
    """
    Docker's view of a member's container: 'running', 'paused', 'exited',
    ... or None if the container could not be inspected.
    """
    executor = get_executor(docker_host, ssh_config_file)
    command = "docker inspect -f '{{{{.State.Status}}}}' {}".format(member)
    result = executor.execute(docker_host, command,
                              timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT)
    if result.return_code != 0:
        logger.error("Failed to inspect container %s", member)
        return None
    return result.stdout.strip()


def member_is_healthy(member: str,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Does the mongod inside the member's container answer a ping?
    """
    executor = get_executor(docker_host, ssh_config_file)
    try:
        result = executor.execute(docker_host,
                                  "docker exec {} {}".format(member,
                                                             PING_COMMAND),
                                  timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT)
    except Exception as e:
        # A frozen member can outlive the command timeout
        logger.debug("Ping of %s failed: %s", member, e)
        return False
    return result.return_code == 0 and result.stdout.strip() == "1"


def wait_healthy(member: str, timeout: Union[str,int,float] = None,
    sleep_between_checks: Union[str,int,float] = DEFAULT_CHAOS_HEALTH_CHECK_SLEEP,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Wait until a member answers a ping.

    :param member: The member's container name. Required.
    :type member: str
    :param timeout: Seconds to keep trying.
        Optional. (Default: DEFAULT_CHAOS_HEALTH_CHECK_TRIES *
        DEFAULT_CHAOS_HEALTH_CHECK_SLEEP)
    :type timeout: Union[str,int,float]
    :param sleep_between_checks: Seconds between pings.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_HEALTH_CHECK_SLEEP)
    :type sleep_between_checks: Union[str,int,float]
    :return: bool
    """
    if timeout is None:
        timeout = DEFAULT_CHAOS_HEALTH_CHECK_TRIES * \
                  DEFAULT_CHAOS_HEALTH_CHECK_SLEEP
    deadline = monotonic() + float(timeout)
    tries = 0
    while True:
        tries += 1
        if member_is_healthy(member, docker_host=docker_host,
                             ssh_config_file=ssh_config_file):
            logger.debug("%s is healthy after %d tries", member, tries)
            return True
        if monotonic() + float(sleep_between_checks) > deadline:
            break
        logger.debug("Waiting for %s to be healthy... (attempt %d)", member,
                     tries)
        sleep(float(sleep_between_checks))
    logger.error("%s is not healthy after %s seconds", member, timeout)
    return False


def member_port_is_reachable(host: str,
                             port: int = DEFAULT_CHAOS_MEMBER_PORT) -> bool:
    """
    Is a member's mongod port reachable from this client?

    :param host: The member's hostname or IP. Required.
    :type host: str
    :param port: mongod port.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_MEMBER_PORT)
    :type port: int
    :return: bool
    """
    logger.debug("Check if %s is reachable on port %d", host, port)
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(5)
        try:
            result = sock.connect_ex((host, port))
        except socket.gaierror as e:
            logger.debug("Could not resolve %s: %s", host, e)
            return False
        if result != 0:
            logger.debug("Port %d is not reachable at %s", port, host)
            return False
    logger.debug("Port %d is reachable at %s", port, host)
    return True


def get_replica_set_status(member: str,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> Union[Dict, None]:
    """
    The replica set status as seen by one member.

    :return: Dict mapping member name (without port) to
        {'state': <stateStr>, 'health': <0|1>}, or None if the member could
        not report.
    """
    executor = get_executor(docker_host, ssh_config_file)
    try:
        result = executor.execute(docker_host,
                                  "docker exec {} {}".format(member,
                                                             STATUS_COMMAND),
                                  timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT)
    except Exception as e:
        logger.debug("Status of %s failed: %s", member, e)
        return None
    if result.return_code != 0:
        logger.debug("%s could not report replica set status", member)
        return None
    try:
        members = json.loads(result.stdout.strip())
    except ValueError as e:
        logger.error("Unexpected replica set status from %s: %s", member,
                     result.stdout)
        logger.exception(e)
        return None
    status = {}
    for item in members:
        name = item['name'].split(":")[0]
        status[name] = {'state': item['state'], 'health': item['health']}
    return status


def current_topology(members: Union[str, List[str]] = None,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> List[MemberState]:
    """
    Snapshot of every member's role, in member declaration order.

    Docker decides DOWN (not running) and PAUSED. For running members the
    role comes from the replica set status reported by a running member,
    preferring a view that includes a primary: a partitioned member only sees
    itself.

    :param members: Comma separated string or list of member names.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_MEMBERS)
    :type members: Union[str, List[str]]
    :return: List[MemberState]
    """
    members = get_members(members)
    statuses = {}
    for member in members:
        statuses[member] = get_container_status(member,
                                                docker_host=docker_host,
                                                ssh_config_file=ssh_config_file)

    view = None
    for member in members:
        if statuses[member] != 'running':
            continue
        candidate = get_replica_set_status(member, docker_host=docker_host,
                                           ssh_config_file=ssh_config_file)
        if candidate is None:
            continue
        if view is None:
            view = candidate
        if any(item['state'] == MemberRole.PRIMARY.value
               for item in candidate.values()):
            view = candidate
            break
    if view is None:
        view = {}

    topology = []
    for member in members:
        status = statuses[member]
        if status == 'paused':
            topology.append(MemberState(member, MemberRole.PAUSED, False))
        elif status != 'running':
            topology.append(MemberState(member, MemberRole.DOWN, False))
        else:
            info = view.get(member, {})
            state = info.get('state')
            if info.get('health') == 1 and state in (MemberRole.PRIMARY.value,
                                                     MemberRole.SECONDARY.value):
                topology.append(MemberState(member, MemberRole(state), True))
            else:
                topology.append(MemberState(member, MemberRole.UNREACHABLE,
                                            False))
    logger.debug("Topology: %s", topology)
    return topology
