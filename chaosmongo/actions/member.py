from chaosmongo.common import *
from chaosmongo.execute.execute import get_executor
from chaosmongo.probes.member import get_container_status, wait_healthy
from logzero import logger
from typing import Union, List, Dict

# Drop everything but loopback. The member keeps running but nothing can
# reach it and it can reach nothing.
PARTITION_SCRIPT = "apt-get update -qq >/dev/null 2>&1 || true; " \
                   "command -v iptables >/dev/null 2>&1 || " \
                   "apt-get install -y -qq iptables >/dev/null 2>&1 || true; " \
                   "iptables -A INPUT -i lo -j ACCEPT && " \
                   "iptables -A INPUT -j DROP && " \
                   "iptables -A OUTPUT -o lo -j ACCEPT && " \
                   "iptables -A OUTPUT -j DROP"

HEAL_PARTITION_SCRIPT = "iptables -F && iptables -X && " \
                        "iptables -P INPUT ACCEPT && " \
                        "iptables -P OUTPUT ACCEPT && " \
                        "iptables -P FORWARD ACCEPT"


def docker_command_on_member(member: str, command: str,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    timeout: Union[str,int] = DEFAULT_CHAOS_COMMAND_TIMEOUT,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Run a docker subcommand against a member's container.

    :param member: The member's container name. Required.
    :type member: str
    :param command: The docker subcommand (stop, kill, pause, ...). Required.
    :type command: str
    :param docker_host: SSH alias of the Docker host. None for local.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_DOCKER_HOST)
    :type docker_host: str
    :param timeout: How long the command may execute before timing out.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_COMMAND_TIMEOUT)
    :type timeout: Union[str,int]
    :param ssh_config_file: The relative or absolute path to the SSH config
        file.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_SSH_CONFIG_FILE)
    :type ssh_config_file: str
    :return: bool
    """
    logger.debug("docker %s %s", command, member)
    executor = get_executor(docker_host, ssh_config_file)
    result = executor.execute(docker_host, "docker {} {}".format(command,
                                                                 member),
                              timeout=int(timeout))
    if result.return_code != 0:
        logger.error("Failed to %s %s: %s", command, member,
                     result.stderr.strip())
        return False
    return True


def stop_member(member: str, docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Gracefully stop a member. Returns once the container has exited.
    """
    logger.info("Stopping %s...", member)
    return docker_command_on_member(member, "stop", docker_host=docker_host,
                                    ssh_config_file=ssh_config_file)


def kill_member(member: str, docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Hard-kill a member (SIGKILL), simulating an abrupt failure.
    """
    logger.info("Hard-killing %s (simulating abrupt failure)...", member)
    return docker_command_on_member(member, "kill", docker_host=docker_host,
                                    ssh_config_file=ssh_config_file)


def pause_member(member: str, docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Freeze a member. Its sockets stay open but it never answers, so peers
    and clients believe it is alive.
    """
    logger.info("Pausing %s...", member)
    return docker_command_on_member(member, "pause", docker_host=docker_host,
                                    ssh_config_file=ssh_config_file)


def partition_member(member: str,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    fallback_to_pause: bool = True,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> Union[FaultStrategy, None]:
    """
    Partition a member from the network by dropping all non-loopback traffic
    inside its container. The member keeps running.

    iptables needs the NET_ADMIN capability in the container. If it cannot
    be applied, the member is paused instead (if fallback_to_pause is True).

    :return: The strategy that was actually applied (PARTITION or PAUSE), or
        None if the member could not be partitioned.
    """
    logger.info("Partitioning %s (blocking network traffic)...", member)
    executor = get_executor(docker_host, ssh_config_file)
    command = "docker exec {} sh -c '{}'".format(member, PARTITION_SCRIPT)
    result = executor.execute(docker_host, command,
                              timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT)
    if result.return_code == 0:
        logger.info("%s partitioned", member)
        return FaultStrategy.PARTITION
    logger.error("Could not use iptables on %s: %s", member,
                 result.stderr.strip())
    if fallback_to_pause:
        logger.info("Using pause instead...")
        if pause_member(member, docker_host=docker_host,
                        ssh_config_file=ssh_config_file):
            return FaultStrategy.PAUSE
    return None


def heal_partition(member: str, docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Flush the iptables rules applied by partition_member.
    """
    logger.info("Restoring network on %s...", member)
    executor = get_executor(docker_host, ssh_config_file)
    command = "docker exec {} sh -c '{}'".format(member, HEAL_PARTITION_SCRIPT)
    result = executor.execute(docker_host, command,
                              timeout=DEFAULT_CHAOS_COMMAND_TIMEOUT)
    if result.return_code != 0:
        logger.error("Could not restore network on %s: %s", member,
                     result.stderr.strip())
        return False
    return True


def start_member(member: str, docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    wait: bool = True,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Start a stopped or killed member and, by default, wait until it answers
    a ping.
    """
    logger.info("Starting %s...", member)
    if not docker_command_on_member(member, "start", docker_host=docker_host,
                                    ssh_config_file=ssh_config_file):
        return False
    if wait and not wait_healthy(member, docker_host=docker_host,
                                 ssh_config_file=ssh_config_file):
        logger.error("%s may not be fully healthy yet", member)
        return False
    return True


def _record_disrupted_member(member: str, strategy: FaultStrategy) -> None:
    disrupted = read_state_file(DISRUPTED_MEMBERS_STATE_FILE)
    disrupted[member] = strategy.name
    write_state_file(DISRUPTED_MEMBERS_STATE_FILE, disrupted)


def _forget_disrupted_member(member: str) -> None:
    disrupted = read_state_file(DISRUPTED_MEMBERS_STATE_FILE)
    if disrupted.pop(member, None) is not None:
        write_state_file(DISRUPTED_MEMBERS_STATE_FILE, disrupted)


def disrupt_member(member: str, strategy: Union[FaultStrategy, int],
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> Union[bool, FaultStrategy]:
    """
    Take a member out of service using a FaultStrategy and remember how it
    was done (in the 'disrupted_members' state file) so it can be restored.

    :param member: The member's container name. Required.
    :type member: str
    :param strategy: A FaultStrategy or its integer value. Required.
    :type strategy: Union[FaultStrategy, int]
    :return: The FaultStrategy actually applied (a partition may fall back
        to PAUSE), or False if the member could not be disrupted.
    """
    if not isinstance(strategy, FaultStrategy):
        if not FaultStrategy.has_value(int(strategy)):
            logger.error("Invalid fault strategy %s", strategy)
            return False
        strategy = FaultStrategy(int(strategy))

    kwargs = {'docker_host': docker_host, 'ssh_config_file': ssh_config_file}
    if strategy is FaultStrategy.STOP:
        succeeded = stop_member(member, **kwargs)
    elif strategy is FaultStrategy.KILL:
        succeeded = kill_member(member, **kwargs)
    elif strategy is FaultStrategy.PAUSE:
        succeeded = pause_member(member, **kwargs)
    else:
        applied = partition_member(member, **kwargs)
        succeeded = applied is not None
        if succeeded:
            strategy = applied

    if not succeeded:
        return False
    _record_disrupted_member(member, strategy)
    return strategy


def restore_member(member: str, docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    wait: bool = True,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Bring a member back regardless of how it was disrupted: unpause a paused
    container, start an exited one, flush iptables on a running one.
    """
    status = get_container_status(member, docker_host=docker_host,
                                  ssh_config_file=ssh_config_file)
    logger.debug("Container %s status: %s", member, status)
    kwargs = {'docker_host': docker_host, 'ssh_config_file': ssh_config_file}
    if status == 'paused':
        restored = docker_command_on_member(member, "unpause", **kwargs)
        if restored:
            logger.info("%s unpaused", member)
    elif status in ('exited', 'created', 'dead'):
        restored = start_member(member, wait=False, **kwargs)
    elif status == 'running':
        disrupted = read_state_file(DISRUPTED_MEMBERS_STATE_FILE)
        if disrupted.get(member) == FaultStrategy.PARTITION.name:
            restored = heal_partition(member, **kwargs)
        else:
            # Might already be restored. Flushing is harmless either way.
            heal_partition(member, **kwargs)
            restored = True
    else:
        logger.error("Could not restore %s: unknown container status %s",
                     member, status)
        return False

    if not restored:
        return False
    _forget_disrupted_member(member)
    if wait and not wait_healthy(member, docker_host=docker_host,
                                 ssh_config_file=ssh_config_file):
        logger.error("%s may not be fully healthy yet", member)
        return False
    return True


def disrupt_members(members: List[str], strategy: Union[FaultStrategy, int],
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> Union[bool, Dict[str, FaultStrategy]]:
    """
    Disrupt each member in `members` in order. Stops at the first failure.

    Returns a dict mapping each member to the FaultStrategy actually applied
    to it, or False if any member could not be disrupted.
    """
    applied = {}
    for member in members:
        strategy_applied = disrupt_member(member, strategy,
                                          docker_host=docker_host,
                                          ssh_config_file=ssh_config_file)
        if not strategy_applied:
            return False
        applied[member] = strategy_applied
    return applied


def restore_members(members: List[str] = None,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST, wait: bool = True,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Restore a list of members. Tries every member even if one fails.
    """
    count = len(members)
    restored = 0
    for member in members:
        logger.debug("member to restore: %s", member)
        if restore_member(member, docker_host=docker_host, wait=wait,
                          ssh_config_file=ssh_config_file):
            restored += 1

    logger.debug("restored: %s -- count: %s", restored, count)
    return restored == count


def restore_disrupted_members(docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    wait: bool = True,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Restore every member recorded in the 'disrupted_members' state file.
    """
    disrupted = read_state_file(DISRUPTED_MEMBERS_STATE_FILE)
    if not disrupted:
        logger.debug("No disrupted members to restore")
        return True
    logger.info("Restoring disrupted members: %s", ", ".join(disrupted))
    return restore_members(list(disrupted.keys()), docker_host=docker_host,
                           wait=wait, ssh_config_file=ssh_config_file)
