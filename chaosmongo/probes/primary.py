from chaosmongo.common import *
from chaosmongo.probes.member import current_topology
from logzero import logger
from typing import List, Union


def get_primary(members: Union[str, List[str]] = None,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> Union[str, None]:
    """
    Return the name of the member currently playing the role of primary, or
    None if there is no primary (e.g. an election is in progress).

    Never cache the result. The primary may change between any two calls.

    :param members: Comma separated string or list of member names.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_MEMBERS)
    :type members: Union[str, List[str]]
    :return: Union[str, None]
    """
    for state in current_topology(members, docker_host=docker_host,
                                  ssh_config_file=ssh_config_file):
        if state.role is MemberRole.PRIMARY:
            logger.debug("Current primary: %s", state.name)
            return state.name
    logger.debug("No primary found")
    return None


def majority_is_reachable(members: Union[str, List[str]] = None,
    docker_host: str = DEFAULT_CHAOS_DOCKER_HOST,
    ssh_config_file: str = DEFAULT_CHAOS_SSH_CONFIG_FILE) -> bool:
    """
    Are more than half of the members reachable?

    :param members: Comma separated string or list of member names.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_MEMBERS)
    :type members: Union[str, List[str]]
    :return: bool
    """
    topology = current_topology(members, docker_host=docker_host,
                                ssh_config_file=ssh_config_file)
    reachable = len([state for state in topology if state.reachable])
    logger.debug("%d of %d members reachable", reachable, len(topology))
    return reachable * 2 > len(topology)
