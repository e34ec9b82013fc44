import json
import shutil
import tempfile
from enum import Enum
from logzero import logger
from os import makedirs
from os.path import join
from psutil import Process, NoSuchProcess, AccessDenied

from typing import Union, Dict, List

def get_chaos_temp_dir() -> str:
    """
    Create a temporary directory unique to each chaos job.

    The temporary directory will take the form <tempdir>/chaosmongo.<pid>
    The <pid> will be the pid of the 'run.py' job runner (or the 'chaos'
    process) iff it exists. Otherwise, the current process's pid.

    :return: str
    """
    # Get current process info
    myp = Process()
    subprocess_pid = myp.pid
    chaos_pid = None
    # Walk all the way up the process tree
    while(1):
        #  Break when we find the job runner
        try:
            cmdline = " ".join(myp.cmdline())
        except AccessDenied:
            cmdline = ""
        if myp.name() == 'chaos' or 'run.py' in cmdline:
            logger.debug("Found job runner process %s", myp.pid)
            chaos_pid = myp.pid
            break
        try:
            parent = myp.ppid()
            if not parent:
                raise NoSuchProcess(parent)
            myp = Process(parent)
            logger.debug("myp.name=%s", myp.name())
        except NoSuchProcess as e:
            logger.debug("Did not find job runner pid before traversing all " \
                         "the way to the top of the process tree! " \
                         "Defaulting to %s", subprocess_pid)
            chaos_pid = subprocess_pid
            break

    logger.debug("subprocess pid: %s chaos pid: %s", subprocess_pid, chaos_pid)
    tempdir_path = "{}/chaosmongo.{}".format(tempfile.gettempdir(), chaos_pid)
    makedirs(tempdir_path, exist_ok=True)
    logger.debug("tempdir: %s", tempdir_path)
    return tempdir_path

def remove_chaos_temp_dir(cleanup: bool = True) -> bool:
    """
    Remove the chaos temp directory created by get_chaos_temp_dir

    :param cleanup: Perform the cleanup task?
    :type cleanup: bool
        Optional. (Default: True)
    :return: bool
    """
    temp_dir = get_chaos_temp_dir()
    if cleanup:
        logger.debug("Recursively deleting %s", temp_dir)
        try:
            shutil.rmtree(temp_dir)
        except OSError as e:
            logger.error("Failed to recursively delete the contents of %s",
                         temp_dir)
            logger.exception(e)
            return False
    else:
        logger.info("Skip removal of %s.", temp_dir)
    return True

def read_state_file(name: str) -> Dict:
    """
    Load a JSON state file from the chaos temp dir.

    Returns an empty dict if the state file does not exist.

    :param name: State file name. Required.
    :type name: str
    :return: Dict
    """
    path = join(get_chaos_temp_dir(), name)
    try:
        with open(path, 'r') as state_file:
            return json.load(state_file)
    except FileNotFoundError:
        logger.debug("State file %s does not exist", path)
        return {}

def write_state_file(name: str, state: Dict) -> None:
    """
    Write a JSON state file into the chaos temp dir, replacing it.

    :param name: State file name. Required.
    :type name: str
    :param state: JSON serializable document. Required.
    :type state: Dict
    :return: None
    """
    path = join(get_chaos_temp_dir(), name)
    with open(path, 'w') as state_file:
        json.dump(state, state_file, sort_keys=True, indent=4)

def get_members(members: Union[str, List[str]] = None) -> List[str]:
    """
    Normalize a replica set member list.

    Members may be given as a comma separated string (as they are on the
    command line) or a list. The order is preserved; it is the order in which
    members are declared to the replica set.

    :param members: Comma separated string or list of member names.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_MEMBERS)
    :type members: Union[str, List[str]]
    :return: List[str]
    """
    if members is None:
        members = DEFAULT_CHAOS_MEMBERS
    if isinstance(members, str):
        members = members.split(",")
    return [member.strip() for member in members if member.strip()]

class FaultStrategy(Enum):
    """
    All supported ways of taking a replica set member out of service.
    """
    # "docker stop" - graceful shutdown, the member refuses connections
    STOP = 1
    # "docker kill" - SIGKILL, no graceful shutdown
    KILL = 2
    # "docker pause" - frozen process, sockets stay open but never answer
    PAUSE = 3
    # iptables DROP inside the container, the member keeps running
    PARTITION = 4

    @classmethod
    def has_value(cls, value):
        return any(value == item.value for item in cls)

class MemberRole(Enum):
    """
    Role of a replica set member as seen from outside the storage engine.
    """
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    UNREACHABLE = "UNREACHABLE"
    DOWN = "DOWN"
    PAUSED = "PAUSED"


# Chaos defaults
# Please keep defaults in lexically acending order by name
DEFAULT_CHAOS_BOUNDED_COMMIT_TIMEOUT_MS=1500
DEFAULT_CHAOS_BOUNDED_OPERATION_TIMEOUT_MS=1000
DEFAULT_CHAOS_BOUNDED_SERVER_SELECTION_TIMEOUT_MS=30000
DEFAULT_CHAOS_BOUNDED_SOCKET_TIMEOUT_MS=30000
DEFAULT_CHAOS_BOUNDED_WRITE_CONCERN_TIMEOUT_MS=2000
DEFAULT_CHAOS_CHECKPOINT_DELAY=0
DEFAULT_CHAOS_COLLECTION="testcollection"
DEFAULT_CHAOS_COMMAND_TIMEOUT=60
DEFAULT_CHAOS_DATABASE="testdb"
DEFAULT_CHAOS_DOCKER_HOST=None
DEFAULT_CHAOS_HEALTH_CHECK_SLEEP=2
DEFAULT_CHAOS_HEALTH_CHECK_TRIES=30
DEFAULT_CHAOS_MEMBERS="mongo1,mongo2,mongo3"
DEFAULT_CHAOS_MEMBER_PORT=27017
DEFAULT_CHAOS_REPLICA_SET="rs0"
DEFAULT_CHAOS_SSH_CONFIG_FILE="~/.ssh/config"
DEFAULT_CHAOS_STEPDOWN_SECONDS=60
DEFAULT_CHAOS_UNBOUNDED_SERVER_SELECTION_TIMEOUT_MS=300000
DEFAULT_CHAOS_URI="mongodb://mongo1:27017,mongo2:27017,mongo3:27017/?replicaSet=rs0"
DEFAULT_CHAOS_WATCHDOG_TIMEOUT=60

# State files kept in the chaos temp dir
DISRUPTED_MEMBERS_STATE_FILE="disrupted_members"
