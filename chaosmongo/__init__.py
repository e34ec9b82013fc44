"""
chaosmongo module

This module contains:
 - actions that modify the state of a MongoDB replica set: stop, kill, pause
   or partition a member, restore it, step down the primary. (actions
   directory)
 - probes that gather data/information about replica set state. (probes
   directory)
 - a timeout policy, a transaction executor and a failure classifier (policy,
   transaction and classifier modules)
 - named scenarios that combine all of the above (scenarios module)
 - common files (common directory)
 - A command execution tool built on Python Fabric/Invoke used to drive the
   Docker host (execute directory).

The question every scenario answers is the same: does a transaction whose
timeouts are bounded always terminate with a classified error when the
replica set loses its majority, and does a transaction with unbounded
timeouts visibly hang?

A hang cannot be observed from inside the hanging call. Scenarios therefore
run the transaction under an external watchdog (see `run` below). When the
watchdog gives up, the scenario is 'suspended'. That is the expected result
for an unbounded policy and the most severe bug for a bounded one.

Faults are injected at checkpoints inside the transaction (before an
operation, before commit) so they land at a reproducible point of the
transaction lifecycle. The actions behind the checkpoints block until the
fault has taken effect at the Docker level.

Things to consider when adding or modifying actions and/or probes:
1. Actions and Probes could/may be used outside of scenarios for other
   kinds of integration or systems testing. Therefore, actions should
   be written in a way they can reused outside of the context of the
   chaosmongo module.
2. Two scenarios that toggle member availability must never run at the same
   time. The scenarios module serializes them.
"""
import threading

from logzero import logger

from typing import Any, Tuple


def run(callable, timeout: float, *args, **kwargs) -> Tuple[bool, Any]:
    """
    Run a blocking callable under a wall clock watchdog.

    The callable runs on a daemon thread. If it has not returned after
    `timeout` seconds the watchdog stops waiting and returns (False, None).
    The thread is NOT cancelled: a call blocked on a socket without a timeout
    stays blocked until the process exits. This is a known limitation; the
    driver offers no hard cancellation of an in-flight call.

    An exception raised by the callable is re-raised in the caller.

    :param callable: A function pointer
    :type callable: Callable
    :param timeout: Number of seconds the function is allowed to execute
        before timing out.
    :type timeout: float
    :param *args: Expanded list of arguments to pass to the function
    :type *args: Any
    :param **kwargs: Expanded keyword arguments to pass to the function
    :type **kwargs: Any
    :return: Tuple[bool, Any] - (finished, return value)
    """
    outcome = {}

    def target():
        try:
            outcome['result'] = callable(*args, **kwargs)
        except BaseException as e:
            outcome['error'] = e

    worker = threading.Thread(target=target, daemon=True,
                              name="watchdog-{}".format(
                                  getattr(callable, '__name__', 'callable')))
    worker.start()
    worker.join(timeout=timeout)
    if worker.is_alive():
        logger.error("Call to %s timed out after %s seconds!!!", callable,
                     timeout)
        return False, None
    if 'error' in outcome:
        raise outcome['error']
    return True, outcome.get('result')
