import argparse
import sys

from chaosmongo import run
from chaosmongo.common import *
from chaosmongo.policy import TimeoutPolicy
from chaosmongo.transaction import (
    Committed,
    create_client,
    generate_run_id,
    inserts,
    run_transaction,
)
from logzero import logger

from typing import Union


def write_doc_and_check(uri: str = DEFAULT_CHAOS_URI,
                        database: str = DEFAULT_CHAOS_DATABASE,
                        collection: str = DEFAULT_CHAOS_COLLECTION,
                        client=None) -> bool:
    """
    Commit a single document in a bounded transaction and read it back with
    majority read concern.
    """
    policy = TimeoutPolicy.bounded()
    close = client is None
    if client is None:
        client = create_client(policy, uri)
    run_id = generate_run_id('smoke')
    try:
        outcome = run_transaction(client, policy, inserts(1), run_id=run_id,
                                  database=database, collection=collection)
        if not isinstance(outcome, Committed):
            logger.error("Smoke write %s did not commit: %s", run_id, outcome)
            return False
        coll = client[database].get_collection(
            collection, read_concern=policy.read_concern())
        document = coll.find_one({'testId': run_id})
        if document is None:
            logger.error("Smoke write %s committed but cannot be read back",
                         run_id)
            return False
        logger.info("Smoke write %s committed and read back", run_id)
        return True
    finally:
        if close:
            client.close()


def write_doc(uri: str = DEFAULT_CHAOS_URI,
              database: str = DEFAULT_CHAOS_DATABASE,
              collection: str = DEFAULT_CHAOS_COLLECTION,
              timeout: Union[str,int] = '60') -> bool:
    """
    Write a document to the replica set and confirm/check that it was
    successful by reading it back. Not idempotent.

    :param uri: Replica set connection string.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_URI)
    :type uri: str
    :param database: Database name.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_DATABASE)
    :type database: str
    :param collection: Collection name.
        Optional. (Default: chaosmongo.common.DEFAULT_CHAOS_COLLECTION)
    :type collection: str
    :param timeout: Seconds to wait for the write and read before giving up.
        Optional. (Default: 60)
    :type timeout: Union[str,int]
    :return: bool
    """
    logger.debug("uri: %s database: %s collection: %s timeout: %s", uri,
                 database, collection, timeout)
    finished, succeeded = run(write_doc_and_check, int(timeout), uri=uri,
                              database=database, collection=collection)
    return finished and succeeded

if __name__ == "__main__":
    parser = argparse.ArgumentParser()

    parser.add_argument("uri", nargs='?', default=DEFAULT_CHAOS_URI,
        help="Replica set connection string")
    parser.add_argument("timeout", nargs='?', default='60',
        help="timeout")

    args = parser.parse_args()

    if not write_doc(uri=args.uri, timeout=args.timeout):
        sys.exit(1)
