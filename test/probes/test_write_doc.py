from pymongo.errors import WriteConcernError

from chaosmongo.probes.write_doc import write_doc_and_check
from test.fakes import FakeClient


def test_write_doc_and_check():
    client = FakeClient()
    assert write_doc_and_check(client=client)
    assert client.documents[0]['testId'].startswith('smoke-')
    # A client that was passed in is left open
    assert not client.closed


def test_write_doc_and_check_failed_commit():
    error = WriteConcernError("waiting for replication timed out", code=64,
                              details={'codeName': 'WriteConcernFailed'})
    client = FakeClient(commit_error=error)
    assert not write_doc_and_check(client=client)
    assert client.documents == []
