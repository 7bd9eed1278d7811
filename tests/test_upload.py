import queue

import pytest
import requests

from conftest import FakeResponse, FakeSession, makeSample
from drivescan import upload
from drivescan.errors import UploadException
from drivescan.upload import UploadThread, signup

def test_endpoint():
    assert upload.endpoint('https://collect.example.com/', upload.UPLOAD_PATH) == 'https://collect.example.com/drive-data/app'
    with pytest.raises(UploadException):
        upload.endpoint('', upload.UPLOAD_PATH)

def test_uploads_in_batches(store):
    store.insertBatch([makeSample(ts) for ts in range(1000, 6000, 1000)])
    session = FakeSession(FakeResponse(200))
    uploader = UploadThread(None, 'https://collect.example.com', store, batchSize=2, session=session)
    assert uploader.uploadPending() == 5
    assert [len(call[2]['json']) for call in session.calls] == [2, 2, 1]
    assert session.calls[0][1] == 'https://collect.example.com/drive-data/app'
    assert session.calls[0][2]['json'][0]['timestamp'] == 1000
    assert 'id' not in session.calls[0][2]['json'][0]
    assert store.pendingCount() == 0
    # Uploading leaves the samples in place
    assert store.count() == 5

def test_retries_then_succeeds(store):
    store.insert(makeSample(1000))
    session = FakeSession(requests.ConnectionError("reset"), FakeResponse(502), FakeResponse(201))
    uploader = UploadThread(None, 'https://collect.example.com', store, attempts=3, session=session)
    assert uploader.uploadPending() == 1
    assert len(session.calls) == 3

def test_failed_batch_stays_pending(store):
    store.insertBatch([makeSample(1000), makeSample(2000)])
    session = FakeSession(FakeResponse(500))
    uploader = UploadThread(None, 'https://collect.example.com', store, attempts=2, session=session)
    with pytest.raises(UploadException):
        uploader.uploadPending()
    assert len(session.calls) == 2
    assert store.pendingCount() == 2

def test_thread_reports_completion(store):
    store.insert(makeSample(1000))
    q = queue.Queue()
    uploader = UploadThread(q, 'https://collect.example.com', store, session=FakeSession(FakeResponse(200)))
    uploader.start()
    uploader.join(5.0)
    assert q.get(timeout=1) == ['UploadComplete', {'uploaded': 1, 'ok': True}]

def test_thread_reports_failure(store):
    store.insert(makeSample(1000))
    q = queue.Queue()
    uploader = UploadThread(q, '', store, session=FakeSession(FakeResponse(200)))
    uploader.start()
    uploader.join(5.0)
    assert q.get(timeout=1) == ['UploadComplete', {'uploaded': 0, 'ok': False}]

def test_signup_success():
    session = FakeSession(FakeResponse(201, {'id': 1}))
    assert signup('https://collect.example.com', 'alice', 'secret', 'dev-1', session=session)
    method, url, kwargs = session.calls[0]
    assert url == 'https://collect.example.com/auth/signup'
    assert kwargs['json'] == {'username': 'alice', 'password': 'secret', 'device_id': 'dev-1'}

def test_signup_already_registered():
    session = FakeSession(FakeResponse(400, {'detail': 'Username already registered'}))
    assert signup('https://collect.example.com', 'alice', 'secret', 'dev-1', session=session)

@pytest.mark.parametrize('response', [
    FakeResponse(400, {'detail': 'Password too short'}),
    FakeResponse(400, ['not', 'a', 'dict']),
    FakeResponse(400, text='<html>'),
    FakeResponse(500),
    requests.ConnectionError("no route"),
])
def test_signup_failures(response):
    assert not signup('https://collect.example.com', 'alice', 'secret', 'dev-1', session=FakeSession(response))
