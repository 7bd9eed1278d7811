import time

import pytest

from drivescan.data import db, initDatabase, SampleStore, DriveSample
from drivescan.gnss import Location
from drivescan.radio import CellSnapshot, LteCell, ALL_CAPABILITIES

@pytest.fixture
def store(tmp_path):
    initDatabase(str(tmp_path / 'datastore.sqlite'))
    yield SampleStore()
    db.close()

def makeSample(timestamp, **kwargs):
    values = dict(deviceId='dev-1', timestamp=timestamp, latitude=48.1173, longitude=11.5167)
    values.update(kwargs)
    return DriveSample(**values)

class FakeResponse(object):
    def __init__(self, status_code, body=None, text=''):
        self.status_code = status_code
        self.body = body
        self.text = text

    def json(self):
        if self.body is None:
            raise ValueError("No JSON")
        return self.body

class FakeSession(object):
    """Stands in for requests.Session. Responses are handed out in order; an exception in the
    list is raised instead of returned."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __next(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        return self.__next('POST', url, kwargs)

    def get(self, url, **kwargs):
        return self.__next('GET', url, kwargs)

class FakeLocator(object):
    def __init__(self, fix=Location(48.1173, 11.5167, 545.4, 0.9, 1, 0), available=True):
        self.fix = fix
        self.available = available
        self.requests = []

    def isAvailable(self):
        return self.available

    def getCurrentFix(self, accuracyHint, timeout):
        self.requests.append((accuracyHint, timeout))
        return self.fix

class FakeCellSource(object):
    def __init__(self, snapshot=None, capabilities=ALL_CAPABILITIES):
        self.snap = snapshot or CellSnapshot('Test Mobile', '310260', [
            LteCell(ci=27447299, tac=29, earfcn=1300, rsrp=-95, rsrq=-10, sinr=12)])
        self.capabilities = capabilities

    def snapshot(self):
        return self.snap

class FakeSuite(object):
    def __init__(self, results=None):
        self.results = results or {}
        self.runs = []

    def run(self, selected):
        self.runs.append(set(selected))
        return {kind: result for kind, result in self.results.items() if kind in selected}

def waitFor(q, name, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        event = q.get(timeout=max(deadline - time.monotonic(), 0.01))
        if event[0] == name:
            return event
    raise AssertionError(f"No {name} event within {timeout}s")
