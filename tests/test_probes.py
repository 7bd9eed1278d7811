import socket
import subprocess
import threading
import time

import pytest
import requests

from conftest import FakeResponse, FakeSession
from drivescan import probes
from drivescan.config import Permissions
from drivescan.probes import NetworkProbeSuite, ProbeKind, ProbeResult, Targets

class FakeSender(object):
    def __init__(self, delay=0.0, error=None):
        self.delay = delay
        self.error = error
        self.sent = []
        self.release = threading.Event()

    def sendSms(self, number, text):
        self.sent.append((number, text))
        if self.delay:
            self.release.wait(self.delay)
        if self.error is not None:
            raise self.error
        return "+CMGS: 1\n"

def test_nothing_selected():
    assert NetworkProbeSuite(Targets()).run([]) == {}

def test_probe_kind_parse():
    assert ProbeKind.parse('ping') == ProbeKind.PING
    assert ProbeKind.parse('Web Test') == ProbeKind.WEB
    assert ProbeKind.parse(' SMS ') == ProbeKind.SMS
    with pytest.raises(ValueError):
        ProbeKind.parse('traceroute')

def test_normalize_url():
    assert probes.normalizeUrl('example.com') == 'https://example.com'
    assert probes.normalizeUrl('http://example.com/x') == 'http://example.com/x'
    assert probes.normalizeUrl(' https://example.com ') == 'https://example.com'

def test_upload_posts_payload():
    session = FakeSession(FakeResponse(200))
    suite = NetworkProbeSuite(Targets(uploadUrl='upload.example.com'), session=session)
    result = suite.run([ProbeKind.UPLOAD])[ProbeKind.UPLOAD]
    assert result.value > 0
    assert result.note == ''
    method, url, kwargs = session.calls[0]
    assert (method, url) == ('POST', 'https://upload.example.com')
    assert len(kwargs['data']) == 1024
    assert kwargs['headers']['Content-Type'] == 'application/octet-stream'

def test_upload_failures():
    suite = NetworkProbeSuite(Targets(uploadUrl='https://upload.example.com'),
                              session=FakeSession(FakeResponse(503)))
    assert suite.runOne(ProbeKind.UPLOAD) == ProbeResult(None, "Upload failed: HTTP 503")

    suite = NetworkProbeSuite(Targets(uploadUrl='https://upload.example.com'),
                              session=FakeSession(requests.ConnectionError("refused")))
    assert suite.runOne(ProbeKind.UPLOAD) == ProbeResult(None, "Upload error: ConnectionError")

def test_missing_target():
    suite = NetworkProbeSuite(Targets())
    assert suite.runOne(ProbeKind.PING) == ProbeResult(None, "No target configured")

IPV4 = [(socket.AF_INET, socket.SOCK_STREAM, 6, '', ('192.0.2.1', 0))]
IPV6 = [(socket.AF_INET6, socket.SOCK_STREAM, 6, '', ('2001:db8::1', 0, 0, 0))]

def test_ping(monkeypatch):
    monkeypatch.setattr(socket, 'getaddrinfo', lambda host, port: IPV4)
    calls = []
    def fakeRun(args, **kwargs):
        calls.append(args)
        return subprocess.CompletedProcess(args, 0, b'', b'')
    monkeypatch.setattr(subprocess, 'run', fakeRun)

    result = NetworkProbeSuite(Targets(pingHost='ping.example.com')).runOne(ProbeKind.PING)
    assert result.value >= 0
    assert result.note == ''
    assert calls == [['ping', '-c', '1', '-W', '5', '192.0.2.1']]

def test_ping_ipv6_only_host(monkeypatch):
    monkeypatch.setattr(socket, 'getaddrinfo', lambda host, port: IPV6)
    calls = []
    def fakeRun(args, **kwargs):
        calls.append(args)
        return subprocess.CompletedProcess(args, 0, b'', b'')
    monkeypatch.setattr(subprocess, 'run', fakeRun)

    result = NetworkProbeSuite(Targets(pingHost='v6.example.com')).runOne(ProbeKind.PING)
    assert result.note == ''
    assert calls == [['ping', '-c', '1', '-W', '5', '-6', '2001:db8::1']]

def test_ping_unreachable(monkeypatch):
    monkeypatch.setattr(socket, 'getaddrinfo', lambda host, port: IPV4)
    monkeypatch.setattr(subprocess, 'run', lambda args, **kwargs: subprocess.CompletedProcess(args, 1, b'', b''))
    result = NetworkProbeSuite(Targets(pingHost='192.0.2.1')).runOne(ProbeKind.PING)
    assert result == ProbeResult(None, "Ping failed: Host not reachable")

def test_dns(monkeypatch):
    infos = [
        (socket.AF_INET, socket.SOCK_STREAM, 6, '', ('93.184.216.34', 0)),
        (socket.AF_INET, socket.SOCK_DGRAM, 17, '', ('93.184.216.34', 0)),
        (socket.AF_INET6, socket.SOCK_STREAM, 6, '', ('2606:2800:220:1::', 0, 0, 0)),
    ]
    monkeypatch.setattr(socket, 'getaddrinfo', lambda host, port: infos)
    result = NetworkProbeSuite(Targets(dnsHost='example.com')).runOne(ProbeKind.DNS)
    assert result.value >= 0
    assert result.note == "Resolved 2 addresses"

def test_dns_failure(monkeypatch):
    def fail(host, port):
        raise socket.gaierror(-2, 'Name or service not known')
    monkeypatch.setattr(socket, 'getaddrinfo', fail)
    result = NetworkProbeSuite(Targets(dnsHost='nope.invalid')).runOne(ProbeKind.DNS)
    assert result.value is None
    assert result.note.startswith("DNS error:")

def test_web_keeps_timing_on_error_status():
    suite = NetworkProbeSuite(Targets(webUrl='example.com/missing'), session=FakeSession(FakeResponse(404)))
    result = suite.runOne(ProbeKind.WEB)
    assert result.value >= 0
    assert result.note == "Web request failed: HTTP 404"

    suite = NetworkProbeSuite(Targets(webUrl='example.com'), session=FakeSession(requests.Timeout()))
    assert suite.runOne(ProbeKind.WEB) == ProbeResult(None, "Web error: Timeout")

def test_sms_permission_and_sender():
    targets = Targets(smsNumber='+15555550100')
    denied = NetworkProbeSuite(targets, permissions=Permissions(sms=False), smsSender=FakeSender())
    assert denied.runOne(ProbeKind.SMS) == ProbeResult(None, "SMS permission denied")

    noSender = NetworkProbeSuite(targets, permissions=Permissions(sms=True))
    assert noSender.runOne(ProbeKind.SMS) == ProbeResult(None, "SMS unavailable: no messaging capability")

    sender = FakeSender()
    allowed = NetworkProbeSuite(targets, permissions=Permissions(sms=True), smsSender=sender)
    result = allowed.runOne(ProbeKind.SMS)
    assert result.value >= 0
    assert result.note == ''
    assert sender.sent[0][0] == '+15555550100'
    assert sender.sent[0][1].startswith(probes.SMS_TEXT)

    failing = NetworkProbeSuite(targets, permissions=Permissions(sms=True),
                                smsSender=FakeSender(error=RuntimeError("+CMS ERROR: 500")))
    assert failing.runOne(ProbeKind.SMS) == ProbeResult(None, "SMS error: +CMS ERROR: 500")

def test_slow_probe_does_not_affect_others(monkeypatch):
    monkeypatch.setattr(socket, 'getaddrinfo', lambda host, port: [(0, 0, 0, '', ('192.0.2.7', 0))])
    sender = FakeSender(delay=10.0)
    suite = NetworkProbeSuite(Targets(dnsHost='example.com', smsNumber='+15555550100'),
                              permissions=Permissions(sms=True), smsSender=sender,
                              smsTimeout=0.1, graceTime=0.1)
    try:
        results = suite.run([ProbeKind.DNS, ProbeKind.SMS])
    finally:
        sender.release.set()
    assert results[ProbeKind.DNS].note == "Resolved 1 addresses"
    assert results[ProbeKind.SMS] == ProbeResult(None, "Timed out after 0.2s")

def test_unexpected_exception_is_contained(monkeypatch):
    def broken(host, port):
        raise OSError("network is down")
    monkeypatch.setattr(socket, 'getaddrinfo', broken)
    result = NetworkProbeSuite(Targets(pingHost='example.com')).runOne(ProbeKind.PING)
    assert result == ProbeResult(None, "OSError: network is down")

def test_combined_note_order():
    results = {
        ProbeKind.WEB: ProbeResult(12.0, "Web request failed: HTTP 500"),
        ProbeKind.PING: ProbeResult(None, "Ping failed: Host not reachable"),
        ProbeKind.DNS: ProbeResult(3.0, ""),
    }
    assert probes.combinedNote(results) == ("Ping Test: Ping failed: Host not reachable; "
                                            "Web Test: Web request failed: HTTP 500")
    assert probes.combinedNote({}) == ''

def test_sms_permission_checked_before_target():
    suite = NetworkProbeSuite(Targets(), permissions=Permissions(sms=False), smsSender=FakeSender())
    assert suite.runOne(ProbeKind.SMS) == ProbeResult(None, "SMS permission denied")
    suite = NetworkProbeSuite(Targets(), permissions=Permissions(sms=True), smsSender=FakeSender())
    assert suite.runOne(ProbeKind.SMS) == ProbeResult(None, "No target configured")

def test_timeouts_run_side_by_side():
    release = threading.Event()
    class HangingSession(object):
        def post(self, url, **kwargs):
            release.wait(10.0)
            return FakeResponse(200)
    sender = FakeSender(delay=10.0)
    suite = NetworkProbeSuite(Targets(uploadUrl='upload.example.com', smsNumber='+15555550100'),
                              permissions=Permissions(sms=True), smsSender=sender,
                              httpTimeout=0.3, smsTimeout=0.3, graceTime=0, session=HangingSession())
    start = time.monotonic()
    try:
        results = suite.run([ProbeKind.UPLOAD, ProbeKind.SMS])
    finally:
        release.set()
        sender.release.set()
    elapsed = time.monotonic() - start
    assert results[ProbeKind.UPLOAD].note == "Timed out after 0.3s"
    assert results[ProbeKind.SMS].note == "Timed out after 0.3s"
    assert elapsed < 0.55
