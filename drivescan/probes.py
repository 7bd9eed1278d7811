import time
import logging
import enum
import socket
import subprocess
import concurrent.futures
from collections import namedtuple

import requests

from drivescan.errors import ProbeFailure

log = logging.getLogger('probes')

class ProbeKind(enum.Enum):
    # Declaration order is the order notes are reported in
    UPLOAD = 'HTTP Upload'
    PING = 'Ping Test'
    DNS = 'DNS Test'
    WEB = 'Web Test'
    SMS = 'SMS Test'

    @classmethod
    def parse(cls, name):
        """Accept either the enum name ('ping') or the label ('Ping Test')."""
        for kind in cls:
            if name.strip().lower() in (kind.name.lower(), kind.value.lower()):
                return kind
        raise ValueError(f"Unknown probe {name!r}")

ProbeResult = namedtuple('ProbeResult', ['value', 'note'])

# Per-probe targets, as configured for a collection session
Targets = namedtuple('Targets', ['uploadUrl', 'pingHost', 'dnsHost', 'webUrl', 'smsNumber'],
                     defaults=('', '', '', '', ''))

UPLOAD_PAYLOAD = b'x' * 1024
SMS_TEXT = "Drivescan test SMS"
PING_TIMEOUT = 5

def normalizeUrl(url):
    url = url.strip()
    if not url.startswith("http://") and not url.startswith("https://"):
        url = "https://" + url
    return url

def combinedNote(results):
    notes = []
    for kind in ProbeKind:
        result = results.get(kind)
        if result is not None and result.note:
            notes.append(f"{kind.value}: {result.note}")
    return "; ".join(notes)

class NetworkProbeSuite(object):
    """
    Runs whichever probes a session selected, all at once, one attempt each. A probe that fails
    or runs out of time only affects its own entry in the results.

    Positional arguments:
    targets -- Targets tuple naming what each probe talks to

    Keyword arguments:
    permissions -- object with smsGranted(); SMS is refused without it
    smsSender -- object with sendSms(number, text), normally the Modem
    httpTimeout -- seconds allowed for the upload and web requests
    graceTime -- extra seconds beyond a probe's own timeout before we stop waiting on it
    session -- requests.Session to use, mostly so tests can swap it
    """

    def __init__(self, targets, permissions=None, smsSender=None, httpTimeout=60.0,
                 dnsTimeout=10.0, smsTimeout=60.0, graceTime=5.0, session=None):
        self.targets = targets
        self.permissions = permissions
        self.smsSender = smsSender
        self.httpTimeout = httpTimeout
        self.dnsTimeout = dnsTimeout
        self.smsTimeout = smsTimeout
        self.graceTime = graceTime
        self.session = session or requests.Session()
        self.probes = {
            ProbeKind.UPLOAD: (self.runUpload, httpTimeout),
            ProbeKind.PING: (self.runPing, PING_TIMEOUT),
            ProbeKind.DNS: (self.runDns, dnsTimeout),
            ProbeKind.WEB: (self.runWeb, httpTimeout),
            ProbeKind.SMS: (self.runSms, smsTimeout),
        }

    def run(self, selected):
        selected = [kind for kind in ProbeKind if kind in set(selected)]
        results = {}
        if not selected:
            return results

        # Probes still running past their timeout are abandoned, not waited on
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=len(selected), thread_name_prefix='probe')
        try:
            futures = {}
            for kind in selected:
                timeout = self.probes[kind][1] + self.graceTime
                futures[kind] = (pool.submit(self.runOne, kind), timeout, time.monotonic() + timeout)
            for kind, (future, timeout, deadline) in futures.items():
                try:
                    results[kind] = future.result(timeout=max(0, deadline - time.monotonic()))
                except concurrent.futures.TimeoutError:
                    log.warning(f"{kind.value} did not finish within {timeout}s")
                    results[kind] = ProbeResult(None, f"Timed out after {timeout:g}s")
        finally:
            pool.shutdown(wait=False)
        return results

    def runOne(self, kind):
        probe = self.probes[kind][0]
        try:
            return probe()
        except ProbeFailure as e:
            return ProbeResult(None, str(e))
        except Exception as e:
            log.exception(f"{kind.value} error")
            return ProbeResult(None, f"{type(e).__name__}: {e}")

    def __require(self, target):
        if not target:
            raise ProbeFailure("No target configured")
        return target

    def runUpload(self):
        url = normalizeUrl(self.__require(self.targets.uploadUrl))
        log.debug(f"Starting HTTP upload test to {url}")
        start = time.monotonic()
        try:
            response = self.session.post(url, data=UPLOAD_PAYLOAD, timeout=self.httpTimeout,
                                         headers={'Content-Type': 'application/octet-stream'})
        except requests.RequestException as e:
            log.warning(f"HTTP upload test error: {e}")
            return ProbeResult(None, f"Upload error: {type(e).__name__}")
        duration = time.monotonic() - start

        if not 200 <= response.status_code < 300:
            log.warning(f"HTTP upload failed: {response.status_code}")
            return ProbeResult(None, f"Upload failed: HTTP {response.status_code}")
        # KB/s. A response faster than the clock can measure is clamped rather than dividing by 0
        rate = (len(UPLOAD_PAYLOAD) / 1024.0) / max(duration, 1e-6)
        log.debug(f"HTTP upload completed: {rate:.2f} KB/s")
        return ProbeResult(rate, "")

    def runPing(self):
        host = self.__require(self.targets.pingHost)
        log.debug(f"Starting ping test to {host}")
        start = time.monotonic()
        try:
            family, _, _, _, sockaddr = socket.getaddrinfo(host, None)[0]
        except socket.gaierror as e:
            return ProbeResult(None, f"Ping error: could not resolve {host} ({e})")
        address = sockaddr[0]
        command = ['ping', '-c', '1', '-W', str(PING_TIMEOUT)]
        if family == socket.AF_INET6:
            command.append('-6')
        try:
            result = subprocess.run(command + [address], capture_output=True, timeout=PING_TIMEOUT)
        except subprocess.TimeoutExpired:
            return ProbeResult(None, "Ping failed: Host not reachable")
        elapsed = (time.monotonic() - start) * 1000

        if result.returncode != 0:
            log.warning(f"Ping to {host} failed: host not reachable")
            return ProbeResult(None, "Ping failed: Host not reachable")
        log.debug(f"Ping test completed: {elapsed:.1f}ms")
        return ProbeResult(elapsed, "")

    def runDns(self):
        host = self.__require(self.targets.dnsHost)
        log.debug(f"Starting DNS test for {host}")
        start = time.monotonic()
        try:
            infos = socket.getaddrinfo(host, None)
        except socket.gaierror as e:
            log.warning(f"DNS test error: {e}")
            return ProbeResult(None, f"DNS error: {e}")
        elapsed = (time.monotonic() - start) * 1000
        # getaddrinfo repeats each address once per socket type
        addresses = {info[4][0] for info in infos}
        log.debug(f"DNS test completed: {elapsed:.1f}ms, resolved {len(addresses)} addresses")
        return ProbeResult(elapsed, f"Resolved {len(addresses)} addresses")

    def runWeb(self):
        url = normalizeUrl(self.__require(self.targets.webUrl))
        log.debug(f"Starting web test to {url}")
        start = time.monotonic()
        try:
            response = self.session.get(url, timeout=self.httpTimeout)
        except requests.RequestException as e:
            log.warning(f"Web test error: {e}")
            return ProbeResult(None, f"Web error: {type(e).__name__}")
        elapsed = (time.monotonic() - start) * 1000

        # A 404 still took a round trip, so the timing counts either way
        if not 200 <= response.status_code < 300:
            log.warning(f"Web test failed: {response.status_code}")
            return ProbeResult(elapsed, f"Web request failed: HTTP {response.status_code}")
        return ProbeResult(elapsed, "")

    def runSms(self):
        if self.permissions is None or not self.permissions.smsGranted():
            return ProbeResult(None, "SMS permission denied")
        number = self.__require(self.targets.smsNumber)
        if self.smsSender is None:
            return ProbeResult(None, "SMS unavailable: no messaging capability")

        log.debug(f"Starting SMS test to {number}")
        start = time.monotonic()
        try:
            self.smsSender.sendSms(number, f"{SMS_TEXT} {int(time.time() * 1000)}")
        except Exception as e:
            log.warning(f"Failed to send SMS: {e}")
            return ProbeResult(None, f"SMS error: {e}")
        # Time until the modem accepted the message, not until it was delivered
        elapsed = (time.monotonic() - start) * 1000
        log.info(f"SMS queued in {elapsed:.0f}ms")
        return ProbeResult(elapsed, "")
