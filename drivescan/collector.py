import math
import time
import queue
import logging
import threading
import concurrent.futures
from collections import namedtuple

from drivescan.data import DriveSample, NO_METRIC
from drivescan.errors import ConfigError, PersistenceFailure
from drivescan.gnss import HIGH_ACCURACY
from drivescan.probes import ProbeKind, Targets, combinedNote
from drivescan.radio import UNAVAILABLE, pickRegistered

log = logging.getLogger('collector')

CollectionSession = namedtuple('CollectionSession', ['probes', 'targets', 'interval'])
CollectorStatus = namedtuple('CollectorStatus', ['active', 'sampleCount', 'latest'])

PROBE_FIELDS = {
    ProbeKind.UPLOAD: 'httpUploadRate',
    ProbeKind.PING: 'pingResponseTime',
    ProbeKind.DNS: 'dnsResponseTime',
    ProbeKind.WEB: 'webResponseTime',
    ProbeKind.SMS: 'smsEnqueueTime',
}

def makeSession(probes, targets=None, interval=5.0):
    """Build a CollectionSession, rejecting anything the tick loop couldn't run with."""
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or not math.isfinite(interval) or interval <= 0:
        raise ConfigError(f"Collection interval must be a positive number of seconds, got {interval!r}")
    kinds = set()
    for probe in probes:
        if isinstance(probe, ProbeKind):
            kinds.add(probe)
            continue
        try:
            kinds.add(ProbeKind.parse(probe))
        except ValueError as e:
            raise ConfigError(str(e)) from e
    return CollectionSession(frozenset(kinds), targets or Targets(), float(interval))

def previewText(sample, count):
    lines = [f"{sample.technology} - {sample.operatorName}",
             f"{sample.latitude:.6f}, {sample.longitude:.6f}"]
    if sample.cellId != -1:
        lines.append(f"Cell ID: {sample.cellId}")
    if sample.arfcn != -1:
        lines.append(f"ARFCN: {sample.arfcn} ({sample.actualFrequency})")
    for name, unit in (('rsrp', 'dBm'), ('rsrq', 'dB'), ('rscp', 'dBm'), ('rxLev', 'dBm')):
        value = getattr(sample, name)
        if value != UNAVAILABLE:
            lines.append(f"{name.upper()}: {value} {unit}")
    for kind, name in PROBE_FIELDS.items():
        value = getattr(sample, name)
        if value > 0:
            unit = 'KB/s' if kind == ProbeKind.UPLOAD else 'ms'
            lines.append(f"{kind.value}: {value:.2f} {unit}")
    lines.append(f"Sample #{count}")
    return "\n".join(lines)

class DriveTestCollector(object):
    """
    Runs the drive test: while active, each tick takes a location fix, reads the registered cell
    and runs the selected network probes side by side, merges it all into one DriveSample and
    stores it. Ticks are strictly one after another on a single background thread.

    Anything interested in progress (the panel, the CLI) calls subscribe() and gets a queue of
    events, in the same ['EventName', payload] shape the rest of the program passes around:

    ['DriveTestStatus', {'active': bool, 'sampleCount': int, 'message': str}]
    ['DriveTestData', {'sampleCount': int, 'sample': DriveSample, 'preview': str}]

    Positional arguments:
    store -- SampleStore samples are written to
    locator -- location provider with isAvailable() and getCurrentFix(accuracyHint, timeout)
    cellSource -- object with snapshot() and capabilities (normally the Modem), or None
    sampler -- RadioSampler
    permissions -- Permissions
    probeSuiteFactory -- called with a session's Targets, returns something with run(selected)

    Keyword arguments:
    deviceId -- identifier stamped on every sample
    accuracy -- accuracy hint passed to the locator
    fixTimeout -- seconds to wait for a fix before giving up on the tick
    clock -- returns wall time in seconds, swappable for tests
    """

    def __init__(self, store, locator, cellSource, sampler, permissions, probeSuiteFactory,
                 deviceId='unknown_device', accuracy=HIGH_ACCURACY, fixTimeout=10.0, clock=time.time):
        self.store = store
        self.locator = locator
        self.cellSource = cellSource
        self.sampler = sampler
        self.permissions = permissions
        self.probeSuiteFactory = probeSuiteFactory
        self.deviceId = deviceId
        self.accuracy = accuracy
        self.fixTimeout = fixTimeout
        self.clock = clock

        self.active = False
        self.sampleCount = 0
        self.latest = None
        self.session = None
        self.stopEvent = None
        self.thread = None
        self.subscribers = []
        self.subscriberLock = threading.Lock()

    def subscribe(self, q=None):
        if q is None:
            q = queue.Queue()
        with self.subscriberLock:
            self.subscribers.append(q)
        return q

    def unsubscribe(self, q):
        with self.subscriberLock:
            if q in self.subscribers:
                self.subscribers.remove(q)

    def publish(self, name, payload):
        with self.subscriberLock:
            subscribers = list(self.subscribers)
        for q in subscribers:
            q.put([name, payload])

    def status(self):
        return CollectorStatus(self.active, self.sampleCount, self.latest)

    def start(self, session):
        """
        Begin collecting. Returns False (and changes nothing) if a drive test is already running.
        Raises ConfigError for a session that can't be run.
        """
        if self.active:
            log.warning("Drive test already active")
            return False
        session = makeSession(session.probes, session.targets, session.interval)

        # A previous loop may still be finishing its last tick; let it, so ticks never overlap.
        if self.thread is not None and self.thread.is_alive():
            log.debug("Waiting for previous collection loop to finish")
            self.thread.join()

        self.sampleCount = 0
        self.latest = None
        self.session = session
        self.stopEvent = threading.Event()
        suite = self.probeSuiteFactory(session.targets)
        self.active = True
        self.publish('DriveTestStatus', {'active': True, 'sampleCount': 0, 'message': "Drive test active"})

        self.thread = threading.Thread(target=self.__loop, args=(self.stopEvent, session, suite),
                                       name='collector', daemon=True)
        self.thread.start()

        probes = ", ".join(kind.value for kind in ProbeKind if kind in session.probes) or "none"
        log.info(f"Drive test started, every {session.interval:g}s, probes: {probes}")
        for name, value in session.targets._asdict().items():
            if value:
                log.info(f"  {name}: {value}")
        return True

    def stop(self):
        """
        Stop collecting. Returns False if idle. A tick already underway is left to finish, and the
        final DriveTestStatus goes out from the loop thread once it has, so its count is settled.
        """
        if not self.active:
            log.warning("Drive test not active")
            return False
        self.stopEvent.set()
        self.active = False
        self.session = None
        log.info("Drive test stopping")
        return True

    def join(self, timeout=None):
        if self.thread is not None:
            self.thread.join(timeout)

    def close(self):
        if self.active:
            self.stop()
        self.join()

    def __loop(self, stopEvent, session, suite):
        while not stopEvent.is_set():
            try:
                self.tick(session, suite)
            except Exception:
                log.exception("Error collecting data sample")
            stopEvent.wait(session.interval)
        message = f"Drive test completed - {self.sampleCount} samples collected"
        self.publish('DriveTestStatus', {'active': False, 'sampleCount': self.sampleCount, 'message': message})
        log.info(f"Drive test stopped. Total samples: {self.sampleCount}")

    def tick(self, session, suite):
        """One collection cycle. Returns the stored DriveSample, or None if this tick produced nothing."""
        if not self.permissions.locationGranted():
            log.warning("Location permission not granted")
            return None
        if not self.locator.isAvailable():
            log.warning("GNSS not available")
            return None

        fix = self.locator.getCurrentFix(self.accuracy, self.fixTimeout)
        if fix is None:
            log.warning("No location fix, skipping this sample")
            return None

        with concurrent.futures.ThreadPoolExecutor(max_workers=2, thread_name_prefix='tick') as pool:
            radio = pool.submit(self.sampleRadio)
            probes = pool.submit(suite.run, session.probes)
            measurement = radio.result()
            results = probes.result()

        sample = self.merge(fix, measurement, results)
        try:
            self.store.saveLocation(fix)
            self.store.insert(sample)
        except PersistenceFailure:
            log.exception("Could not store sample, it has been dropped")
            return None

        self.sampleCount += 1
        self.latest = sample
        self.publish('DriveTestData', {'sampleCount': self.sampleCount, 'sample': sample,
                                       'preview': previewText(sample, self.sampleCount)})
        log.debug(f"Data sample #{self.sampleCount} collected with probes: {sorted(k.name for k in session.probes)}")
        return sample

    def sampleRadio(self):
        notes = []
        cell = operator = plmn = capabilities = None
        permitted = self.permissions.locationGranted()
        if self.cellSource is None:
            notes.append("No cell source available")
        elif permitted:
            try:
                snapshot = self.cellSource.snapshot()
                cell = pickRegistered(snapshot.cells)
                operator, plmn = snapshot.operator, snapshot.plmn
                capabilities = self.cellSource.capabilities
            except Exception as e:
                log.warning(f"Reading cell info failed: {e}")
                notes.append(f"Error collecting cellular info: {e}")
        return self.sampler.sample(cell, notes, locationPermitted=permitted, operator=operator,
                                   plmn=plmn, capabilities=capabilities)

    def merge(self, fix, measurement, results):
        metrics = {}
        for kind, name in PROBE_FIELDS.items():
            result = results.get(kind)
            metrics[name] = result.value if result is not None and result.value is not None else NO_METRIC
        return DriveSample(deviceId=self.deviceId, timestamp=int(self.clock() * 1000),
                           latitude=fix.lat, longitude=fix.lon, testNotes=combinedNote(results),
                           **measurement.asDict(), **metrics)
