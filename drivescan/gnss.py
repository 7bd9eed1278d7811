import threading
import time
import logging
from collections import namedtuple

import serial
import pynmea2

log = logging.getLogger('gnss')

Location = namedtuple('Location', ['lat', 'lon', 'alt', 'hdop', 'quality', 'time'])

HIGH_ACCURACY = 'high'
ANY_ACCURACY = 'any'

def parseFix(line, now=None):
    """Turn a GGA sentence into a Location, or None if it isn't one or has no fix."""
    if not line.startswith(("$GPGGA", "$GNGGA")):
        return None
    try:
        sentence = pynmea2.parse(line)
    except pynmea2.ParseError:
        log.debug(f"Unparseable NMEA: {line.strip()}")
        return None
    # Before gps_qual changes the results are either null or have very high error.
    if not sentence.gps_qual:
        return None
    hdop = float(sentence.horizontal_dil) if sentence.horizontal_dil else None
    return Location(sentence.latitude, sentence.longitude, sentence.altitude, hdop,
                    int(sentence.gps_qual), now if now is not None else time.time())

class GnssThread(threading.Thread):
    """
    Reads NMEA from the receiver and keeps the most recent fix around. The collector asks for a
    fix with getCurrentFix(), which waits for the next one to come in rather than handing back
    something stale.
    """

    def __init__(self, NMEAPort, baudrate=9600, maxHdop=5.0):
        threading.Thread.__init__(self, daemon=True)
        self.NMEAPort = NMEAPort
        self.baudrate = baudrate
        self.maxHdop = maxHdop
        self.live = True
        self.nmea = None
        self.latest = None
        self.fixArrived = threading.Condition()

    def run(self):
        log.debug(f"Listening for NMEA on {self.NMEAPort}...")
        try:
            self.nmea = serial.Serial(self.NMEAPort, self.baudrate, timeout=1)
        except serial.SerialException:
            log.exception(f"Could not open NMEA port {self.NMEAPort}")
            return

        while self.live:
            try:
                line = self.nmea.readline().decode('ASCII', errors='ignore')
            except serial.SerialException:
                log.exception("NMEA port read failed")
                break
            self.handleLine(line)
        self.nmea.close()

    def handleLine(self, line):
        fix = parseFix(line)
        if fix is not None:
            with self.fixArrived:
                self.latest = fix
                self.fixArrived.notify_all()

    def isAvailable(self):
        return self.is_alive() and self.nmea is not None and self.nmea.is_open

    def acceptable(self, fix, accuracyHint):
        if fix is None:
            return False
        if accuracyHint == HIGH_ACCURACY:
            return fix.hdop is not None and fix.hdop <= self.maxHdop
        return True

    def getCurrentFix(self, accuracyHint=HIGH_ACCURACY, timeout=10.0):
        """
        Wait up to timeout seconds for a fresh fix meeting accuracyHint. Returns None if nothing
        suitable arrives in time.
        """
        deadline = time.monotonic() + timeout
        with self.fixArrived:
            seen = self.latest
            while True:
                if self.latest is not seen and self.acceptable(self.latest, accuracyHint):
                    return self.latest
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self.fixArrived.wait(remaining)

    def stop(self):
        self.live = False
