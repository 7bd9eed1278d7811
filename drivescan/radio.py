import threading
import time
import logging
import enum
from collections import namedtuple
from dataclasses import dataclass, fields

import serial

from drivescan import frequency
from drivescan.errors import RadioException

log = logging.getLogger('radio')

# Sentinel for signal fields we couldn't read. Outside every valid dBm/dB range, and not 0 (a
# plausible SINR).
UNAVAILABLE = 2**31 - 1

class Capability(enum.Enum):
    CELL_IDENTITY = 'cell identity'
    CHANNEL = 'channel number'
    SIGNAL = 'signal strength'
    NR_IDENTITY = '5G cell identity'
    NR_SIGNAL = '5G signal strength'

ALL_CAPABILITIES = frozenset(Capability)
LTE_ONLY_CAPABILITIES = frozenset([Capability.CELL_IDENTITY, Capability.CHANNEL, Capability.SIGNAL])

# Raw readings, one per radio technology. These are what a cell source hands us; any field can be
# None if the radio didn't report it.
@dataclass
class GsmCell:
    cid: int = None
    lac: int = None
    arfcn: int = None
    rxLev: int = None
    registered: bool = True

@dataclass
class WcdmaCell:
    cid: int = None
    lac: int = None
    uarfcn: int = None
    rscp: int = None
    ecNo: int = None
    registered: bool = True

@dataclass
class LteCell:
    ci: int = None
    tac: int = None
    earfcn: int = None
    rsrp: int = None
    rsrq: int = None
    sinr: int = None
    registered: bool = True

@dataclass
class NrCell:
    nci: int = None
    tac: int = None
    nrarfcn: int = None
    ssRsrp: int = None
    ssRsrq: int = None
    ssSinr: int = None
    registered: bool = True

CellSnapshot = namedtuple('CellSnapshot', ['operator', 'plmn', 'cells'])

@dataclass(frozen=True)
class CellMeasurement:
    technology: str = 'Unknown'
    plmnId: str = ''
    lac: int = -1
    rac: int = -1
    tac: int = -1
    cellId: int = -1
    frequencyBand: str = 'Unknown'
    arfcn: int = -1
    actualFrequency: str = 'Unknown'
    rsrp: int = UNAVAILABLE
    rsrq: int = UNAVAILABLE
    rscp: int = UNAVAILABLE
    ecNo: int = UNAVAILABLE
    rxLev: int = UNAVAILABLE
    sinr: int = UNAVAILABLE
    operatorName: str = 'Unknown'
    notes: str = ''

    def asDict(self):
        return {f.name: getattr(self, f.name) for f in fields(self)}

SIGNAL_GROUPS = {
    'GSM': ('rxLev',),
    'WCDMA': ('rscp', 'ecNo'),
    'LTE': ('rsrp', 'rsrq', 'sinr'),
    'NR': ('rsrp', 'rsrq', 'sinr'),
}

class MeasurementBuilder(object):
    """
    Accumulates a CellMeasurement one extraction step at a time. Notes are only ever appended,
    including any notes carried in from earlier steps.
    """

    def __init__(self, notes=()):
        if isinstance(notes, str):
            notes = [notes] if notes else []
        self.values = {}
        self.notes = list(notes)

    def set(self, **values):
        self.values.update(values)

    def note(self, text):
        self.notes.append(text)

    def take(self, name, value, missingNote):
        if value is None or value == UNAVAILABLE:
            self.note(missingNote)
            return False
        self.values[name] = value
        return True

    def setChannel(self, family, channel, missingNote):
        if self.take('arfcn', channel, missingNote):
            actual, band = frequency.lookup(family, channel)
            self.values['actualFrequency'] = actual
            self.values['frequencyBand'] = band

    def build(self):
        return CellMeasurement(notes='; '.join(self.notes), **self.values)

def pickRegistered(cells):
    for cell in cells or []:
        if getattr(cell, 'registered', False):
            return cell
    return None

class RadioSampler(object):
    def __init__(self, capabilities=ALL_CAPABILITIES):
        self.capabilities = frozenset(capabilities)
        self.extractors = {
            GsmCell: ('GSM', self.__extractGsm),
            WcdmaCell: ('WCDMA', self.__extractWcdma),
            LteCell: ('LTE', self.__extractLte),
            NrCell: ('NR', self.__extractNr),
        }

    def sample(self, cell, notes=(), locationPermitted=True, operator=None, plmn=None, capabilities=None):
        """
        Normalize one registered cell reading into a CellMeasurement. Never raises for a bad or
        missing reading; what couldn't be read ends up in the notes and the fields stay at their
        unknown values.
        """
        caps = self.capabilities if capabilities is None else frozenset(capabilities)
        builder = MeasurementBuilder(notes)
        builder.set(operatorName=operator or 'Unknown')

        if plmn and len(plmn) >= 5:
            builder.set(plmnId=plmn)
        else:
            builder.note("PLMN ID not available")

        if not locationPermitted:
            builder.note("Fine location permission required for detailed cell info")
            return builder.build()

        if cell is None:
            builder.note("No registered cell found")
            return builder.build()

        entry = self.extractors.get(type(cell))
        if entry is None:
            builder.note(f"Unsupported cell type: {type(cell).__name__}")
            return builder.build()

        technology, extract = entry
        builder.set(technology=technology)
        try:
            extract(cell, builder, caps)
        except Exception as e:
            log.warning(f"{technology} cell analysis failed: {e}")
            builder.note(f"{technology} analysis error: {e}")
        return builder.build()

    def __extractGsm(self, cell, builder, caps):
        if Capability.CELL_IDENTITY in caps:
            builder.take('cellId', cell.cid, "GSM cell ID not reported")
            builder.take('lac', cell.lac, "GSM LAC not reported")
        else:
            builder.note("CID and LAC not supported by this radio")

        if Capability.CHANNEL in caps:
            builder.setChannel('GSM', cell.arfcn, "ARFCN not reported")
        else:
            builder.note("ARFCN not supported by this radio")

        if Capability.SIGNAL in caps:
            builder.take('rxLev', cell.rxLev, "RxLev not reported")
        else:
            builder.note("GSM signal strength not supported by this radio")

    def __extractWcdma(self, cell, builder, caps):
        if Capability.CELL_IDENTITY in caps:
            builder.take('cellId', cell.cid, "WCDMA cell ID not reported")
            builder.take('lac', cell.lac, "WCDMA LAC not reported")
        else:
            builder.note("CID and LAC not supported by this radio")

        if Capability.CHANNEL in caps:
            builder.setChannel('UMTS', cell.uarfcn, "UARFCN not reported")
        else:
            builder.note("UARFCN not supported by this radio")

        if Capability.SIGNAL in caps:
            builder.take('rscp', cell.rscp, "RSCP not available")
            builder.take('ecNo', cell.ecNo, "EcNo not available")
        else:
            builder.note("WCDMA signal strength not supported by this radio")

    def __extractLte(self, cell, builder, caps):
        if Capability.CELL_IDENTITY in caps:
            builder.take('cellId', cell.ci, "LTE cell ID not reported")
            builder.take('tac', cell.tac, "TAC not reported")
        else:
            builder.note("TAC and CI not supported by this radio")

        if Capability.CHANNEL in caps:
            builder.setChannel('LTE', cell.earfcn, "EARFCN not reported")
        else:
            builder.note("EARFCN not supported by this radio")

        if Capability.SIGNAL in caps:
            builder.take('rsrp', cell.rsrp, "RSRP not available")
            builder.take('rsrq', cell.rsrq, "RSRQ not available")
            builder.take('sinr', cell.sinr, "SINR not available")
        else:
            builder.note("LTE signal strength not supported by this radio")

    def __extractNr(self, cell, builder, caps):
        if Capability.NR_IDENTITY in caps:
            builder.take('cellId', cell.nci, "5G cell ID not reported")
            builder.take('tac', cell.tac, "5G TAC not reported")
        else:
            builder.note("5G cell identifiers not supported by this radio")

        if Capability.CHANNEL in caps:
            builder.setChannel('NR', cell.nrarfcn, "5G ARFCN not reported")
        else:
            builder.note("NR-ARFCN not supported by this radio")

        if Capability.NR_SIGNAL in caps:
            builder.take('rsrp', cell.ssRsrp, "SS-RSRP not available")
            builder.take('rsrq', cell.ssRsrq, "SS-RSRQ not available")
            builder.take('sinr', cell.ssSinr, "SS-SINR not available")
        else:
            builder.note("5G signal measurements not supported by this radio")

# Modem models known to report NR cells in AT+QENG. Anything else is treated as LTE-only.
NR_MODEL_PREFIXES = ('RM5', 'RG5', 'RM2', 'RG2')

def _intOrNone(value, base=10):
    value = value.strip().strip('"')
    if value in ('', '-'):
        return None
    try:
        return int(value, base)
    except ValueError:
        return None

def parseServingCell(lines):
    """
    Parse the reply to AT+QENG="servingcell" into a list of raw cell readings.

    Single-mode replies put everything on one line:
        +QENG: "servingcell","NOCONN","LTE","FDD",310,260,1A2D003,123,5230,13,5,5,1D,-95,-10,-65,75,...
    While NR NSA splits it up, the LTE anchor is the registered cell:
        +QENG: "servingcell","NOCONN"
        +QENG: "LTE","FDD",310,260,1A2D003,123,5230,13,5,5,1D,-95,-10,-65,75,...
        +QENG: "NR5G-NSA",310,260,371,-92,15,-11,632736,78
    Returns (plmn, cells).
    """
    cells = []
    plmn = None
    registered = True
    for line in lines.split("\n"):
        line = line.strip()
        if not line.startswith("+QENG:"):
            continue
        items = [item.strip().strip('"') for item in line[len("+QENG:"):].split(',')]
        if items[0] == "servingcell":
            # SEARCH and LIMSRV mean we're camped at best, not registered
            registered = len(items) > 1 and items[1] in ("NOCONN", "CONNECT")
            items = items[2:]
        if not items:
            continue

        rat = items[0]
        try:
            if rat == "LTE":
                cells.append(LteCell(
                    ci=_intOrNone(items[4], 16), tac=_intOrNone(items[10], 16),
                    earfcn=_intOrNone(items[6]), rsrp=_intOrNone(items[11]),
                    rsrq=_intOrNone(items[12]), sinr=_sinrDb(_intOrNone(items[14])),
                    registered=registered))
                plmn = items[2] + items[3]
            elif rat == "WCDMA":
                cells.append(WcdmaCell(
                    cid=_intOrNone(items[4], 16), lac=_intOrNone(items[3], 16),
                    uarfcn=_intOrNone(items[5]), rscp=_intOrNone(items[8]),
                    ecNo=_intOrNone(items[9]), registered=registered))
                plmn = items[1] + items[2]
            elif rat == "GSM":
                cells.append(GsmCell(
                    cid=_intOrNone(items[4], 16), lac=_intOrNone(items[3], 16),
                    arfcn=_intOrNone(items[6]), rxLev=_intOrNone(items[8]),
                    registered=registered))
                plmn = items[1] + items[2]
            elif rat == "NR5G-SA":
                cells.append(NrCell(
                    nci=_intOrNone(items[4], 16), tac=_intOrNone(items[6], 16),
                    nrarfcn=_intOrNone(items[7]), ssRsrp=_intOrNone(items[10]),
                    ssRsrq=_intOrNone(items[11]), ssSinr=_intOrNone(items[12]),
                    registered=registered))
                plmn = items[2] + items[3]
            elif rat == "NR5G-NSA":
                # Secondary leg only, no cell identity is reported for it
                cells.append(NrCell(
                    nrarfcn=_intOrNone(items[7]), ssRsrp=_intOrNone(items[4]),
                    ssRsrq=_intOrNone(items[6]), ssSinr=_intOrNone(items[5]),
                    registered=False))
            else:
                log.debug(f"Ignoring serving cell line for RAT {rat}")
        except IndexError:
            log.warning(f"Failed to parse serving cell line: {line}")

    return plmn, cells

def _sinrDb(raw):
    # LTE SINR comes back in 1/5 dB steps offset by 20 dB (0-250 -> -20..30 dB)
    if raw is None:
        return None
    return round(raw / 5 - 20)

def parseOperator(lines):
    # +COPS: 0,0,"T-Mobile",7
    for line in lines.split("\n"):
        if line.startswith("+COPS:"):
            items = line[len("+COPS:"):].split(',')
            if len(items) >= 3:
                return items[2].strip().strip('"')
    return None

class Modem(object):
    """
    Talks to a Quectel-style cellular modem over its AT port. Used both as the cell source for the
    radio sampler and as the SMS sender for the SMS probe, which can end up calling in from
    different threads during the same tick, so every exchange with the port holds self.lock.
    """

    def __init__(self, ATPort, baudrate=115200, timeout=1.0, commandTimeout=10.0):
        self.ATPort = ATPort
        self.baudrate = baudrate
        self.timeout = timeout
        self.commandTimeout = commandTimeout
        self.atx = None
        self.model = None
        self.capabilities = LTE_ONLY_CAPABILITIES
        self.lock = threading.Lock()

    def open(self):
        self.atx = serial.Serial(self.ATPort, self.baudrate, timeout=self.timeout)
        self.__atReset()
        self.model = self.command('AT+GMM').strip()
        log.info(f"Connected to modem {self.model}")
        if self.model.upper().startswith(NR_MODEL_PREFIXES):
            self.capabilities = ALL_CAPABILITIES
        # Long alphanumeric operator names in AT+COPS?
        self.command('AT+COPS=3,0', errorOK=True)
        self.command('AT+CMGF=1', errorOK=True)

    def close(self):
        if self.atx is not None and self.atx.is_open:
            self.atx.close()

    def isOpen(self):
        return self.atx is not None and self.atx.is_open

    def snapshot(self):
        operator = parseOperator(self.command('AT+COPS?', errorOK=True))
        plmn, cells = parseServingCell(self.command('AT+QENG="servingcell"'))
        return CellSnapshot(operator, plmn, cells)

    def sendSms(self, number, text):
        """Hand a text message to the modem. Returns once the modem has accepted it for sending."""
        with self.lock:
            self.atx.reset_input_buffer()
            self.atx.write(f'AT+CMGS="{number}"\r'.encode('ASCII'))
            prompt = self.atx.read_until(b'> ')
            if not prompt.endswith(b'> '):
                self.__cancelSms()
                raise RadioException(f"Modem did not prompt for message text, got {prompt!r}")
            self.atx.write(text.encode('ASCII', errors='replace') + b'\x1a')
            try:
                return self.__readResponse(b'AT+CMGS', timeout=60.0)
            except RadioException:
                self.__cancelSms()
                raise

    def __cancelSms(self):
        # ESC leaves text entry mode without sending, otherwise the next commands become message body
        self.atx.write(b'\x1b')
        self.atx.reset_input_buffer()

    def command(self, command, errorOK=False):
        if isinstance(command, str):
            command = command.encode('ASCII')
        with self.lock:
            self.atx.write(command + b'\r\n')
            log.debug(f"Sent command {command}")
            return self.__readResponse(command, errorOK=errorOK)

    def __atReset(self):
        log.debug("Reset modem")
        self.atx.write(b'\r\n') # Clear any partial command it may have received
        self.atx.write(b'ATZ\r\n') # Soft reset modem (turns off weird modes)
        time.sleep(1)
        self.atx.reset_input_buffer()
        self.command('ATE0', errorOK=True)
        self.command('AT+CMEE=2', errorOK=True)

    def __readResponse(self, command, errorOK=False, timeout=None):
        deadline = time.monotonic() + (timeout or self.commandTimeout)
        data = ''
        while time.monotonic() < deadline:
            line = self.atx.readline().decode('ASCII', errors='ignore').strip()
            if line == "" or line == command.decode('ASCII'):
                # Blank, serial read timeout, or an echo that survived ATE0
                continue
            if line == "OK":
                return data
            if line == "ERROR" or line.startswith("+CME ERROR") or line.startswith("+CMS ERROR"):
                if errorOK:
                    return data
                raise RadioException(f"Command {command}, Expected OK but got {line}")
            log.debug(f"AT Reply: {line}")
            data += line + '\n'
        raise RadioException(f"Command {command} timed out")
