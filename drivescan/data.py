import json
import uuid
import functools
import logging
import datetime
from dataclasses import dataclass, fields, asdict

from peewee import *
from peewee import PeeweeException
from playhouse.sqlite_ext import AutoIncrementField

from drivescan.errors import PersistenceFailure
from drivescan.radio import UNAVAILABLE

log = logging.getLogger('data')

# Deferred so the path can come from configuration. Samples are kept after upload so that old
# data can be recovered from the sensor if there's some failure of the collection server; only
# explicit cleanup or wipe removes them.
db = SqliteDatabase(None)

# Stand-in for a probe that wasn't run or didn't produce a number
NO_METRIC = -1.0

@dataclass(frozen=True)
class DriveSample:
    deviceId: str
    timestamp: int
    latitude: float
    longitude: float
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
    httpUploadRate: float = NO_METRIC
    pingResponseTime: float = NO_METRIC
    dnsResponseTime: float = NO_METRIC
    webResponseTime: float = NO_METRIC
    smsEnqueueTime: float = NO_METRIC
    testNotes: str = ''
    # Assigned by the store, None until the sample has been read back out of it
    id: int = None

    def toWire(self):
        """The dict sent to the collection server: everything but our row id, plus a readable time."""
        wire = asdict(self)
        del wire['id']
        when = datetime.datetime.fromtimestamp(self.timestamp / 1000, tz=datetime.timezone.utc)
        wire['timestampText'] = when.strftime('%Y-%m-%d %H:%M:%S')
        return wire

SAMPLE_FIELDS = [f.name for f in fields(DriveSample) if f.name != 'id']

class DriveRecord(Model):
    # AUTOINCREMENT so ids are never reused after a cleanup, the upload watermark depends on it
    id = AutoIncrementField()
    deviceId = CharField()
    timestamp = BigIntegerField(index=True)
    latitude = FloatField()
    longitude = FloatField()
    technology = CharField(index=True)
    plmnId = CharField()
    lac = IntegerField()
    rac = IntegerField()
    tac = IntegerField()
    cellId = BigIntegerField()
    frequencyBand = CharField()
    arfcn = IntegerField()
    actualFrequency = CharField()
    rsrp = IntegerField()
    rsrq = IntegerField()
    rscp = IntegerField()
    ecNo = IntegerField()
    rxLev = IntegerField()
    sinr = IntegerField()
    operatorName = CharField(index=True)
    notes = TextField()
    httpUploadRate = FloatField()
    pingResponseTime = FloatField()
    dnsResponseTime = FloatField()
    webResponseTime = FloatField()
    smsEnqueueTime = FloatField()
    testNotes = TextField()

    class Meta:
        database = db
        table_name = 'drive_sample'

    def toSample(self):
        return DriveSample(id=self.id, **{name: getattr(self, name) for name in SAMPLE_FIELDS})

class Location(Model):
    # Every fix a tick used, including ticks whose sample was later dropped. Handy as a GPX-ish
    # track of where the sensor has been.
    time = DateTimeField()
    lat = FloatField()
    lon = FloatField()
    alt = FloatField(null=True)

    class Meta:
        database = db

class Setting(Model):
    key = CharField(primary_key=True)
    value = TextField()

    class Meta:
        database = db

MODELS = [DriveRecord, Location, Setting]

def initDatabase(path):
    db.init(path, pragmas={'journal_mode': 'wal'})
    db.connect(reuse_if_open=True)
    db.create_tables(MODELS)
    return db

def _wrapped(method):
    # Surface any database problem as our own PersistenceFailure
    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except PeeweeException as e:
            raise PersistenceFailure(f"{method.__name__} failed: {e}") from e
    return wrapper

class SampleStore(object):
    """
    Append-only storage for drive samples. The collector is the only writer; uploads only move a
    watermark kept in the Setting table, the samples themselves are never modified.
    """

    BATCH_SIZE = 100

    @_wrapped
    def insert(self, sample):
        return DriveRecord.insert(**self.__row(sample)).execute()

    @_wrapped
    def insertBatch(self, samples):
        rows = [self.__row(s) for s in samples]
        with db.atomic():
            for start in range(0, len(rows), self.BATCH_SIZE):
                DriveRecord.insert_many(rows[start:start + self.BATCH_SIZE]).execute()
        return len(rows)

    def __row(self, sample):
        return {name: getattr(sample, name) for name in SAMPLE_FIELDS}

    def __newestFirst(self, query):
        return [r.toSample() for r in query.order_by(DriveRecord.timestamp.desc(), DriveRecord.id.desc())]

    @_wrapped
    def queryAll(self):
        return self.__newestFirst(DriveRecord.select())

    @_wrapped
    def queryByTimeRange(self, start, end):
        return self.__newestFirst(DriveRecord.select().where(DriveRecord.timestamp.between(start, end)))

    @_wrapped
    def queryByTechnology(self, technology):
        return self.__newestFirst(DriveRecord.select().where(DriveRecord.technology == technology))

    @_wrapped
    def queryByOperator(self, operator):
        return self.__newestFirst(DriveRecord.select().where(DriveRecord.operatorName == operator))

    @_wrapped
    def distinctTechnologies(self):
        query = DriveRecord.select(DriveRecord.technology).distinct().order_by(DriveRecord.technology)
        return [r.technology for r in query]

    @_wrapped
    def distinctOperators(self):
        query = DriveRecord.select(DriveRecord.operatorName).distinct().order_by(DriveRecord.operatorName)
        return [r.operatorName for r in query]

    @_wrapped
    def count(self):
        return DriveRecord.select().count()

    @_wrapped
    def deleteOlderThan(self, timestamp):
        """Retention cleanup. Removes samples strictly older than timestamp (epoch ms)."""
        removed = DriveRecord.delete().where(DriveRecord.timestamp < timestamp).execute()
        log.info(f"Removed {removed} samples older than {timestamp}")
        return removed

    @_wrapped
    def deleteAll(self):
        removed = DriveRecord.delete().execute()
        Location.delete().execute()
        log.info(f"Wiped {removed} samples")
        return removed

    @_wrapped
    def saveLocation(self, fix, when=None):
        Location.create(time=when or datetime.datetime.now(), lat=fix.lat, lon=fix.lon, alt=fix.alt)

    def __getSetting(self, key, default=None):
        row = Setting.get_or_none(Setting.key == key)
        return row.value if row is not None else default

    def __putSetting(self, key, value):
        Setting.insert(key=key, value=value).on_conflict_replace().execute()

    @_wrapped
    def deviceId(self):
        """Stable per installation: generated the first time it's asked for, then kept in the database."""
        with db.atomic():
            value = self.__getSetting('deviceId')
            if value is None:
                value = str(uuid.uuid4())
                self.__putSetting('deviceId', value)
                log.info(f"Generated device ID {value}")
        return value

    @_wrapped
    def queryPending(self, limit=500):
        """Oldest-first samples that haven't been confirmed uploaded yet."""
        watermark = int(self.__getSetting('uploadedThrough', 0))
        query = DriveRecord.select().where(DriveRecord.id > watermark).order_by(DriveRecord.id).limit(limit)
        return [r.toSample() for r in query]

    @_wrapped
    def pendingCount(self):
        watermark = int(self.__getSetting('uploadedThrough', 0))
        return DriveRecord.select().where(DriveRecord.id > watermark).count()

    @_wrapped
    def markUploaded(self, lastId):
        self.__putSetting('uploadedThrough', str(lastId))

def exportJsonl(store, path):
    """Write every stored sample, newest first, one JSON object per line. Returns the path."""
    with open(path, 'w', encoding='utf-8') as out:
        for sample in store.queryAll():
            out.write(json.dumps(sample.toWire()) + '\n')
    log.info(f"Exported samples to {path}")
    return path
