#!/usr/bin/env python3

import sys
import time
import queue
import logging
import argparse
import datetime

import serial

from drivescan import config as configuration
from drivescan.collector import DriveTestCollector, makeSession
from drivescan.data import SampleStore, initDatabase, exportJsonl
from drivescan.errors import ConfigError, RadioException, PersistenceFailure
from drivescan.gnss import GnssThread
from drivescan.probes import NetworkProbeSuite, Targets
from drivescan.radio import Modem, RadioSampler
from drivescan.upload import UploadThread, signup

log = logging.getLogger("drivescan")

def parseArgs(argv=None):
    parser = argparse.ArgumentParser(description='Drivescan drive-test collector.')
    parser.add_argument('-l', '--log', dest='logLevel', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], default='INFO', help='Set the logging level')
    parser.add_argument('-c', '--config', dest='config', help='YAML config file (default ./drivescan.yaml if present)')
    parser.add_argument('-d', '--database', dest='database', help='SQLite database path')
    commands = parser.add_subparsers(dest='command', required=True)

    collect = commands.add_parser('collect', help='Run a drive test until interrupted')
    collect.add_argument('--probes', help='Comma separated probes: upload,ping,dns,web,sms (empty for none)')
    collect.add_argument('--interval', type=float, help='Seconds between samples')
    collect.add_argument('--upload-url', dest='upload_url')
    collect.add_argument('--ping-host', dest='ping_host')
    collect.add_argument('--dns-host', dest='dns_host')
    collect.add_argument('--web-url', dest='web_url')
    collect.add_argument('--sms-number', dest='sms_number')
    collect.add_argument('--panel', action='store_true', default=None, help='Use the LED/button panel')

    upload = commands.add_parser('upload', help='Upload samples not yet sent')
    upload.add_argument('--server', help='Collection server base URL')

    register = commands.add_parser('signup', help='Register this device with the collection server')
    register.add_argument('--server', help='Collection server base URL')
    register.add_argument('--username')
    register.add_argument('--password')

    export = commands.add_parser('export', help='Write all samples to a JSON lines file')
    export.add_argument('-o', '--out', dest='out', help='Output file')

    commands.add_parser('status', help='Summarize stored samples')

    cleanup = commands.add_parser('cleanup', help='Delete samples older than some number of days')
    cleanup.add_argument('--days', type=float, required=True)

    wipe = commands.add_parser('wipe', help='Delete every stored sample')
    wipe.add_argument('--yes', action='store_true', help="Don't ask for confirmation")
    return parser.parse_args(argv)

def overridesFromArgs(args):
    overrides = {}
    if args.database:
        overrides['database'] = args.database
    if getattr(args, 'probes', None) is not None:
        overrides.setdefault('collection', {})['probes'] = [p for p in args.probes.split(',') if p.strip()]
    if getattr(args, 'interval', None) is not None:
        overrides.setdefault('collection', {})['interval_s'] = args.interval
    for key in ('upload_url', 'ping_host', 'dns_host', 'web_url', 'sms_number'):
        value = getattr(args, key, None)
        if value is not None:
            overrides.setdefault('targets', {})[key] = value
    if getattr(args, 'panel', None):
        overrides.setdefault('panel', {})['enabled'] = True
    if getattr(args, 'server', None):
        overrides.setdefault('server', {})['base_url'] = args.server
    for key in ('username', 'password'):
        value = getattr(args, key, None)
        if value is not None:
            overrides.setdefault('account', {})[key] = value
    return overrides

def sessionFromConfig(config):
    targets = config['targets']
    return makeSession(config['collection']['probes'],
                       Targets(uploadUrl=targets['upload_url'], pingHost=targets['ping_host'],
                               dnsHost=targets['dns_host'], webUrl=targets['web_url'],
                               smsNumber=targets['sms_number']),
                       config['collection']['interval_s'])

class Runner(object):
    """Owns the hardware threads and the collector, and routes events between them."""

    def __init__(self, config):
        self.config = config
        self.q = queue.Queue()
        self.store = SampleStore()
        self.permissions = configuration.Permissions.fromConfig(config)
        self.modem = None
        self.gnss = None
        self.panel = None
        self.upload = None
        self.collector = None

    def setup(self):
        log.info("Drivescan starting up.")
        modemConf = self.config['modem']
        self.modem = Modem(modemConf['port'], modemConf['baudrate'], modemConf['timeout_s'])
        try:
            self.modem.open()
        except (serial.SerialException, RadioException):
            # Carry on without cell info, the samples will say so in their notes
            log.exception("Could not open modem, collecting without cell info")
            self.modem = None

        gnssConf = self.config['gnss']
        self.gnss = GnssThread(gnssConf['port'], gnssConf['baudrate'], gnssConf['max_hdop'])
        self.gnss.start()

        self.collector = DriveTestCollector(
            self.store, self.gnss, self.modem, RadioSampler(), self.permissions, self.makeProbeSuite,
            deviceId=self.store.deviceId(), accuracy=gnssConf['accuracy'],
            fixTimeout=gnssConf['fix_timeout_s'])
        self.collector.subscribe(self.q)

        panelConf = self.config['panel']
        if panelConf['enabled']:
            from drivescan.panel import PanelThread
            self.panel = PanelThread(self.q, panelConf['led_pin'], panelConf['button_pin'])
            self.panel.start()

    def makeProbeSuite(self, targets):
        timeouts = self.config['timeouts']
        return NetworkProbeSuite(targets, permissions=self.permissions, smsSender=self.modem,
                                 httpTimeout=timeouts['http_s'], dnsTimeout=timeouts['dns_s'],
                                 smsTimeout=timeouts['sms_s'], graceTime=timeouts['grace_s'])

    def startCollection(self, session=None):
        return self.collector.start(session or sessionFromConfig(self.config))

    def stopCollection(self):
        return self.collector.stop()

    def setLed(self, mode):
        if self.panel is not None:
            self.panel.setLed(mode)

    # And now we just go into event loop
    def step(self, timeout=1.0):
        try:
            event = self.q.get(timeout=timeout)
        except queue.Empty:
            return
        log.debug(f"Received {event[0]}")

        if event[0] == 'DriveTestData':
            self.handleDriveTestData(event)
        elif event[0] == 'DriveTestStatus':
            self.handleDriveTestStatus(event)
        elif event[0] == 'PanelEvent':
            self.handlePanelEvent(event)
        elif event[0] == 'UploadComplete':
            self.handleUploadComplete(event)

    def handleDriveTestData(self, event):
        self.setLed('once')
        log.info(event[1]['preview'].replace("\n", " | "))

    def handleDriveTestStatus(self, event):
        log.info(event[1]['message'])
        if not event[1]['active']:
            self.setLed('off')

    def handlePanelEvent(self, event):
        if event[1]['type'] != 'CtlButton':
            return
        if event[1]['action'] == 'upload':
            self.uploadData()
        elif self.collector.status().active:
            self.stopCollection()
        else:
            try:
                self.startCollection()
            except ConfigError as e:
                log.error(f"Cannot start collection: {e}")

    def handleUploadComplete(self, event):
        log.info(f"Upload complete, {event[1]['uploaded']} samples sent.")
        self.setLed('off')

    def uploadData(self):
        if self.upload is not None and self.upload.is_alive():
            log.info("Upload already running")
            return
        server = self.config['server']
        self.setLed('blink')
        self.upload = UploadThread(self.q, server['base_url'], self.store, server['batch_size'],
                                   server['attempts'], server['timeout_s'])
        self.upload.start()

    def shutdown(self):
        if self.collector is not None:
            self.collector.close()
        if self.gnss is not None:
            self.gnss.stop()
        if self.panel is not None:
            self.panel.stop()
        if self.modem is not None:
            self.modem.close()

def exportAll(store, path=None):
    if not path:
        path = datetime.datetime.now().strftime('drivescan-export-%Y%m%d-%H%M%S.jsonl')
    return exportJsonl(store, path)

def runCollect(config, args):
    runner = Runner(config)
    runner.setup()
    try:
        if not runner.startCollection():
            return 1
        while True:
            runner.step()
    except KeyboardInterrupt:
        log.info("Interrupted, stopping.")
    finally:
        runner.shutdown()
    return 0

def runUpload(config, args):
    server = config['server']
    upload = UploadThread(None, server['base_url'], SampleStore(), server['batch_size'],
                          server['attempts'], server['timeout_s'])
    try:
        upload.uploadPending()
    except Exception:
        log.exception("Upload failed")
        return 1
    return 0

def runSignup(config, args):
    account = config['account']
    ok = signup(config['server']['base_url'], account['username'], account['password'],
                SampleStore().deviceId(), timeout=config['server']['timeout_s'])
    return 0 if ok else 1

def runExport(config, args):
    print(exportAll(SampleStore(), args.out))
    return 0

def runStatus(config, args):
    store = SampleStore()
    print(f"Device: {store.deviceId()}")
    print(f"Samples: {store.count()}")
    print(f"Not yet uploaded: {store.pendingCount()}")
    print(f"Technologies: {', '.join(store.distinctTechnologies()) or '-'}")
    print(f"Operators: {', '.join(store.distinctOperators()) or '-'}")
    return 0

def runCleanup(config, args):
    cutoff = int((time.time() - args.days * 86400) * 1000)
    print(f"Removed {SampleStore().deleteOlderThan(cutoff)} samples")
    return 0

def runWipe(config, args):
    if not args.yes and input("Delete every stored sample? [y/N] ").strip().lower() != 'y':
        return 1
    print(f"Removed {SampleStore().deleteAll()} samples")
    return 0

COMMANDS = {
    'collect': runCollect,
    'upload': runUpload,
    'signup': runSignup,
    'export': runExport,
    'status': runStatus,
    'cleanup': runCleanup,
    'wipe': runWipe,
}

def __main__(argv=None):
    args = parseArgs(argv)
    logging.basicConfig(level=getattr(logging, args.logLevel))
    try:
        config = configuration.loadConfig(args.config, overridesFromArgs(args))
        initDatabase(config['database'])
        sys.exit(COMMANDS[args.command](config, args))
    except ConfigError as e:
        log.error(f"Configuration problem: {e}")
        sys.exit(2)
    except PersistenceFailure as e:
        log.error(f"Database problem: {e}")
        sys.exit(3)

if __name__ == "__main__":
    __main__()
