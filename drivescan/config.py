import os
import copy
import logging

import yaml

from drivescan.errors import ConfigError

log = logging.getLogger('config')

# Note: Quectel modems expose several USB serial devices. On the EC25/RM500Q in their default
# composition ttyUSB1 carries NMEA and ttyUSB2 is the AT port.
DEFAULT_CONFIG = {
    'database': 'datastore.sqlite',
    'modem': {
        'port': '/dev/ttyUSB2',
        'baudrate': 115200,
        'timeout_s': 1.0,
    },
    'gnss': {
        'port': '/dev/ttyUSB1',
        'baudrate': 9600,
        'accuracy': 'high',
        'max_hdop': 5.0,
        'fix_timeout_s': 10.0,
    },
    'collection': {
        'interval_s': 5.0,
        'probes': ['ping', 'dns', 'web'],
    },
    'targets': {
        'upload_url': '',
        'ping_host': '8.8.8.8',
        'dns_host': 'example.com',
        'web_url': 'example.com',
        'sms_number': '',
    },
    'timeouts': {
        'http_s': 60.0,
        'dns_s': 10.0,
        'sms_s': 60.0,
        'grace_s': 5.0,
    },
    # Stand-ins for OS permission grants: a sensor box has no user to prompt, the operator
    # decides up front what the collector may do.
    'permissions': {
        'location': True,
        'sms': False,
    },
    'server': {
        'base_url': '',
        'batch_size': 500,
        'attempts': 5,
        'timeout_s': 20.0,
    },
    'account': {
        'username': '',
        'password': '',
    },
    'panel': {
        'enabled': False,
        'led_pin': 18,
        'button_pin': 4,
    },
}

def deepMerge(base, override):
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = deepMerge(base[key], value)
        else:
            base[key] = value
    return base

def loadYamlConfig(path):
    if not os.path.exists(path):
        raise ConfigError(f"Config file {path} does not exist")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a YAML mapping at the top level.")
    return data

def loadConfig(path=None, overrides=None):
    """
    Defaults, then the YAML file (if any, or ./drivescan.yaml if present), then overrides from
    the command line.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if not path and os.path.exists("drivescan.yaml"):
        path = "drivescan.yaml"
    if path:
        log.debug(f"Loading config from {path}")
        config = deepMerge(config, loadYamlConfig(path))
    if overrides:
        config = deepMerge(config, overrides)
    return config

class Permissions(object):
    def __init__(self, location=True, sms=False):
        self.location = location
        self.sms = sms

    @classmethod
    def fromConfig(cls, config):
        section = config.get('permissions', {})
        return cls(location=bool(section.get('location', True)), sms=bool(section.get('sms', False)))

    def locationGranted(self):
        return self.location

    def smsGranted(self):
        return self.sms
