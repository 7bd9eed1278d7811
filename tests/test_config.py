import pytest

from drivescan import config
from drivescan.config import Permissions
from drivescan.errors import ConfigError

def test_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    loaded = config.loadConfig()
    assert loaded == config.DEFAULT_CONFIG
    assert loaded is not config.DEFAULT_CONFIG

def test_yaml_file_merges_over_defaults(tmp_path):
    path = tmp_path / 'drivescan.yaml'
    path.write_text("collection:\n  interval_s: 10\ntargets:\n  ping_host: 1.1.1.1\n")
    loaded = config.loadConfig(str(path))
    assert loaded['collection']['interval_s'] == 10
    assert loaded['collection']['probes'] == ['ping', 'dns', 'web']
    assert loaded['targets']['ping_host'] == '1.1.1.1'
    assert loaded['targets']['dns_host'] == 'example.com'

def test_overrides_win(tmp_path):
    path = tmp_path / 'drivescan.yaml'
    path.write_text("server:\n  base_url: https://a.example.com\n")
    loaded = config.loadConfig(str(path), {'server': {'base_url': 'https://b.example.com'}})
    assert loaded['server']['base_url'] == 'https://b.example.com'
    assert loaded['server']['attempts'] == 5

def test_picks_up_local_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / 'drivescan.yaml').write_text("database: local.sqlite\n")
    assert config.loadConfig()['database'] == 'local.sqlite'

def test_bad_files(tmp_path):
    with pytest.raises(ConfigError):
        config.loadYamlConfig(str(tmp_path / 'missing.yaml'))
    broken = tmp_path / 'broken.yaml'
    broken.write_text("targets: [unclosed\n")
    with pytest.raises(ConfigError):
        config.loadYamlConfig(str(broken))
    listing = tmp_path / 'list.yaml'
    listing.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        config.loadYamlConfig(str(listing))

def test_empty_file_is_defaults(tmp_path):
    empty = tmp_path / 'empty.yaml'
    empty.write_text("")
    assert config.loadYamlConfig(str(empty)) == {}

def test_permissions():
    permissions = Permissions.fromConfig({'permissions': {'location': False, 'sms': True}})
    assert not permissions.locationGranted()
    assert permissions.smsGranted()
    defaults = Permissions.fromConfig({})
    assert defaults.locationGranted()
    assert not defaults.smsGranted()
