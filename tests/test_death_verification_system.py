import json

import pytest

from death_verification_system import DEFAULTS, DeathVerificationSystem, load_config
from notification_manager import NotificationManager
from release_coordinator import BackgroundDispatcher, InlineDispatcher


def test_missing_config_writes_sample(tmp_path):
    path = tmp_path / 'config.json'
    with pytest.raises(FileNotFoundError):
        load_config(str(path))
    sample = json.loads(path.read_text())
    assert sample['admin_token'] == 'change-me'
    assert sample['release_permission'] == 'can_verify_death'


def test_missing_required_key(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'database_path': 'x.db'}))
    with pytest.raises(ValueError, match='admin_token'):
        load_config(str(path))


def test_defaults_are_filled_in(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'database_path': str(tmp_path / 'a.db'), 'admin_token': 't',
                                'sweep_time': '04:15'}))
    config = load_config(str(path))
    assert config['sweep_time'] == '04:15'
    assert config['default_auto_resolve_days'] == DEFAULTS['default_auto_resolve_days']

    system = DeathVerificationSystem.from_config_file(str(path))
    assert isinstance(system.notifications, NotificationManager)
    assert isinstance(system.coordinator.dispatcher, BackgroundDispatcher)
    assert system.scheduler.at_time == '04:15'
    assert system.admin_token == 't'


def test_synchronous_notifications(config):
    system = DeathVerificationSystem(config)
    assert isinstance(system.coordinator.dispatcher, InlineDispatcher)


def test_invalid_release_permission(config):
    with pytest.raises(ValueError):
        DeathVerificationSystem({**config, 'release_permission': 'anyone'})
