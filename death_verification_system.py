#!/usr/bin/env python3
"""
Afternote death-verification system
Loads configuration and wires the store, notifications, release coordinator,
verification engine and sweep scheduler together.
"""

import json
import logging
from typing import Dict

from notification_manager import NotificationManager
from release_coordinator import BackgroundDispatcher, InlineDispatcher, ReleaseCoordinator
from sweep_scheduler import SweepScheduler
from trustee_policy import DEFAULT_RELEASE_PERMISSION, ReleaseGate
from verification_engine import VerificationEngine
from verification_models import utcnow
from verification_store import DatabaseManager

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

REQUIRED_KEYS = ['database_path', 'admin_token']

DEFAULTS = {
    'log_file': 'afternote.log',
    'smtp_server': 'smtp.gmail.com',
    'smtp_port': 587,
    'release_permission': DEFAULT_RELEASE_PERMISSION,
    'default_auto_resolve_days': 30,
    'sweep_time': '02:00',
    'sweep_poll_seconds': 60,
    'max_write_retries': 5,
    'async_notifications': True,
    'pidfile': '/tmp/afternote_sweep.pid',
}


def configure_logging(log_file: str = None, level=logging.INFO):
    """Configure logging"""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


def create_sample_config(config_file: str):
    """Create a sample configuration file"""
    sample_config = {
        "database_path": "afternote.db",
        "admin_token": "change-me",
        "log_file": "afternote.log",
        "email": "your_email@gmail.com",
        "email_password": "your_app_password",
        "smtp_server": "smtp.gmail.com",
        "smtp_port": 587,
        "smtp_from": "Afternote <no-reply@example.com>",
        "twilio_sid": "your_twilio_sid",
        "twilio_token": "your_twilio_token",
        "twilio_phone": "+1234567890",
        "release_permission": DEFAULT_RELEASE_PERMISSION,
        "default_auto_resolve_days": 30,
        "sweep_time": "02:00",
        "max_write_retries": 5,
        "async_notifications": True
    }

    with open(config_file, 'w') as f:
        json.dump(sample_config, f, indent=2)

    logger.info(f"Sample config created at {config_file}")


def load_config(config_file: str = "config.json") -> Dict:
    """Load configuration from JSON file"""
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except FileNotFoundError:
        logger.error(f"Config file {config_file} not found")
        create_sample_config(config_file)
        raise

    for key in REQUIRED_KEYS:
        if key not in config:
            raise ValueError(f"Missing required config key: {key}")

    return {**DEFAULTS, **config}


class DeathVerificationSystem:
    """Main Afternote release system"""

    def __init__(self, config: Dict, notifications=None, dispatcher=None, clock=None):
        self.config = {**DEFAULTS, **config}
        self.db = DatabaseManager(self.config['database_path'])
        self.notifications = notifications or NotificationManager(self.config, db=self.db)
        if dispatcher is None:
            dispatcher = BackgroundDispatcher() if self.config['async_notifications'] else InlineDispatcher()
        clock = clock or utcnow
        self.coordinator = ReleaseCoordinator(self.db, self.notifications, dispatcher, clock=clock)
        self.engine = VerificationEngine(
            self.db,
            self.coordinator,
            release_gate=ReleaseGate(self.config['release_permission']),
            default_auto_resolve_days=int(self.config['default_auto_resolve_days']),
            max_write_retries=int(self.config['max_write_retries']),
            clock=clock,
        )

        self.scheduler = SweepScheduler(
            self.engine,
            at_time=self.config['sweep_time'],
            poll_seconds=float(self.config['sweep_poll_seconds']),
        )

    @classmethod
    def from_config_file(cls, config_file: str = "config.json") -> 'DeathVerificationSystem':
        return cls(load_config(config_file))

    @property
    def admin_token(self) -> str:
        return self.config['admin_token']

    def start(self):
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()
