from datetime import datetime, timedelta, timezone

import pytest

from death_verification_system import DeathVerificationSystem
from release_coordinator import InlineDispatcher
from verification_models import Permissions, ReleaseCondition, ReleaseType

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
SUBJECT = 'user-1'
ADMIN_TOKEN = 'admin-secret'


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Stands in for NotificationManager and records each fan-out"""

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def notify_release(self, deceased, recipients, messages):
        self.calls.append((deceased, recipients, messages))
        if self.fail:
            raise RuntimeError("smtp down")
        return len(recipients)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config(tmp_path):
    return {
        'database_path': str(tmp_path / 'afternote.db'),
        'admin_token': ADMIN_TOKEN,
        'async_notifications': False,
    }


@pytest.fixture
def system(config, notifier, clock):
    return DeathVerificationSystem(config, notifications=notifier, dispatcher=InlineDispatcher(), clock=clock)


@pytest.fixture
def db(system):
    return system.db


@pytest.fixture
def engine(system):
    return system.engine


def add_trustee(db, email, quorum=1, verify=True, release=False, subject_id=SUBJECT):
    return db.add_trustee(
        subject_id, email.split('@')[0].title(), email,
        permissions=Permissions(can_verify_death=verify, can_release_messages=release),
        trusted_contacts_required=quorum,
    )


@pytest.fixture
def subject(db):
    """A protected user with two recipients, two sealed messages and one manual message"""
    db.add_user(SUBJECT, 'Alice Example', 'alice@example.com')
    bob = db.add_recipient(SUBJECT, 'Bob Example', 'bob@example.com')
    carol = db.add_recipient(SUBJECT, 'Carol Example', 'carol@example.com', phone='+15550001', notify_sms=True)
    sealed = ReleaseCondition(type=ReleaseType.DEATH_VERIFICATION, verification_required=True)
    db.add_video_message(SUBJECT, 'For Bob', 'https://videos.example.com/1.mp4',
                         duration=95, recipient_ids=[bob.id], release_condition=sealed)
    db.add_video_message(SUBJECT, 'For everyone', 'https://videos.example.com/2.mp4',
                         recipient_ids=[bob.id, carol.id], release_condition=sealed)
    db.add_video_message(SUBJECT, 'Birthday', 'https://videos.example.com/3.mp4',
                         recipient_ids=[carol.id],
                         release_condition=ReleaseCondition(type=ReleaseType.MANUAL))
    return SUBJECT


@pytest.fixture
def trustees(db, subject):
    """Two verifying trustees requiring a quorum of two"""
    return [
        add_trustee(db, 'dave@example.com', quorum=2),
        add_trustee(db, 'erin@example.com', quorum=2),
    ]


def sealed_messages(db, subject_id=SUBJECT):
    return [m for m in db.get_video_messages(subject_id, ReleaseType.DEATH_VERIFICATION)
            if m.release_condition.verification_required]
