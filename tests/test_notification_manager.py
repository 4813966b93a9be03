import smtplib
from types import SimpleNamespace

import pytest

from notification_manager import NotificationManager, format_duration
from verification_models import ProtectedUser, Recipient, VideoMessage

CONFIG = {
    'email': 'afternote@example.com',
    'email_password': 'secret',
    'smtp_server': 'smtp.example.com',
    'smtp_port': 2525,
    'twilio_sid': 'AC123',
    'twilio_token': 'token',
    'twilio_phone': '+15550000',
}

DECEASED = ProtectedUser(id='user-1', name='Alice <Example>')


class FakeSMTP:
    sent = []
    fail = False

    def __init__(self, host, port):
        self.host, self.port = host, port

    def starttls(self):
        pass

    def login(self, user, password):
        if FakeSMTP.fail:
            raise smtplib.SMTPAuthenticationError(535, b'bad credentials')

    def sendmail(self, sender, to, body):
        FakeSMTP.sent.append((sender, to, body))

    def quit(self):
        pass


class FakeTwilioClient:
    sent = []

    def __init__(self, sid, token):
        self.messages = self

    def create(self, body, from_, to):
        FakeTwilioClient.sent.append((body, from_, to))
        return SimpleNamespace(sid=f"SM{len(FakeTwilioClient.sent)}")


@pytest.fixture(autouse=True)
def fake_transports(monkeypatch):
    FakeSMTP.sent, FakeSMTP.fail = [], False
    FakeTwilioClient.sent = []
    monkeypatch.setattr(smtplib, 'SMTP', FakeSMTP)
    monkeypatch.setattr('twilio.rest.Client', FakeTwilioClient)


def message(message_id, recipient_ids, title='Goodbye'):
    return VideoMessage(id=message_id, user_id='user-1', title=title,
                        file_url=f'https://videos.example.com/{message_id}.mp4',
                        duration=125, recipient_ids=recipient_ids)


def test_format_duration():
    assert format_duration(125) == '2:05'
    assert format_duration(None) == '0:00'


def test_release_email_content_is_escaped():
    bob = Recipient(id=1, user_id='user-1', full_name='Bob', email='bob@example.com')
    subject, text, html = NotificationManager(CONFIG).build_release_email(
        bob, [message(1, [1], title='<b>Hi</b>')], DECEASED)
    assert subject == 'Important Message from Alice <Example> - Afternote'
    assert 'Dear Bob' in text
    assert 'Duration: 2:05' in text
    assert '&lt;b&gt;Hi&lt;/b&gt;' in html
    assert '<b>Hi</b>' not in html


def test_send_email_skipped_without_credentials():
    assert not NotificationManager({}).send_email('bob@example.com', 'subject', 'body')
    assert FakeSMTP.sent == []


def test_send_email_failure_returns_false():
    FakeSMTP.fail = True
    assert not NotificationManager(CONFIG).send_email('bob@example.com', 'subject', 'body')


def test_send_sms_returns_sid():
    assert NotificationManager(CONFIG).send_sms('+15551234', 'hello') == 'SM1'
    assert FakeTwilioClient.sent == [('hello', '+15550000', '+15551234')]


def test_send_sms_skipped_without_credentials():
    assert NotificationManager({'twilio_sid': 'AC123'}).send_sms('+15551234', 'hello') is None


def test_notify_release_sends_each_recipient_their_own_messages(db):
    bob = Recipient(id=1, user_id='user-1', full_name='Bob', email='bob@example.com')
    carol = Recipient(id=2, user_id='user-1', full_name='Carol', email='carol@example.com',
                      phone='+15551234', notify_sms=True)
    dan = Recipient(id=3, user_id='user-1', full_name='Dan', email='dan@example.com')
    messages = [message(10, [1], title='Only Bob'), message(11, [1, 2], title='Shared')]

    reached = NotificationManager(CONFIG, db=db).notify_release(DECEASED, [bob, carol, dan], messages)

    assert reached == 2
    bodies = {to: body for _, to, body in FakeSMTP.sent}
    assert set(bodies) == {'bob@example.com', 'carol@example.com'}
    assert 'Only Bob' in bodies['bob@example.com']
    assert 'Only Bob' not in bodies['carol@example.com']
    assert len(FakeTwilioClient.sent) == 1
    assert [(e['recipient_name'], e['delivery_method']) for e in db.get_delivery_log()] == [
        ('Bob', 'email'), ('Carol', 'email'), ('Carol', 'sms'),
    ]
