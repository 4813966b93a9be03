from datetime import timedelta

import pytest

from conftest import NOW, SUBJECT, add_trustee
from verification_models import (
    Attestation, ConcurrentUpdate, EpisodeKind, EpisodeStatus, VerificationEpisode,
    VerificationMethod,
)


def new_episode(subject_id=SUBJECT, **kwargs):
    return VerificationEpisode(id=None, subject_id=subject_id, **kwargs)


def test_insert_starts_at_version_one(db, subject):
    episode = db.insert_episode(new_episode(required_trustees=2))
    assert episode.id is not None
    assert episode.version == 1
    assert episode.status == EpisodeStatus.PENDING
    assert episode.created_at is not None


def test_second_open_episode_is_refused(db, subject):
    db.insert_episode(new_episode())
    with pytest.raises(ConcurrentUpdate):
        db.insert_episode(new_episode(status=EpisodeStatus.WAITING_FOR_RELEASE))


def test_closed_episodes_do_not_block_a_new_one(db, subject):
    first = db.insert_episode(new_episode())
    first.status = EpisodeStatus.REJECTED
    db.update_episode(first)
    second = db.insert_episode(new_episode())
    assert second.id != first.id
    assert db.get_open_episode(SUBJECT).id == second.id


def test_stale_version_is_refused(db, subject):
    episode = db.insert_episode(new_episode())
    stale = db.get_episode(episode.id)

    episode.notes = 'fresh'
    updated = db.update_episode(episode)
    assert updated.version == 2

    stale.notes = 'stale'
    with pytest.raises(ConcurrentUpdate):
        db.update_episode(stale)
    assert db.get_episode(episode.id).notes == 'fresh'


def test_attestations_are_appended_once(db, subject):
    trustee = add_trustee(db, 'dave@example.com')
    episode = db.insert_episode(new_episode())
    episode.attestations.append(Attestation(trustee.id, NOW, VerificationMethod.OTHER, notes='one'))
    episode = db.update_episode(episode)
    episode.attestations[0].notes = 'rewritten'
    episode.attestations.append(Attestation(trustee.id, NOW, VerificationMethod.OTHER, notes='two'))
    episode = db.update_episode(episode)

    assert len(episode.attestations) == 1
    assert episode.attestations[0].notes == 'one'
    assert episode.attestations[0].trustee_name == 'Dave'


def test_mark_message_released_is_conditional(db, subject):
    message = db.get_video_messages(SUBJECT)[0]
    assert db.mark_message_released(message.id, NOW)
    assert not db.mark_message_released(message.id, NOW + timedelta(days=1))
    assert db.get_video_message(message.id).scheduled_release == NOW


def test_scheduled_pending_episodes(db, subject):
    db.add_user('user-2', 'Second User')
    db.insert_episode(new_episode())
    scheduled = db.insert_episode(new_episode('user-2', episode_kind=EpisodeKind.SCHEDULED,
                                              scheduled_date=NOW))
    assert [e.id for e in db.scheduled_pending_episodes()] == [scheduled.id]


def test_trustee_lookup_is_case_insensitive(db, subject):
    add_trustee(db, 'Dave@Example.com')
    assert db.find_trustee(SUBJECT, 'DAVE@example.COM').email == 'dave@example.com'
    assert db.find_trustee(SUBJECT, None) is None
    assert db.find_trustee('user-2', 'dave@example.com') is None


def test_delivery_log(db, subject):
    db.log_delivery('Bob Example', 'email', 'success')
    db.log_delivery('Carol Example', 'sms', 'failed', error_details='bad number')
    log = db.get_delivery_log()
    assert [(e['recipient_name'], e['status']) for e in log] == [
        ('Bob Example', 'success'), ('Carol Example', 'failed')
    ]
