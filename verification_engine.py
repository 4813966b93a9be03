"""
Death-verification state machine

pending -> waiting_for_release -> verified, with rejected/expired side paths.
Trustee attestations are tallied by distinct trustee until the quorum snapshot
of the episode is met; a scheduled episode that stays pending long enough is
resolved by the sweep straight to verified.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

from trustee_policy import ReleaseGate, can_attest, effective_quorum, has_reached_quorum
from verification_models import (
    Attestation, AttestationResult, ConcurrentUpdate, EpisodeKind, EpisodeStatus,
    Forbidden, InvalidState, NotFound, ReleaseResult, ScheduleResult, SweepReport,
    ValidationError, VerificationEpisode, VerificationMethod, parse_datetime, utcnow,
)

logger = logging.getLogger(__name__)

NO_VERIFICATION = 'no_verification'
STATUS_VISIBLE = (EpisodeStatus.PENDING, EpisodeStatus.WAITING_FOR_RELEASE, EpisodeStatus.VERIFIED)


def parse_method(value) -> VerificationMethod:
    try:
        return VerificationMethod(value)
    except ValueError:
        allowed = ', '.join(m.value for m in VerificationMethod)
        raise ValidationError(f"Invalid verification method '{value}', expected one of: {allowed}")


class VerificationEngine:
    """Accepts attestations, tallies quorum and drives episodes to release"""

    def __init__(self, db, coordinator, release_gate: ReleaseGate = None,
                 default_auto_resolve_days: int = 30, max_write_retries: int = 5,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.coordinator = coordinator
        self.release_gate = release_gate or ReleaseGate()
        self.default_auto_resolve_days = default_auto_resolve_days
        self.max_write_retries = max(1, max_write_retries)
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -- serialization -------------------------------------------------------

    def _subject_lock(self, subject_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(subject_id)
            if lock is None:
                lock = self._locks[subject_id] = threading.Lock()
            return lock

    def _with_retries(self, subject_id: str, operation: Callable):
        """Run a read-compute-conditional-write step, re-reading on conflicts

        Conflicts come from writers outside this process; in-process writers
        for the same subject are already serialized by the subject lock.
        """
        for attempt in range(1, self.max_write_retries + 1):
            try:
                return operation()
            except ConcurrentUpdate:
                if attempt == self.max_write_retries:
                    logger.error(f"Giving up on user {subject_id} after {attempt} conflicting writes")
                    raise
                logger.info(f"Concurrent update on user {subject_id}, retrying ({attempt}/{self.max_write_retries})")

    # -- trustee attestation -------------------------------------------------

    def attest(self, subject_id: str, trustee_email: str, method, date_of_death,
               place: str = None, notes: str = None, confirmed: bool = True,
               certificate_ref: str = None) -> AttestationResult:
        """Record a trustee's attestation of the subject's death"""
        if not subject_id or not method or not date_of_death:
            raise ValidationError(
                'Missing required fields: userId, verificationMethod and dateOfDeath are required'
            )
        if not confirmed:
            raise ValidationError('Death verification must be confirmed')
        method = parse_method(method)
        death_date = parse_datetime(date_of_death)

        trustee = self.db.find_trustee(subject_id, trustee_email)
        if not can_attest(trustee):
            raise Forbidden('You do not have permission to verify death for this user')

        def operation() -> AttestationResult:
            now = self.clock()
            episode = self.db.get_open_episode(subject_id)
            created = episode is None
            dirty = created
            if created:
                episode = VerificationEpisode(
                    id=None,
                    subject_id=subject_id,
                    episode_kind=EpisodeKind.MANUAL,
                    status=EpisodeStatus.PENDING,
                    trustee_id=trustee.id,
                    auto_resolve_after_days=self.default_auto_resolve_days,
                )

            # Scheduled episodes get their quorum from the first trustee to attest
            if episode.required_trustees is None:
                episode.required_trustees = effective_quorum(trustee.trusted_contacts_required)
                dirty = True
            if episode.trustee_id is None:
                episode.trustee_id = trustee.id
                dirty = True
            for attr, value in (('death_date', death_date), ('place_of_death', place),
                                ('notes', notes), ('verification_method', method),
                                ('certificate_ref', certificate_ref)):
                if getattr(episode, attr) is None and value is not None:
                    setattr(episode, attr, value)
                    dirty = True

            already_attested = episode.has_attested(trustee.id)
            if not already_attested:
                episode.attestations.append(Attestation(
                    trustee_id=trustee.id,
                    attested_at=now,
                    method=method,
                    place=place,
                    notes=notes,
                ))
                dirty = True

            quorum_reached = False
            if (episode.status == EpisodeStatus.PENDING
                    and has_reached_quorum(episode.verified_count, episode.required_trustees)):
                episode.status = EpisodeStatus.WAITING_FOR_RELEASE
                episode.verification_date = now
                quorum_reached = True

            if created:
                episode = self.db.insert_episode(episode)
            elif dirty or quorum_reached:
                episode = self.db.update_episode(episode)

            return AttestationResult(
                episode_id=episode.id,
                status=episode.status,
                verified_count=episode.verified_count,
                required_count=effective_quorum(episode.required_trustees),
                quorum_reached=quorum_reached,
                already_attested=already_attested,
            )

        with self._subject_lock(subject_id):
            result = self._with_retries(subject_id, operation)

        if result.already_attested:
            logger.info(f"Trustee {trustee.id} already attested death of user {subject_id}, nothing recorded")
        else:
            logger.info(f"Trustee {trustee.id} attested death of user {subject_id} "
                        f"({result.verified_count}/{result.required_count})")
        if result.quorum_reached:
            logger.info(f"Quorum reached for verification {result.episode_id}; video messages waiting for release")
        return result

    # -- scheduling ----------------------------------------------------------

    def schedule(self, subject_id: str, scheduled_date, auto_resolve_after_days=None) -> ScheduleResult:
        """Create or reschedule a time-based verification for the subject"""
        if not subject_id or not scheduled_date:
            raise ValidationError('Missing required fields: userId and scheduledDate are required')
        when = parse_datetime(scheduled_date)
        days = 0
        if auto_resolve_after_days not in (None, ''):
            try:
                days = int(auto_resolve_after_days)
            except (TypeError, ValueError):
                raise ValidationError('autoVerifyAfterDays must be a whole number of days')
            if days < 0:
                raise ValidationError('autoVerifyAfterDays cannot be negative')
        # Zero or missing falls back to the default grace period
        days = days or self.default_auto_resolve_days

        if self.db.get_user(subject_id) is None:
            raise NotFound('User not found')

        def operation() -> VerificationEpisode:
            episode = self.db.get_open_episode(subject_id)
            if episode is not None and episode.status == EpisodeStatus.WAITING_FOR_RELEASE:
                raise InvalidState('Death verification is already waiting for release')
            if episode is None:
                return self.db.insert_episode(VerificationEpisode(
                    id=None,
                    subject_id=subject_id,
                    episode_kind=EpisodeKind.SCHEDULED,
                    status=EpisodeStatus.PENDING,
                    scheduled_date=when,
                    auto_resolve_after_days=days,
                ))
            episode.episode_kind = EpisodeKind.SCHEDULED
            episode.scheduled_date = when
            episode.auto_resolve_after_days = days
            return self.db.update_episode(episode)

        with self._subject_lock(subject_id):
            episode = self._with_retries(subject_id, operation)

        logger.info(f"Death verification {episode.id} for user {subject_id} scheduled for "
                    f"{when.isoformat()} (auto-verify after {days} days)")
        return ScheduleResult(
            episode_id=episode.id,
            scheduled_date=episode.scheduled_date,
            auto_resolve_after_days=episode.auto_resolve_after_days,
        )

    # -- queries ---------------------------------------------------------------

    def get_status(self, subject_id: str) -> Union[VerificationEpisode, str]:
        episode = self.db.latest_episode(subject_id, STATUS_VISIBLE)
        return episode if episode is not None else NO_VERIFICATION

    def list_pending(self, trustee_email: str) -> List[VerificationEpisode]:
        """Open episodes for every subject this trustee may verify"""
        subject_ids = [t.user_id for t in self.db.trustee_records_for_email(trustee_email) if can_attest(t)]
        return self.db.open_episodes_for_subjects(subject_ids)

    def get_episode(self, episode_id: int) -> VerificationEpisode:
        episode = self.db.get_episode(episode_id)
        if episode is None:
            raise NotFound('Death verification not found')
        return episode

    def list_episodes(self, status: str = None, kind: str = None, method: str = None,
                      page: int = 1, limit: int = 10) -> Dict:
        """Paginated episode listing with status/method statistics"""
        try:
            page, limit = int(page), int(limit)
        except (TypeError, ValueError):
            raise ValidationError('page and limit must be integers')
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError('page must be >= 1 and limit between 1 and 100')
        if status and status not in {s.value for s in EpisodeStatus}:
            raise ValidationError(f"Invalid status '{status}'")
        if kind and kind not in {k.value for k in EpisodeKind}:
            raise ValidationError(f"Invalid verification type '{kind}'")
        if method:
            parse_method(method)

        episodes, total = self.db.query_episodes(status=status, kind=kind, method=method,
                                                 offset=(page - 1) * limit, limit=limit)
        return {
            'data': episodes,
            'pagination': {
                'current_page': page,
                'total_pages': (total + limit - 1) // limit,
                'total': total,
                'limit': limit,
            },
            'stats': self.db.episode_stats(since=self.clock() - timedelta(days=7)),
        }

    # -- release ---------------------------------------------------------------

    def release(self, subject_id: str, actor_email: str = None, is_admin: bool = False) -> ReleaseResult:
        """Confirm a quorum-verified episode and release the subject's messages"""
        if not subject_id:
            raise ValidationError('userId is required')
        if not is_admin:
            trustee = self.db.find_trustee(subject_id, actor_email)
            if not self.release_gate.allows(trustee):
                raise Forbidden('You do not have permission to release video messages for this user')

        def operation() -> VerificationEpisode:
            episode = self.db.latest_episode(
                subject_id, [EpisodeStatus.WAITING_FOR_RELEASE, EpisodeStatus.VERIFIED]
            )
            if episode is not None and episode.status == EpisodeStatus.VERIFIED:
                # Earlier release committed the episode but left messages sealed
                if self.coordinator.sealed_messages(subject_id):
                    logger.warning(f"Resuming interrupted release of verification {episode.id} "
                                   f"for user {subject_id}")
                    return episode
                episode = None
            if episode is None:
                raise InvalidState('no verification found in waiting-for-release status')
            episode.status = EpisodeStatus.VERIFIED
            if episode.verification_date is None:
                episode.verification_date = self.clock()
            return self.db.update_episode(episode)

        with self._subject_lock(subject_id):
            episode = self._with_retries(subject_id, operation)
            outcome = self.coordinator.release_for(subject_id)

        actor = 'administrator' if is_admin else actor_email
        logger.info(f"Verification {episode.id} for user {subject_id} released by {actor}: "
                    f"{outcome.released_count} video messages unlocked")
        return ReleaseResult(
            episode_id=episode.id,
            status=episode.status,
            verification_date=episode.verification_date,
            released_message_count=outcome.released_count,
        )

    # -- automatic path ----------------------------------------------------------

    def sweep_resolve(self, now=None) -> SweepReport:
        """Auto-verify scheduled episodes whose grace period has run out

        This path goes from pending straight to verified: automatic episodes
        skip the human release confirmation. Verified episodes whose messages
        are still sealed, because an earlier release failed part way, have
        their release finished.
        """
        now = parse_datetime(now) if now is not None else self.clock()
        report = SweepReport()
        due = [e for e in self.db.scheduled_pending_episodes() if e.scheduled_date <= now]
        report.examined = len(due)
        logger.info(f"Processing {len(due)} scheduled death verifications")

        for candidate in due:
            try:
                if self._auto_resolve(candidate.subject_id, candidate.id, now):
                    report.resolved.append(candidate.id)
                else:
                    report.skipped.append(candidate.id)
            except Exception:
                logger.exception(f"Failed to resolve scheduled verification {candidate.id} "
                                 f"for user {candidate.subject_id}")
                report.failed.append(candidate.id)

        for stalled in self.db.unreleased_verified_episodes():
            if stalled.id in report.failed:
                continue
            try:
                with self._subject_lock(stalled.subject_id):
                    outcome = self.coordinator.release_for(stalled.subject_id)
            except Exception:
                logger.exception(f"Failed to finish release of verification {stalled.id} "
                                 f"for user {stalled.subject_id}")
                report.failed.append(stalled.id)
                continue
            if outcome.released_count:
                logger.info(f"Finished interrupted release of verification {stalled.id}: "
                            f"{outcome.released_count} video messages released")
                report.recovered.append(stalled.id)

        logger.info(f"Sweep finished: {len(report.resolved)} resolved, {len(report.skipped)} not due, "
                    f"{len(report.recovered)} recovered, {len(report.failed)} failed")
        return report

    def _auto_resolve(self, subject_id: str, episode_id: int, now: datetime) -> bool:
        def operation() -> Optional[VerificationEpisode]:
            episode = self.db.get_episode(episode_id)
            if (episode is None or episode.status != EpisodeStatus.PENDING
                    or episode.episode_kind != EpisodeKind.SCHEDULED
                    or episode.scheduled_date is None or episode.scheduled_date > now):
                return None
            elapsed_days = (now - episode.scheduled_date).days
            if elapsed_days < episode.auto_resolve_after_days:
                return None
            episode.status = EpisodeStatus.VERIFIED
            episode.episode_kind = EpisodeKind.AUTOMATIC
            episode.verification_date = now
            return self.db.update_episode(episode)

        with self._subject_lock(subject_id):
            episode = self._with_retries(subject_id, operation)
            if episode is None:
                return False
            outcome = self.coordinator.release_for(subject_id)

        logger.info(f"Auto-verified death for user {subject_id} (verification {episode.id}), "
                    f"{outcome.released_count} video messages released")
        return True

    # -- administration ------------------------------------------------------------

    def reject(self, subject_id: str, reason: str = None, actor: str = 'administrator') -> VerificationEpisode:
        """Close the subject's open episode without releasing anything"""
        def operation() -> VerificationEpisode:
            episode = self.db.get_open_episode(subject_id)
            if episode is None:
                raise InvalidState('No open death verification found for this user')
            episode.status = EpisodeStatus.REJECTED
            episode.rejection_reason = reason
            return self.db.update_episode(episode)

        with self._subject_lock(subject_id):
            episode = self._with_retries(subject_id, operation)
        logger.info(f"Verification {episode.id} for user {subject_id} rejected by {actor}: "
                    f"{reason or 'no reason given'}")
        return episode

    def resend_notifications(self, subject_id: str) -> int:
        if self.db.get_user(subject_id) is None:
            raise NotFound('User not found')
        if self.db.latest_episode(subject_id, [EpisodeStatus.VERIFIED]) is None:
            raise InvalidState('No verified death verification found for this user')
        return self.coordinator.resend_notifications(subject_id)
