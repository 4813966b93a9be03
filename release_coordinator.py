"""
Release coordination: unlock a subject's death-verification messages once
and hand the recipient fan-out to a fire-and-forget dispatcher.
"""

import logging
import threading
from typing import Callable, List

from verification_models import (
    CoordinatorResult, DependencyFailure, ReleaseType, VideoMessage, utcnow,
)

logger = logging.getLogger(__name__)


class InlineDispatcher:
    """Runs the notification job on the calling thread"""

    def __call__(self, job: Callable[[], None]):
        job()


class BackgroundDispatcher:
    """Runs each notification job on its own daemon thread"""

    def __init__(self):
        self._threads: List[threading.Thread] = []

    def __call__(self, job: Callable[[], None]):
        thread = threading.Thread(target=job, name="afternote-notify", daemon=True)
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        thread.start()

    def join(self, timeout: float = None):
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]


class ReleaseCoordinator:
    """Flips release gates of a subject's video messages"""

    def __init__(self, db, notifications, dispatcher=None, clock=utcnow):
        self.db = db
        self.notifications = notifications
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self.clock = clock

    def release_for(self, subject_id: str) -> CoordinatorResult:
        """Release every sealed death-verification message of the subject

        Messages already released are skipped, so calling this again after a
        successful run changes nothing and sends nothing.
        """
        now = self.clock()
        result = CoordinatorResult(subject_id=subject_id)
        released: List[VideoMessage] = []

        try:
            for message in self.sealed_messages(subject_id):
                # Conditional update; a concurrent coordinator may have flipped it first
                if self.db.mark_message_released(message.id, now):
                    message.release_condition.verification_required = False
                    message.scheduled_release = now
                    released.append(message)
        finally:
            # Messages flipped before a storage failure are announced all the same
            if released:
                self._dispatch(subject_id, released)

        result.released_message_ids = [m.id for m in released]
        result.notified_recipient_count = len({rid for m in released for rid in m.recipient_ids})
        logger.info(f"Released {len(released)} video messages for user {subject_id}")
        return result

    def sealed_messages(self, subject_id: str) -> List[VideoMessage]:
        """Death-verification messages of the subject that are still locked"""
        return [m for m in self.db.get_video_messages(subject_id, ReleaseType.DEATH_VERIFICATION)
                if m.release_condition.verification_required]

    def resend_notifications(self, subject_id: str) -> int:
        """Send the release email again for every already released message"""
        messages = [
            m for m in self.db.get_video_messages(subject_id, ReleaseType.DEATH_VERIFICATION)
            if not m.release_condition.verification_required
        ]
        if not messages:
            logger.info(f"No released video messages found for user {subject_id}")
            return 0
        self._dispatch(subject_id, messages)
        return len({rid for m in messages for rid in m.recipient_ids})

    def _dispatch(self, subject_id: str, messages: List[VideoMessage]):
        def job():
            try:
                self._notify(subject_id, messages)
            except Exception as e:
                # Release already persisted; notification is best effort
                failure = DependencyFailure(f"Notification fan-out failed for user {subject_id}: {e}")
                logger.error(str(failure), exc_info=True)

        try:
            self.dispatcher(job)
        except Exception as e:
            logger.error(f"Could not dispatch notifications for user {subject_id}: {e}", exc_info=True)

    def _notify(self, subject_id: str, messages: List[VideoMessage]):
        deceased = self.db.get_user(subject_id)
        if deceased is None:
            logger.warning(f"User {subject_id} not found, no notifications sent")
            return
        recipient_ids = {rid for m in messages for rid in m.recipient_ids}
        recipients = self.db.get_recipients(recipient_ids)
        logger.info(f"Sending release notifications to {len(recipients)} recipients of user {subject_id}")
        self.notifications.notify_release(deceased, recipients, messages)
