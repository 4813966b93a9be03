"""
SQLite persistence for the Afternote release core

Holds the verification episodes owned by the engine, plus the registry tables
the core reads: users, trustees, recipients and video messages.
"""

import json
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from verification_models import (
    Attestation, ConcurrentUpdate, EpisodeKind, EpisodeStatus, OPEN_STATUSES,
    Permissions, ProtectedUser, Recipient, ReleaseCondition, ReleaseType,
    Trustee, VerificationEpisode, VerificationMethod, VideoMessage,
    format_datetime, parse_datetime, utcnow,
)

logger = logging.getLogger(__name__)

_OPEN = tuple(s.value for s in OPEN_STATUSES)


class DatabaseManager:
    """Manages SQLite database operations"""

    def __init__(self, db_path: str = "afternote.db", timeout: float = 10.0):
        self.db_path = db_path
        self.timeout = timeout
        self.init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self):
        """Write transaction holding the database write lock from the start"""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def init_database(self):
        """Initialize the database with required tables"""
        conn = self._connect()
        cursor = conn.cursor()

        # User directory
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT
            )
        ''')

        # Trustee registry
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS trustees (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                full_name TEXT NOT NULL,
                email TEXT NOT NULL,
                phone TEXT,
                relationship TEXT,
                can_verify_death INTEGER NOT NULL DEFAULT 0,
                can_release_messages INTEGER NOT NULL DEFAULT 0,
                can_modify_recipients INTEGER NOT NULL DEFAULT 0,
                trusted_contacts_required INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT 'pending',
                UNIQUE (user_id, email)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS recipients (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                full_name TEXT NOT NULL,
                email TEXT NOT NULL,
                phone TEXT,
                notify_email INTEGER NOT NULL DEFAULT 1,
                notify_sms INTEGER NOT NULL DEFAULT 0
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS video_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                file_url TEXT NOT NULL,
                duration INTEGER NOT NULL DEFAULT 0,
                recipient_ids TEXT NOT NULL DEFAULT '[]',
                scheduled_release TEXT,
                release_type TEXT NOT NULL DEFAULT 'manual',
                verification_required INTEGER NOT NULL DEFAULT 0,
                trusted_contacts_required INTEGER NOT NULL DEFAULT 0
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS verification_episodes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                subject_id TEXT NOT NULL,
                trustee_id INTEGER,
                episode_kind TEXT NOT NULL DEFAULT 'manual',
                status TEXT NOT NULL DEFAULT 'pending',
                death_date TEXT,
                place_of_death TEXT,
                notes TEXT,
                verification_method TEXT,
                certificate_ref TEXT,
                required_trustees INTEGER,
                scheduled_date TEXT,
                auto_resolve_after_days INTEGER NOT NULL DEFAULT 30,
                verification_date TEXT,
                rejection_reason TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        # At most one open episode per subject
        cursor.execute('''
            CREATE UNIQUE INDEX IF NOT EXISTS idx_episode_one_open
            ON verification_episodes (subject_id)
            WHERE status IN ('pending', 'waiting_for_release')
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_episode_subject_status
            ON verification_episodes (subject_id, status)
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS episode_attestations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                episode_id INTEGER NOT NULL REFERENCES verification_episodes (id),
                trustee_id INTEGER NOT NULL,
                attested_at TEXT NOT NULL,
                method TEXT NOT NULL,
                place TEXT,
                notes TEXT,
                UNIQUE (episode_id, trustee_id)
            )
        ''')

        # Delivery log table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS delivery_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                recipient_name TEXT NOT NULL,
                delivery_method TEXT NOT NULL,
                status TEXT NOT NULL,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                message_id TEXT,
                error_details TEXT
            )
        ''')

        conn.close()

    # -- user directory -------------------------------------------------

    def add_user(self, user_id: str, name: str, email: str = '') -> ProtectedUser:
        with self._transaction() as conn:
            conn.execute("INSERT INTO users (id, name, email) VALUES (?, ?, ?)", (user_id, name, email))
        return ProtectedUser(id=user_id, name=name, email=email)

    def get_user(self, user_id: str) -> Optional[ProtectedUser]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return ProtectedUser(id=row['id'], name=row['name'], email=row['email'] or '')

    # -- trustee registry -----------------------------------------------

    def add_trustee(self, user_id: str, full_name: str, email: str, phone: str = '',
                    relationship: str = '', permissions: Permissions = None,
                    trusted_contacts_required: int = 1, status: str = 'verified') -> Trustee:
        permissions = permissions or Permissions()
        with self._transaction() as conn:
            cursor = conn.execute('''
                INSERT INTO trustees (user_id, full_name, email, phone, relationship,
                    can_verify_death, can_release_messages, can_modify_recipients,
                    trusted_contacts_required, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (user_id, full_name, email.lower(), phone, relationship,
                  int(permissions.can_verify_death), int(permissions.can_release_messages),
                  int(permissions.can_modify_recipients), trusted_contacts_required, status))
            trustee_id = cursor.lastrowid
        return self.get_trustee(trustee_id)

    def get_trustee(self, trustee_id: int) -> Optional[Trustee]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM trustees WHERE id = ?", (trustee_id,)).fetchone()
        return self._row_to_trustee(row) if row else None

    def find_trustee(self, user_id: str, email: str) -> Optional[Trustee]:
        """Trustee record for a (protected user, trustee email) pair"""
        if not email:
            return None
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM trustees WHERE user_id = ? AND email = ?",
                (user_id, email.lower())
            ).fetchone()
        return self._row_to_trustee(row) if row else None

    def trustee_records_for_email(self, email: str) -> List[Trustee]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM trustees WHERE email = ? ORDER BY id", ((email or '').lower(),)
            ).fetchall()
        return [self._row_to_trustee(r) for r in rows]

    def update_trustee_quorum(self, trustee_id: int, trusted_contacts_required: int):
        with self._transaction() as conn:
            conn.execute(
                "UPDATE trustees SET trusted_contacts_required = ? WHERE id = ?",
                (trusted_contacts_required, trustee_id)
            )

    @staticmethod
    def _row_to_trustee(row) -> Trustee:
        return Trustee(
            id=row['id'],
            user_id=row['user_id'],
            full_name=row['full_name'],
            email=row['email'],
            phone=row['phone'] or '',
            relationship=row['relationship'] or '',
            permissions=Permissions(
                can_verify_death=bool(row['can_verify_death']),
                can_release_messages=bool(row['can_release_messages']),
                can_modify_recipients=bool(row['can_modify_recipients']),
            ),
            trusted_contacts_required=row['trusted_contacts_required'],
            status=row['status'],
        )

    # -- recipients and video messages ------------------------------------

    def add_recipient(self, user_id: str, full_name: str, email: str, phone: str = '',
                      notify_email: bool = True, notify_sms: bool = False) -> Recipient:
        with self._transaction() as conn:
            cursor = conn.execute('''
                INSERT INTO recipients (user_id, full_name, email, phone, notify_email, notify_sms)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (user_id, full_name, email, phone, int(notify_email), int(notify_sms)))
            recipient_id = cursor.lastrowid
        return Recipient(id=recipient_id, user_id=user_id, full_name=full_name, email=email,
                         phone=phone, notify_email=notify_email, notify_sms=notify_sms)

    def get_recipients(self, recipient_ids: Iterable[int]) -> List[Recipient]:
        ids = sorted(set(recipient_ids))
        if not ids:
            return []
        placeholders = ','.join('?' * len(ids))
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM recipients WHERE id IN ({placeholders}) ORDER BY id", ids
            ).fetchall()
        return [
            Recipient(id=r['id'], user_id=r['user_id'], full_name=r['full_name'], email=r['email'],
                      phone=r['phone'] or '', notify_email=bool(r['notify_email']),
                      notify_sms=bool(r['notify_sms']))
            for r in rows
        ]

    def add_video_message(self, user_id: str, title: str, file_url: str, description: str = '',
                          duration: int = 0, recipient_ids: List[int] = None,
                          release_condition: ReleaseCondition = None,
                          scheduled_release: datetime = None) -> VideoMessage:
        condition = release_condition or ReleaseCondition()
        with self._transaction() as conn:
            cursor = conn.execute('''
                INSERT INTO video_messages (user_id, title, description, file_url, duration,
                    recipient_ids, scheduled_release, release_type, verification_required,
                    trusted_contacts_required)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (user_id, title, description, file_url, duration, json.dumps(recipient_ids or []),
                  format_datetime(scheduled_release), ReleaseType(condition.type).value,
                  int(condition.verification_required), condition.trusted_contacts_required))
            message_id = cursor.lastrowid
        return self.get_video_message(message_id)

    def get_video_message(self, message_id: int) -> Optional[VideoMessage]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM video_messages WHERE id = ?", (message_id,)).fetchone()
        return self._row_to_message(row) if row else None

    def get_video_messages(self, user_id: str, release_type: ReleaseType = None) -> List[VideoMessage]:
        query = "SELECT * FROM video_messages WHERE user_id = ?"
        params = [user_id]
        if release_type is not None:
            query += " AND release_type = ?"
            params.append(ReleaseType(release_type).value)
        with self._reader() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def mark_message_released(self, message_id: int, released_at: datetime) -> bool:
        """Clear the verification gate; False when the message was already released"""
        with self._transaction() as conn:
            cursor = conn.execute('''
                UPDATE video_messages
                SET verification_required = 0, scheduled_release = ?
                WHERE id = ? AND verification_required = 1
            ''', (format_datetime(released_at), message_id))
            return cursor.rowcount == 1

    @staticmethod
    def _row_to_message(row) -> VideoMessage:
        return VideoMessage(
            id=row['id'],
            user_id=row['user_id'],
            title=row['title'],
            description=row['description'] or '',
            file_url=row['file_url'],
            duration=row['duration'],
            recipient_ids=json.loads(row['recipient_ids'] or '[]'),
            scheduled_release=parse_datetime(row['scheduled_release']),
            release_condition=ReleaseCondition(
                type=ReleaseType(row['release_type']),
                verification_required=bool(row['verification_required']),
                trusted_contacts_required=row['trusted_contacts_required'],
            ),
        )

    # -- verification episodes --------------------------------------------

    _EPISODE_COLUMNS = (
        'subject_id', 'trustee_id', 'episode_kind', 'status', 'death_date', 'place_of_death',
        'notes', 'verification_method', 'certificate_ref', 'required_trustees',
        'scheduled_date', 'auto_resolve_after_days', 'verification_date', 'rejection_reason',
    )

    def _episode_values(self, episode: VerificationEpisode) -> Tuple:
        return (
            episode.subject_id,
            episode.trustee_id,
            EpisodeKind(episode.episode_kind).value,
            EpisodeStatus(episode.status).value,
            format_datetime(episode.death_date),
            episode.place_of_death,
            episode.notes,
            VerificationMethod(episode.verification_method).value if episode.verification_method else None,
            episode.certificate_ref,
            episode.required_trustees,
            format_datetime(episode.scheduled_date),
            episode.auto_resolve_after_days,
            format_datetime(episode.verification_date),
            episode.rejection_reason,
        )

    def insert_episode(self, episode: VerificationEpisode) -> VerificationEpisode:
        """Persist a new episode and its attestations

        Raises ConcurrentUpdate when another open episode already exists for the subject.
        """
        now = utcnow()
        columns = self._EPISODE_COLUMNS + ('version', 'created_at', 'updated_at')
        values = self._episode_values(episode) + (1, format_datetime(now), format_datetime(now))
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"INSERT INTO verification_episodes ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' * len(columns))})",
                    values
                )
                episode_id = cursor.lastrowid
                self._insert_attestations(conn, episode_id, episode.attestations)
        except sqlite3.IntegrityError as e:
            raise ConcurrentUpdate(f"Open verification already exists for user {episode.subject_id}") from e
        return self.get_episode(episode_id)

    def update_episode(self, episode: VerificationEpisode) -> VerificationEpisode:
        """Conditional write keyed on the version the episode was read at

        New attestations are appended; existing ones are never rewritten.
        Raises ConcurrentUpdate when the stored version moved on.
        """
        assignments = ', '.join(f"{c} = ?" for c in self._EPISODE_COLUMNS)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE verification_episodes SET {assignments}, version = version + 1, "
                    f"updated_at = ? WHERE id = ? AND version = ?",
                    self._episode_values(episode) + (format_datetime(utcnow()), episode.id, episode.version)
                )
                if cursor.rowcount != 1:
                    raise ConcurrentUpdate(f"Verification {episode.id} was modified concurrently")
                self._insert_attestations(conn, episode.id, episode.attestations)
        except sqlite3.IntegrityError as e:
            raise ConcurrentUpdate(f"Verification {episode.id} conflicts with another open verification") from e
        return self.get_episode(episode.id)

    @staticmethod
    def _insert_attestations(conn, episode_id: int, attestations: List[Attestation]):
        for attestation in attestations:
            conn.execute('''
                INSERT OR IGNORE INTO episode_attestations
                    (episode_id, trustee_id, attested_at, method, place, notes)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (episode_id, attestation.trustee_id, format_datetime(attestation.attested_at),
                  VerificationMethod(attestation.method).value, attestation.place, attestation.notes))

    def get_episode(self, episode_id: int) -> Optional[VerificationEpisode]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM verification_episodes WHERE id = ?", (episode_id,)).fetchone()
            return self._load_episode(conn, row) if row else None

    def get_open_episode(self, subject_id: str) -> Optional[VerificationEpisode]:
        return self.latest_episode(subject_id, OPEN_STATUSES)

    def latest_episode(self, subject_id: str, statuses: Iterable[EpisodeStatus]) -> Optional[VerificationEpisode]:
        values = [EpisodeStatus(s).value for s in statuses]
        placeholders = ','.join('?' * len(values))
        with self._reader() as conn:
            row = conn.execute(
                f"SELECT * FROM verification_episodes WHERE subject_id = ? AND status IN ({placeholders}) "
                f"ORDER BY id DESC LIMIT 1",
                [subject_id] + values
            ).fetchone()
            return self._load_episode(conn, row) if row else None

    def open_episodes_for_subjects(self, subject_ids: Iterable[str]) -> List[VerificationEpisode]:
        ids = sorted(set(subject_ids))
        if not ids:
            return []
        placeholders = ','.join('?' * len(ids))
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM verification_episodes WHERE subject_id IN ({placeholders}) "
                f"AND status IN (?, ?) ORDER BY id",
                ids + list(_OPEN)
            ).fetchall()
            return [self._load_episode(conn, r) for r in rows]

    def scheduled_pending_episodes(self) -> List[VerificationEpisode]:
        """Pending scheduled episodes; due-date filtering is left to the caller"""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM verification_episodes WHERE status = ? AND episode_kind = ? "
                "AND scheduled_date IS NOT NULL ORDER BY id",
                (EpisodeStatus.PENDING.value, EpisodeKind.SCHEDULED.value)
            ).fetchall()
            return [self._load_episode(conn, r) for r in rows]

    def unreleased_verified_episodes(self) -> List[VerificationEpisode]:
        """Latest verified episode of each subject that still has sealed messages"""
        with self._reader() as conn:
            rows = conn.execute('''
                SELECT e.* FROM verification_episodes e
                WHERE e.status = ?
                AND e.id = (SELECT MAX(x.id) FROM verification_episodes x
                            WHERE x.subject_id = e.subject_id AND x.status = ?)
                AND EXISTS (SELECT 1 FROM video_messages m
                            WHERE m.user_id = e.subject_id AND m.release_type = ?
                            AND m.verification_required = 1)
                ORDER BY e.id
            ''', (EpisodeStatus.VERIFIED.value, EpisodeStatus.VERIFIED.value,
                  ReleaseType.DEATH_VERIFICATION.value)).fetchall()
            return [self._load_episode(conn, r) for r in rows]

    def query_episodes(self, status: str = None, kind: str = None, method: str = None,
                       offset: int = 0, limit: int = 10) -> Tuple[List[VerificationEpisode], int]:
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(EpisodeStatus(status).value)
        if kind:
            clauses.append("episode_kind = ?")
            params.append(EpisodeKind(kind).value)
        if method:
            clauses.append("verification_method = ?")
            params.append(VerificationMethod(method).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
        with self._reader() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM verification_episodes {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM verification_episodes {where} ORDER BY id DESC LIMIT ? OFFSET ?",
                params + [limit, offset]
            ).fetchall()
            return [self._load_episode(conn, r) for r in rows], total

    def episode_stats(self, since: datetime) -> Dict:
        """Counts by status and method, plus per-day creation counts since a date"""
        with self._reader() as conn:
            by_status = {r[0]: r[1] for r in conn.execute(
                "SELECT status, COUNT(*) FROM verification_episodes GROUP BY status"
            )}
            by_method = {r[0]: r[1] for r in conn.execute(
                "SELECT verification_method, COUNT(*) FROM verification_episodes "
                "WHERE verification_method IS NOT NULL GROUP BY verification_method"
            )}
            created = [r[0] for r in conn.execute("SELECT created_at FROM verification_episodes").fetchall()]

        recent = {}
        for value in created:
            created_at = parse_datetime(value)
            if created_at >= since:
                day = created_at.date().isoformat()
                recent[day] = recent.get(day, 0) + 1

        stats = {'total': sum(by_status.values())}
        for status in EpisodeStatus:
            stats[status.value] = by_status.get(status.value, 0)
        stats['method_distribution'] = by_method
        stats['recent_activity'] = dict(sorted(recent.items()))
        return stats

    def _load_episode(self, conn, row) -> VerificationEpisode:
        attestation_rows = conn.execute('''
            SELECT a.*, t.full_name AS trustee_name, t.email AS trustee_email
            FROM episode_attestations a LEFT JOIN trustees t ON t.id = a.trustee_id
            WHERE a.episode_id = ? ORDER BY a.id
        ''', (row['id'],)).fetchall()
        attestations = [
            Attestation(
                trustee_id=a['trustee_id'],
                attested_at=parse_datetime(a['attested_at']),
                method=VerificationMethod(a['method']),
                place=a['place'],
                notes=a['notes'],
                trustee_name=a['trustee_name'],
                trustee_email=a['trustee_email'],
            )
            for a in attestation_rows
        ]
        method = row['verification_method']
        return VerificationEpisode(
            id=row['id'],
            subject_id=row['subject_id'],
            episode_kind=EpisodeKind(row['episode_kind']),
            status=EpisodeStatus(row['status']),
            trustee_id=row['trustee_id'],
            death_date=parse_datetime(row['death_date']),
            place_of_death=row['place_of_death'],
            notes=row['notes'],
            verification_method=VerificationMethod(method) if method else None,
            certificate_ref=row['certificate_ref'],
            required_trustees=row['required_trustees'],
            attestations=attestations,
            scheduled_date=parse_datetime(row['scheduled_date']),
            auto_resolve_after_days=row['auto_resolve_after_days'],
            verification_date=parse_datetime(row['verification_date']),
            rejection_reason=row['rejection_reason'],
            version=row['version'],
            created_at=parse_datetime(row['created_at']),
            updated_at=parse_datetime(row['updated_at']),
        )

    # -- delivery log -------------------------------------------------------

    def log_delivery(self, recipient_name: str, delivery_method: str, status: str,
                     message_id: str = None, error_details: str = None):
        """Record a notification delivery attempt"""
        with self._transaction() as conn:
            conn.execute('''
                INSERT INTO delivery_log (recipient_name, delivery_method, status, message_id, error_details)
                VALUES (?, ?, ?, ?, ?)
            ''', (recipient_name, delivery_method, status, message_id, error_details))

    def get_delivery_log(self) -> List[Dict]:
        with self._reader() as conn:
            rows = conn.execute("SELECT * FROM delivery_log ORDER BY id").fetchall()
        return [dict(r) for r in rows]
