"""
Data types and errors for the Afternote death-verification core
Episodes, attestations, trustees and video messages as plain dataclasses
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class EpisodeStatus(str, Enum):
    PENDING = 'pending'
    WAITING_FOR_RELEASE = 'waiting_for_release'
    VERIFIED = 'verified'
    REJECTED = 'rejected'
    EXPIRED = 'expired'


OPEN_STATUSES = (EpisodeStatus.PENDING, EpisodeStatus.WAITING_FOR_RELEASE)
TERMINAL_STATUSES = (EpisodeStatus.VERIFIED, EpisodeStatus.REJECTED, EpisodeStatus.EXPIRED)


class EpisodeKind(str, Enum):
    MANUAL = 'manual'
    SCHEDULED = 'scheduled'
    AUTOMATIC = 'automatic'


class VerificationMethod(str, Enum):
    DEATH_CERTIFICATE = 'death_certificate'
    MEDICAL_REPORT = 'medical_report'
    OFFICIAL_DOCUMENT = 'official_document'
    OTHER = 'other'


class ReleaseType(str, Enum):
    DEATH_VERIFICATION = 'death_verification'
    DATE_BASED = 'date_based'
    MANUAL = 'manual'


# Errors surfaced to callers

class VerificationError(Exception):
    """Base class for every error raised by the verification core"""
    status_code = 500


class ValidationError(VerificationError):
    status_code = 400


class Forbidden(VerificationError):
    status_code = 403


class NotFound(VerificationError):
    status_code = 404


class InvalidState(VerificationError):
    status_code = 400


class ConcurrentUpdate(VerificationError):
    """Raised when a conditional write loses against another writer"""
    status_code = 409


class DependencyFailure(VerificationError):
    """Notification or other non-critical side effect failed"""
    status_code = 502


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO date/datetime string (or pass a datetime through) as aware UTC"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip())
        except ValueError:
            raise ValidationError(f"Invalid date: {value}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Permissions:
    """Trustee permission flags"""
    can_verify_death: bool = False
    can_release_messages: bool = False
    can_modify_recipients: bool = False


@dataclass
class Trustee:
    """Trusted contact registered for a protected user"""
    id: int
    user_id: str
    full_name: str
    email: str
    phone: str = ''
    relationship: str = ''
    permissions: Permissions = field(default_factory=Permissions)
    trusted_contacts_required: int = 1
    status: str = 'pending'


@dataclass
class ProtectedUser:
    id: str
    name: str
    email: str = ''


@dataclass
class Recipient:
    """Recipient of a user's video messages"""
    id: int
    user_id: str
    full_name: str
    email: str
    phone: str = ''
    notify_email: bool = True
    notify_sms: bool = False


@dataclass
class ReleaseCondition:
    type: ReleaseType = ReleaseType.MANUAL
    verification_required: bool = False
    # Stored only; episode quorum comes from the trustee registry
    trusted_contacts_required: int = 0


@dataclass
class VideoMessage:
    """Video message recorded by a protected user"""
    id: int
    user_id: str
    title: str
    file_url: str
    description: str = ''
    duration: int = 0
    recipient_ids: List[int] = field(default_factory=list)
    scheduled_release: Optional[datetime] = None
    release_condition: ReleaseCondition = field(default_factory=ReleaseCondition)

    @property
    def awaiting_death_verification(self) -> bool:
        return (self.release_condition.type == ReleaseType.DEATH_VERIFICATION
                and self.release_condition.verification_required)


@dataclass
class Attestation:
    """One trustee's statement about the subject's death"""
    trustee_id: int
    attested_at: datetime
    method: VerificationMethod
    place: Optional[str] = None
    notes: Optional[str] = None
    trustee_name: Optional[str] = None
    trustee_email: Optional[str] = None


@dataclass
class VerificationEpisode:
    """One lifecycle instance of the death-verification process for a subject"""
    id: Optional[int]
    subject_id: str
    episode_kind: EpisodeKind = EpisodeKind.MANUAL
    status: EpisodeStatus = EpisodeStatus.PENDING
    trustee_id: Optional[int] = None
    death_date: Optional[datetime] = None
    place_of_death: Optional[str] = None
    notes: Optional[str] = None
    verification_method: Optional[VerificationMethod] = None
    certificate_ref: Optional[str] = None
    required_trustees: Optional[int] = None
    attestations: List[Attestation] = field(default_factory=list)
    scheduled_date: Optional[datetime] = None
    auto_resolve_after_days: int = 30
    verification_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def verified_count(self) -> int:
        return len({a.trustee_id for a in self.attestations})

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def has_attested(self, trustee_id: int) -> bool:
        return any(a.trustee_id == trustee_id for a in self.attestations)

    def to_dict(self) -> Dict:
        """JSON-ready snapshot"""
        return {
            'id': self.id,
            'subject_id': self.subject_id,
            'episode_kind': self.episode_kind.value,
            'status': self.status.value,
            'trustee_id': self.trustee_id,
            'death_date': format_datetime(self.death_date),
            'place_of_death': self.place_of_death,
            'notes': self.notes,
            'verification_method': self.verification_method.value if self.verification_method else None,
            'certificate_ref': self.certificate_ref,
            'required_trustees': self.required_trustees,
            'verified_trustees': [
                {
                    'trustee_id': a.trustee_id,
                    'full_name': a.trustee_name,
                    'email': a.trustee_email,
                    'verification_date': format_datetime(a.attested_at),
                    'verification_method': a.method.value,
                    'place_of_death': a.place,
                    'verification_notes': a.notes,
                }
                for a in self.attestations
            ],
            'verified_count': self.verified_count,
            'scheduled_date': format_datetime(self.scheduled_date),
            'auto_resolve_after_days': self.auto_resolve_after_days,
            'verification_date': format_datetime(self.verification_date),
            'rejection_reason': self.rejection_reason,
            'created_at': format_datetime(self.created_at),
            'updated_at': format_datetime(self.updated_at),
        }


# Operation results

@dataclass
class AttestationResult:
    episode_id: int
    status: EpisodeStatus
    verified_count: int
    required_count: int
    quorum_reached: bool = False
    already_attested: bool = False

    @property
    def message(self) -> str:
        if self.status == EpisodeStatus.WAITING_FOR_RELEASE:
            return 'Death verification completed. Video messages are waiting for release.'
        return 'Death verification submitted successfully. Waiting for additional trustee verification.'

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['status'] = self.status.value
        return data


@dataclass
class ScheduleResult:
    episode_id: int
    scheduled_date: datetime
    auto_resolve_after_days: int

    def to_dict(self) -> Dict:
        return {
            'episode_id': self.episode_id,
            'scheduled_date': format_datetime(self.scheduled_date),
            'auto_resolve_after_days': self.auto_resolve_after_days,
        }


@dataclass
class ReleaseResult:
    episode_id: int
    status: EpisodeStatus
    verification_date: Optional[datetime]
    released_message_count: int

    def to_dict(self) -> Dict:
        return {
            'episode_id': self.episode_id,
            'status': self.status.value,
            'verification_date': format_datetime(self.verification_date),
            'released_message_count': self.released_message_count,
        }


@dataclass
class CoordinatorResult:
    subject_id: str
    released_message_ids: List[int] = field(default_factory=list)
    notified_recipient_count: int = 0

    @property
    def released_count(self) -> int:
        return len(self.released_message_ids)


@dataclass
class SweepReport:
    """Outcome of one sweep run"""
    examined: int = 0
    resolved: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    # Verified episodes whose interrupted message release was finished
    recovered: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)
