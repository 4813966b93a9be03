"""
Trustee permission and quorum rules
"""

from typing import Optional

from verification_models import Trustee

# Which trustee flag gates the release of messages
RELEASE_PERMISSION_MODES = ('can_verify_death', 'can_release_messages', 'either', 'both')
DEFAULT_RELEASE_PERMISSION = 'can_verify_death'


def effective_quorum(value) -> int:
    """Quorum threshold never drops below one attestation"""
    try:
        required = int(value or 1)
    except (TypeError, ValueError):
        required = 1
    return max(1, required)


def has_reached_quorum(verified_count: int, required) -> bool:
    return verified_count >= effective_quorum(required)


def can_attest(trustee: Optional[Trustee]) -> bool:
    return trustee is not None and trustee.permissions.can_verify_death


class ReleaseGate:
    """Decides whether a trustee may release a subject's messages

    Both permission flags are stored on every trustee; which one gates release
    is a deployment setting. The default reproduces the historical behaviour
    where the verify-death permission also covers release.
    """

    def __init__(self, mode: str = DEFAULT_RELEASE_PERMISSION):
        if mode not in RELEASE_PERMISSION_MODES:
            raise ValueError(
                f"release_permission must be one of {', '.join(RELEASE_PERMISSION_MODES)}, got {mode!r}"
            )
        self.mode = mode

    def allows(self, trustee: Optional[Trustee]) -> bool:
        if trustee is None:
            return False
        perms = trustee.permissions
        if self.mode == 'can_verify_death':
            return perms.can_verify_death
        if self.mode == 'can_release_messages':
            return perms.can_release_messages
        if self.mode == 'either':
            return perms.can_verify_death or perms.can_release_messages
        return perms.can_verify_death and perms.can_release_messages
