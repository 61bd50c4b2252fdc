"""Exception taxonomy for Recall.

Format errors (envelopes, tracker JSON, transcript lines) are handled as close
to their source as possible. Authorization errors carry a reason and a
human-actionable message and propagate unchanged to the outermost caller.
"""

from enum import Enum


class RecallError(Exception):
    """Base exception for Recall operations."""


class EnvelopeError(RecallError):
    """An encrypted envelope could not be produced or opened."""


class MalformedEnvelope(EnvelopeError):
    """Wrong tag, unknown version, wrong segment count or bad encoding."""


class AuthenticationFailed(EnvelopeError):
    """GCM tag mismatch: wrong key or tampered envelope."""


class InvalidKeyLength(EnvelopeError):
    """Team keys must be exactly 32 bytes."""


class DenialReason(str, Enum):
    NO_CREDENTIAL = "no-credential"
    INVALID_CREDENTIAL = "invalid-or-expired-credential"
    NO_TEAM_MEMBERSHIP = "no-team-membership"
    SEAT_LIMIT_EXCEEDED = "seat-limit-exceeded"
    SUBSCRIPTION_INACTIVE = "subscription-inactive"
    SERVICE_UNREACHABLE = "service-unreachable"


GUIDANCE = {
    DenialReason.NO_CREDENTIAL: (
        "Not authenticated. Run `recall auth` with your token from the Recall dashboard."
    ),
    DenialReason.INVALID_CREDENTIAL: (
        "Your token is invalid or has expired. Run `recall auth` to sign in again."
    ),
    DenialReason.NO_TEAM_MEMBERSHIP: (
        "You are not a member of a Recall team. Ask a team admin for an invite, "
        "or create a team on the dashboard."
    ),
    DenialReason.SEAT_LIMIT_EXCEEDED: (
        "All seats on your team are in use. Contact your team admin to free a seat "
        "or upgrade the plan."
    ),
    DenialReason.SUBSCRIPTION_INACTIVE: (
        "Your team's subscription is inactive. The billing owner needs to renew it "
        "on the dashboard."
    ),
    DenialReason.SERVICE_UNREACHABLE: (
        "Cannot reach the Recall key service. Check your connection and retry."
    ),
}


class AccessDenied(RecallError):
    """The key service refused (or could not be asked) to release the team key."""

    def __init__(self, reason: DenialReason, detail: str | None = None):
        self.reason = DenialReason(reason)
        self.detail = detail
        super().__init__(self.message)

    @property
    def guidance(self) -> str:
        return GUIDANCE[self.reason]

    @property
    def message(self) -> str:
        if self.detail:
            return f"{self.detail}\n{self.guidance}"
        return self.guidance

    @property
    def retryable(self) -> bool:
        """Only transport failures are worth retrying; the rest need a human."""
        return self.reason is DenialReason.SERVICE_UNREACHABLE


class CorruptArtifact(RecallError):
    """A derived artifact exists but cannot be decrypted or decoded."""

    def __init__(self, name: str, cause: Exception):
        self.name = name
        self.cause = cause
        super().__init__(f"{name} exists but could not be read: {cause}")


class ArtifactNotFound(RecallError):
    """No artifact of the requested kind has been written yet."""


class StaleKey(RecallError):
    """The team key was rotated; the cached key must not be used for writes."""


class ImportInProgress(RecallError):
    """Another import holds the tracker lock in this working copy."""
