"""Team key resolution against the Recall key service."""

import base64
import binascii
import logging
from dataclasses import dataclass, field

import httpx

from recall.config import RecallConfig, machine_id
from recall.crypto.envelope import KEY_LENGTH
from recall.errors import AccessDenied, DenialReason, InvalidKeyLength

logger = logging.getLogger(__name__)

KEY_ENDPOINT = "/keys/team"


@dataclass(frozen=True)
class TeamKey:
    """The shared symmetric key of one team, at one version."""

    key_material: bytes = field(repr=False)
    version: int
    team_id: str

    def __post_init__(self):
        if len(self.key_material) != KEY_LENGTH:
            raise InvalidKeyLength(
                f"team key must be {KEY_LENGTH} bytes, got {len(self.key_material)}"
            )


@dataclass(frozen=True)
class AuthSession:
    """Caller-owned credential bundle handed to the network clients."""

    token: str | None
    api_url: str
    machine_id: str

    @classmethod
    def from_config(cls, config: RecallConfig) -> "AuthSession":
        return cls(token=config.api_token, api_url=config.api_url.rstrip("/"), machine_id=machine_id())


# Error strings the key service returns on 403, matched case-insensitively.
_FORBIDDEN_REASONS = [
    ("seat", DenialReason.SEAT_LIMIT_EXCEEDED),
    ("subscription", DenialReason.SUBSCRIPTION_INACTIVE),
    ("inactive", DenialReason.SUBSCRIPTION_INACTIVE),
    ("team membership", DenialReason.NO_TEAM_MEMBERSHIP),
    ("not a member", DenialReason.NO_TEAM_MEMBERSHIP),
]


def classify_denial(status_code: int, body: dict) -> DenialReason:
    """Map a key-service refusal onto a denial reason."""
    if status_code == 401:
        return DenialReason.INVALID_CREDENTIAL
    if status_code == 402:
        return DenialReason.SUBSCRIPTION_INACTIVE
    if status_code >= 500:
        return DenialReason.SERVICE_UNREACHABLE

    error = str(body.get("error") or "").lower()
    for needle, reason in _FORBIDDEN_REASONS:
        if needle in error:
            return reason
    if status_code == 403:
        return DenialReason.NO_TEAM_MEMBERSHIP
    return DenialReason.SERVICE_UNREACHABLE


class KeyProvider:
    """Resolves and caches the team key for one auth session.

    The cache lives on this instance only; nothing is written to disk.
    """

    def __init__(
        self,
        session: AuthSession,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.session = session
        self._transport = transport
        self._timeout = timeout
        self._cached: TeamKey | None = None
        self.rotated_from: int | None = None

    @property
    def cached_version(self) -> int | None:
        return self._cached.version if self._cached else None

    def invalidate_cache(self) -> None:
        self._cached = None

    async def resolve_key(self, refresh: bool = False) -> TeamKey:
        """Return the team key, asking the service unless a cached key exists.

        Raises:
            AccessDenied: with the reason the key could not be released.
            InvalidKeyLength: if the service hands out a malformed key.
        """
        if self._cached and not refresh:
            return self._cached
        if not self.session.token:
            raise AccessDenied(DenialReason.NO_CREDENTIAL)

        data = await self._request()
        key = self._parse_key(data)

        previous = self._cached
        if previous and key.version > previous.version:
            logger.warning(
                "Team key rotated from v%d to v%d; older envelopes need re-encryption",
                previous.version,
                key.version,
            )
            self.rotated_from = previous.version
        self._cached = key
        return key

    async def _request(self) -> dict:
        url = f"{self.session.api_url}{KEY_ENDPOINT}"
        headers = {"Authorization": f"Bearer {self.session.token}"}
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    url, headers=headers, json={"machineId": self.session.machine_id}
                )
        except httpx.HTTPError as e:
            logger.info("Key service request failed: %s", e)
            raise AccessDenied(DenialReason.SERVICE_UNREACHABLE) from e

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            if response.is_success:
                raise AccessDenied(
                    DenialReason.SERVICE_UNREACHABLE, "The key service returned a malformed response."
                )
            data = {}

        if not response.is_success or not data.get("hasAccess"):
            reason = classify_denial(response.status_code if not response.is_success else 403, data)
            raise AccessDenied(reason, data.get("message"))
        return data

    def _parse_key(self, data: dict) -> TeamKey:
        try:
            material = base64.b64decode(data.get("key") or "", validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidKeyLength("team key from service is not valid base64") from e
        try:
            version = int(data.get("keyVersion") or 1)
        except (TypeError, ValueError) as e:
            raise AccessDenied(
                DenialReason.SERVICE_UNREACHABLE, "The key service returned a malformed key version."
            ) from e
        return TeamKey(
            key_material=material,
            version=version,
            team_id=str(data.get("teamId") or ""),
        )
