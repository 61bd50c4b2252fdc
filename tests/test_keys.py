"""Tests for team key resolution and denial classification."""

import asyncio
import base64
import json

import httpx
import pytest

from recall.crypto.keys import AuthSession, KeyProvider, TeamKey, classify_denial
from recall.errors import GUIDANCE, AccessDenied, DenialReason, InvalidKeyLength

from conftest import KEY, OTHER_KEY


def resolve(provider: KeyProvider, refresh: bool = False) -> TeamKey:
    return asyncio.run(provider.resolve_key(refresh=refresh))


def denial(provider: KeyProvider) -> AccessDenied:
    with pytest.raises(AccessDenied) as exc:
        resolve(provider)
    return exc.value


class TestResolveKey:
    def test_success(self, auth, key_service):
        calls = []
        provider = KeyProvider(auth, transport=key_service(calls=calls))

        key = resolve(provider)
        assert key.key_material == KEY
        assert key.version == 1
        assert key.team_id == "team-1"

        request = calls[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.test/keys/team"
        assert request.headers["Authorization"] == "Bearer tok-123"
        assert json.loads(request.content) == {"machineId": "machine-1"}

    def test_cached_per_instance(self, auth, key_service):
        calls = []
        provider = KeyProvider(auth, transport=key_service(calls=calls))
        resolve(provider)
        resolve(provider)
        assert len(calls) == 1
        assert provider.cached_version == 1

        provider.invalidate_cache()
        resolve(provider)
        assert len(calls) == 2

    def test_refresh_detects_rotation(self, auth, key_service, key_grant):
        transport = key_service()
        provider = KeyProvider(auth, transport=transport)
        resolve(provider)

        transport.state["body"] = key_grant(OTHER_KEY, version=2)
        key = resolve(provider, refresh=True)
        assert key.version == 2
        assert key.key_material == OTHER_KEY
        assert provider.rotated_from == 1

    def test_no_token_skips_network(self, key_service):
        calls = []
        session = AuthSession(token=None, api_url="https://api.test", machine_id="m")
        provider = KeyProvider(session, transport=key_service(calls=calls))
        assert denial(provider).reason is DenialReason.NO_CREDENTIAL
        assert calls == []

    def test_short_key_rejected(self, auth, key_service):
        body = {"hasAccess": True, "key": base64.b64encode(bytes(16)).decode(), "keyVersion": 1}
        provider = KeyProvider(auth, transport=key_service(body=body))
        with pytest.raises(InvalidKeyLength):
            resolve(provider)


class TestDenials:
    @pytest.mark.parametrize(
        "status, body, reason",
        [
            (401, {"error": "Unauthorized"}, DenialReason.INVALID_CREDENTIAL),
            (402, {"error": "Payment required"}, DenialReason.SUBSCRIPTION_INACTIVE),
            (403, {"error": "Seat limit reached"}, DenialReason.SEAT_LIMIT_EXCEEDED),
            (403, {"error": "Subscription inactive"}, DenialReason.SUBSCRIPTION_INACTIVE),
            (403, {"error": "No team membership"}, DenialReason.NO_TEAM_MEMBERSHIP),
            (403, {}, DenialReason.NO_TEAM_MEMBERSHIP),
            (500, {"error": "boom"}, DenialReason.SERVICE_UNREACHABLE),
            (503, {}, DenialReason.SERVICE_UNREACHABLE),
        ],
    )
    def test_status_mapping(self, auth, key_service, status, body, reason):
        provider = KeyProvider(auth, transport=key_service(status=status, body=body))
        assert denial(provider).reason is reason

    def test_has_access_false(self, auth, key_service):
        body = {"hasAccess": False, "error": "User is not a member of any team"}
        provider = KeyProvider(auth, transport=key_service(body=body))
        assert denial(provider).reason is DenialReason.NO_TEAM_MEMBERSHIP

    def test_transport_error(self, auth):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = KeyProvider(auth, transport=httpx.MockTransport(handler))
        error = denial(provider)
        assert error.reason is DenialReason.SERVICE_UNREACHABLE
        assert error.retryable

    def test_malformed_body(self, auth):
        provider = KeyProvider(
            auth, transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        )
        assert denial(provider).reason is DenialReason.SERVICE_UNREACHABLE

    @pytest.mark.parametrize("version", ["v2", ["2"], {"n": 2}])
    def test_malformed_key_version(self, auth, key_service, key_grant, version):
        body = {**key_grant(), "keyVersion": version}
        provider = KeyProvider(auth, transport=key_service(body=body))
        error = denial(provider)
        assert error.reason is DenialReason.SERVICE_UNREACHABLE
        assert "malformed key version" in error.message

    def test_classify_directly(self):
        assert classify_denial(403, {"error": "all seats taken"}) is DenialReason.SEAT_LIMIT_EXCEEDED
        assert classify_denial(418, {}) is DenialReason.SERVICE_UNREACHABLE


class TestGuidance:
    def test_every_reason_has_distinct_guidance(self):
        messages = [AccessDenied(reason).message for reason in DenialReason]
        assert len(set(messages)) == len(DenialReason)
        assert set(GUIDANCE) == set(DenialReason)

    def test_no_team_differs_from_inactive_subscription(self):
        no_team = AccessDenied(DenialReason.NO_TEAM_MEMBERSHIP)
        inactive = AccessDenied(DenialReason.SUBSCRIPTION_INACTIVE)
        assert no_team.message != inactive.message
        assert "invite" in no_team.message
        assert "renew" in inactive.message

    def test_detail_prefixes_guidance(self):
        error = AccessDenied(DenialReason.SEAT_LIMIT_EXCEEDED, "3 of 3 seats used")
        assert error.message.startswith("3 of 3 seats used\n")
        assert error.message.endswith(error.guidance)
        assert not error.retryable
