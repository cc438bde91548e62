"""Tests for the GoTrue REST client: error classification, identity feed, session refresh."""

from __future__ import annotations

import time

import pytest
import requests

import auth_rest
from auth_rest import AuthClient, AuthError, Identity
from fakes import FakeResponse

SESSION = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "expires_in": 3600,
    "user": {"id": "user-1", "email": "ada@example.com", "user_metadata": {"display_name": "Ada"}},
}


class Recorder:
    """Replaces requests.post / requests.put and replays queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def __call__(self, url, headers=None, timeout=None, json=None, **kwargs):
        self.calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp


@pytest.fixture
def client(settings):
    return AuthClient(settings)


def _patch(monkeypatch, method: str, *responses) -> Recorder:
    rec = Recorder(*responses)
    monkeypatch.setattr(auth_rest.requests, method, rec)
    return rec


class TestSignIn:
    def test_success_sets_and_pushes_identity(self, client, monkeypatch):
        rec = _patch(monkeypatch, "post", FakeResponse(200, SESSION))
        seen = []
        client.subscribe(seen.append)

        identity = client.sign_in(" ada@example.com ", "secret")

        assert identity.id == "user-1"
        assert identity.display_name == "Ada"
        assert identity.access_token == "access-1"
        assert client.current == identity
        assert seen == [identity]
        call = rec.calls[0]
        assert call["url"] == "https://demo.supabase.co/auth/v1/token?grant_type=password"
        assert call["json"]["email"] == "ada@example.com"
        assert call["headers"]["apikey"] == "anon-key"
        assert "Authorization" not in call["headers"]

    @pytest.mark.parametrize("status,body,code", [
        (400, {"error": "invalid_grant", "error_description": "Invalid login credentials"}, auth_rest.INVALID_CREDENTIALS),
        (400, {"code": 400, "error_code": "invalid_credentials", "msg": "Invalid login credentials"}, auth_rest.INVALID_CREDENTIALS),
        (400, {"error_code": "user_banned", "msg": "User is banned"}, auth_rest.ACCOUNT_DISABLED),
        (404, {"error_code": "user_not_found"}, auth_rest.ACCOUNT_NOT_FOUND),
        (429, {"error_code": "something_new"}, auth_rest.RATE_LIMITED),
        (400, {"error_code": "email_address_invalid"}, auth_rest.INVALID_EMAIL),
        (500, None, auth_rest.OTHER),
    ])
    def test_error_classification(self, client, monkeypatch, status, body, code):
        _patch(monkeypatch, "post", FakeResponse(status, body, text="oops"))
        with pytest.raises(AuthError) as exc:
            client.sign_in("ada@example.com", "bad")
        assert exc.value.code == code
        assert client.current is None

    @pytest.mark.parametrize("error", [requests.ConnectionError("down"), requests.Timeout("slow")])
    def test_transport_failure_is_network(self, client, monkeypatch, error):
        _patch(monkeypatch, "post", error)
        with pytest.raises(AuthError) as exc:
            client.sign_in("ada@example.com", "pw")
        assert exc.value.code == auth_rest.NETWORK


class TestSignUp:
    def test_pending_confirmation_returns_none(self, client, monkeypatch):
        rec = _patch(monkeypatch, "post", FakeResponse(200, {"id": "user-9", "email": "new@example.com"}))
        assert client.sign_up("new@example.com", "secret1", display_name="Neo") is None
        assert client.current is None
        assert rec.calls[0]["json"]["data"] == {"display_name": "Neo"}

    def test_session_issued_sets_identity(self, client, monkeypatch):
        _patch(monkeypatch, "post", FakeResponse(200, SESSION))
        identity = client.sign_up("ada@example.com", "secret1", display_name="Ada")
        assert identity is not None
        assert client.current == identity

    @pytest.mark.parametrize("raw,code", [
        ("email_exists", auth_rest.EMAIL_IN_USE),
        ("user_already_exists", auth_rest.EMAIL_IN_USE),
        ("weak_password", auth_rest.WEAK_PASSWORD),
        ("signup_disabled", auth_rest.OPERATION_NOT_ALLOWED),
    ])
    def test_error_codes(self, client, monkeypatch, raw, code):
        _patch(monkeypatch, "post", FakeResponse(422, {"error_code": raw}))
        with pytest.raises(AuthError) as exc:
            client.sign_up("ada@example.com", "secret1")
        assert exc.value.code == code

    def test_set_display_name_updates_current(self, client, monkeypatch):
        _patch(monkeypatch, "post", FakeResponse(200, SESSION))
        identity = client.sign_in("ada@example.com", "secret")
        rec = _patch(monkeypatch, "put", FakeResponse(200, {"id": "user-1", "user_metadata": {"display_name": "Ada L."}}))
        updated = client.set_display_name(identity, "Ada L.")
        assert updated.display_name == "Ada L."
        assert client.current.display_name == "Ada L."
        assert rec.calls[0]["headers"]["Authorization"] == "Bearer access-1"


class TestPasswordReset:
    def test_posts_recover(self, client, monkeypatch):
        rec = _patch(monkeypatch, "post", FakeResponse(200, {}))
        client.send_password_reset(" ada@example.com ")
        assert rec.calls[0]["url"].endswith("/auth/v1/recover")
        assert rec.calls[0]["json"] == {"email": "ada@example.com"}
        assert client.resolved is False


class TestIdentityFeed:
    def test_resolve_without_token_settles_to_none(self, client):
        seen = []
        client.subscribe(seen.append)
        assert client.resolve(None) is None
        assert client.resolved is True
        assert seen == [None]

    def test_resolve_restores_remembered_session(self, client, monkeypatch):
        rec = _patch(monkeypatch, "post", FakeResponse(200, SESSION))
        identity = client.resolve("refresh-0")
        assert identity.id == "user-1"
        assert rec.calls[0]["url"].endswith("token?grant_type=refresh_token")
        assert rec.calls[0]["json"] == {"refresh_token": "refresh-0"}

    def test_resolve_with_revoked_token_settles_to_none(self, client, monkeypatch):
        _patch(monkeypatch, "post", FakeResponse(400, {"error_code": "refresh_token_not_found"}))
        assert client.resolve("stale") is None
        assert client.resolved is True

    def test_subscribe_replays_once_resolved(self, client):
        client.resolve(None)
        seen = []
        client.subscribe(seen.append)
        assert seen == [None]

    def test_unsubscribe_stops_pushes(self, client, monkeypatch):
        seen = []
        unsubscribe = client.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        client.resolve(None)
        assert seen == []


class TestSignOut:
    def _signed_in(self, client, monkeypatch):
        _patch(monkeypatch, "post", FakeResponse(200, SESSION))
        client.sign_in("ada@example.com", "secret")

    def test_clears_identity(self, client, monkeypatch):
        self._signed_in(client, monkeypatch)
        rec = _patch(monkeypatch, "post", FakeResponse(204, None))
        seen = []
        client.subscribe(seen.append)
        client.sign_out()
        assert client.current is None
        assert seen[-1] is None
        assert rec.calls[0]["url"].endswith("/auth/v1/logout")

    def test_rejected_token_still_signs_out(self, client, monkeypatch):
        self._signed_in(client, monkeypatch)
        _patch(monkeypatch, "post", FakeResponse(401, {"error_code": "bad_jwt"}))
        client.sign_out()
        assert client.current is None

    def test_network_failure_keeps_session(self, client, monkeypatch):
        self._signed_in(client, monkeypatch)
        _patch(monkeypatch, "post", requests.ConnectionError("down"))
        with pytest.raises(AuthError):
            client.sign_out()
        assert client.current is not None


class TestRefresh:
    def test_fresh_token_is_reused(self, client, monkeypatch):
        _patch(monkeypatch, "post", FakeResponse(200, SESSION))
        client.sign_in("ada@example.com", "secret")
        rec = _patch(monkeypatch, "post")
        assert client.access_token() == "access-1"
        assert rec.calls == []

    def test_expiring_token_is_refreshed_without_push(self, client, monkeypatch):
        _patch(monkeypatch, "post", FakeResponse(200, dict(SESSION, expires_in=10)))
        client.sign_in("ada@example.com", "secret")
        seen = []
        client.subscribe(seen.append)
        renewed = dict(SESSION, access_token="access-2", refresh_token="refresh-2",
                       expires_at=time.time() + 3600)
        _patch(monkeypatch, "post", FakeResponse(200, renewed))
        assert client.access_token() == "access-2"
        assert client.current.refresh_token == "refresh-2"
        # only the replay on subscribe; a refresh is not an identity change
        assert len(seen) == 1

    def test_non_json_refresh_response_is_auth_error(self, client, monkeypatch):
        _patch(monkeypatch, "post", FakeResponse(200, dict(SESSION, expires_in=10)))
        client.sign_in("ada@example.com", "secret")
        _patch(monkeypatch, "post", FakeResponse(200, None, text="<html>maintenance</html>"))
        with pytest.raises(AuthError) as exc:
            client.access_token()
        assert exc.value.code == auth_rest.OTHER
        assert client.current.refresh_token == "refresh-1"

    def test_signed_out_has_no_token(self, client):
        with pytest.raises(AuthError):
            client.access_token()


def test_identity_repr_hides_credentials():
    text = repr(Identity(id="u", email="e@x.io", access_token="secret-token", refresh_token="r"))
    assert "secret-token" not in text
