# auth_rest.py
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

import requests
import structlog

from config import Settings

log = structlog.get_logger()

# ---------- Error taxonomy ----------
INVALID_CREDENTIALS = "invalid-credentials"
ACCOUNT_NOT_FOUND = "account-not-found"
ACCOUNT_DISABLED = "account-disabled"
RATE_LIMITED = "rate-limited"
NETWORK = "network"
INVALID_EMAIL = "invalid-email"
EMAIL_IN_USE = "email-in-use"
WEAK_PASSWORD = "weak-password"
OPERATION_NOT_ALLOWED = "operation-not-allowed"
OTHER = "other"

# GoTrue error_code / error -> our code
_GOTRUE_CODES = {
    "invalid_credentials": INVALID_CREDENTIALS,
    "invalid_grant": INVALID_CREDENTIALS,
    "user_not_found": ACCOUNT_NOT_FOUND,
    "user_banned": ACCOUNT_DISABLED,
    "over_request_rate_limit": RATE_LIMITED,
    "over_email_send_rate_limit": RATE_LIMITED,
    "email_exists": EMAIL_IN_USE,
    "user_already_exists": EMAIL_IN_USE,
    "weak_password": WEAK_PASSWORD,
    "email_address_invalid": INVALID_EMAIL,
    "validation_failed": INVALID_EMAIL,
    "signup_disabled": OPERATION_NOT_ALLOWED,
    "email_provider_disabled": OPERATION_NOT_ALLOWED,
}


class AuthError(RuntimeError):
    def __init__(self, code: str, detail: str = ""):
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail


def _error_from_response(r: requests.Response) -> AuthError:
    # GoTrue returns e.g. {"error":"invalid_grant","error_description":"Invalid login credentials"}
    # or, on newer deployments, {"code":400,"error_code":"invalid_credentials","msg":"..."}
    try:
        err = r.json()
    except ValueError:
        err = {}
    if not isinstance(err, dict):
        err = {}
    raw = err.get("error_code") or err.get("error") or ""
    desc = err.get("error_description") or err.get("msg") or err.get("message") or r.text
    if r.status_code == 429:
        code = RATE_LIMITED
    else:
        code = _GOTRUE_CODES.get(raw, OTHER)
    return AuthError(code, f"{raw or r.status_code}: {desc}")


def _json(r: requests.Response) -> dict:
    try:
        data = r.json()
    except ValueError as e:
        raise AuthError(OTHER, f"{r.status_code}: response was not JSON") from e
    if not isinstance(data, dict):
        raise AuthError(OTHER, f"{r.status_code}: unexpected response body")
    return data


# ---------- Identity ----------
@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    display_name: str = ""
    access_token: str = field(default="", repr=False)
    refresh_token: str = field(default="", repr=False)
    expires_at: float = field(default=0.0, repr=False)


def _identity_from_user(user: dict, session: Optional[dict] = None) -> Identity:
    session = session or {}
    meta = user.get("user_metadata") or {}
    expires_at = session.get("expires_at")
    if not expires_at and session.get("expires_in"):
        expires_at = time.time() + float(session["expires_in"])
    return Identity(
        id=str(user.get("id") or ""),
        email=user.get("email") or "",
        display_name=meta.get("display_name") or "",
        access_token=session.get("access_token") or "",
        refresh_token=session.get("refresh_token") or "",
        expires_at=float(expires_at or 0.0),
    )


class AuthClient:
    """
    Thin client over the Supabase Auth (GoTrue) REST API.

    Holds the current identity for one browser session and pushes every
    change to subscribers, including the first resolution at startup.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._current: Optional[Identity] = None
        self._resolved = False
        self._listeners: List[Callable[[Optional[Identity]], None]] = []
        self._refresh_lock = threading.Lock()

    # ---------- HTTP ----------
    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        h = {
            "apikey": self.settings.supabase_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if token:
            h["Authorization"] = f"Bearer {token}"
        return h

    def _call(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> requests.Response:
        url = f"{self.settings.supabase_url}/auth/v1/{path}"
        send = getattr(requests, method)
        try:
            r = send(url, headers=self._headers(token), timeout=self.settings.http_timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise AuthError(NETWORK, str(e)) from e
        if r.status_code >= 400:
            raise _error_from_response(r)
        return r

    # ---------- Identity feed ----------
    @property
    def current(self) -> Optional[Identity]:
        return self._current

    @property
    def resolved(self) -> bool:
        return self._resolved

    def subscribe(self, callback: Callable[[Optional[Identity]], None]) -> Callable[[], None]:
        """Register for identity changes. Replays the current identity if already resolved."""
        self._listeners.append(callback)
        if self._resolved:
            callback(self._current)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _set_identity(self, identity: Optional[Identity]) -> None:
        self._current = identity
        self._resolved = True
        for cb in list(self._listeners):
            cb(identity)

    def resolve(self, refresh_token: Optional[str] = None) -> Optional[Identity]:
        """
        Settle the startup state. A remembered refresh token is exchanged for a
        fresh session; anything else (no token, expired, revoked) settles to None.
        """
        if refresh_token:
            try:
                return self.restore(refresh_token)
            except AuthError as e:
                log.info("auth.restore_failed", code=e.code)
        self._set_identity(None)
        return None

    # ---------- Auth ----------
    def sign_in(self, email: str, password: str) -> Identity:
        """Password grant sign in. Raises AuthError on failure."""
        r = self._call(
            "post",
            "token?grant_type=password",
            json={"email": (email or "").strip(), "password": password or "", "gotrue_meta_security": {}},
        )
        data = _json(r)
        identity = _identity_from_user(data.get("user") or {}, data)
        log.info("auth.signed_in", user_id=identity.id)
        self._set_identity(identity)
        return identity

    def sign_up(self, email: str, password: str, display_name: str = "") -> Optional[Identity]:
        """
        Create an account. Returns the new identity when the project issues a
        session right away, or None when the email must be confirmed first.
        """
        r = self._call(
            "post",
            "signup",
            json={"email": (email or "").strip(), "password": password, "data": {"display_name": display_name}},
        )
        data = _json(r)
        if not data.get("access_token"):
            log.info("auth.signup_pending_confirmation")
            return None
        identity = _identity_from_user(data.get("user") or {}, data)
        log.info("auth.signed_up", user_id=identity.id)
        self._set_identity(identity)
        return identity

    def set_display_name(self, identity: Identity, name: str) -> Identity:
        r = self._call("put", "user", token=identity.access_token, json={"data": {"display_name": name}})
        updated = replace(identity, display_name=(_json(r).get("user_metadata") or {}).get("display_name") or name)
        if self._current is not None and self._current.id == updated.id:
            self._current = updated
        return updated

    def send_password_reset(self, email: str) -> None:
        self._call("post", "recover", json={"email": (email or "").strip()})
        log.info("auth.password_reset_sent")

    def sign_out(self) -> None:
        """
        Revoke the session server-side, then drop it locally. A token the server
        no longer accepts still counts as signed out; network failures do not.
        """
        cur = self._current
        if cur is not None and cur.access_token:
            try:
                self._call("post", "logout", token=cur.access_token)
            except AuthError as e:
                if e.code == NETWORK:
                    raise
                log.info("auth.logout_rejected", code=e.code)
        self._set_identity(None)

    # ---------- Session refresh ----------
    def restore(self, refresh_token: str) -> Identity:
        identity = self._refresh(refresh_token)
        self._set_identity(identity)
        return identity

    def _refresh(self, refresh_token: str) -> Identity:
        r = self._call("post", "token?grant_type=refresh_token", json={"refresh_token": refresh_token})
        data = _json(r)
        return _identity_from_user(data.get("user") or {}, data)

    def ensure_fresh(self, leeway: float = 60.0) -> Optional[Identity]:
        """Refresh the access token shortly before it expires. Same user, so no push."""
        with self._refresh_lock:
            cur = self._current
            if cur is None or not cur.refresh_token or not cur.expires_at:
                return cur
            if cur.expires_at - leeway > time.time():
                return cur
            fresh = self._refresh(cur.refresh_token)
            if fresh.id == cur.id:
                fresh = replace(fresh, display_name=fresh.display_name or cur.display_name)
                self._current = fresh
                log.debug("auth.session_refreshed", user_id=fresh.id)
            return self._current

    def access_token(self) -> str:
        cur = self.ensure_fresh()
        if cur is None or not cur.access_token:
            raise AuthError(OTHER, "Not signed in.")
        return cur.access_token
