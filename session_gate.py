# session_gate.py
from typing import Callable, Optional

import structlog

from auth_rest import AuthError, Identity

log = structlog.get_logger()

LOADING = "loading"
DASHBOARD = "dashboard"
LOGIN = "login"
REGISTER = "register"
AUTH_VIEWS = (LOGIN, REGISTER)

SIGN_OUT_FAILED = "Failed to sign out"


class _Unresolved:
    def __repr__(self):
        return "UNRESOLVED"


UNRESOLVED = _Unresolved()


class SessionGate:
    """
    Tracks who is signed in and decides which screen to show.

    Owns the dashboard for the current identity: built on first use, closed
    (feed released) as soon as the identity changes or goes away.
    """

    def __init__(self, auth, dashboard_factory: Callable[[Identity], object]):
        self.auth = auth
        self.identity = UNRESOLVED
        self.dashboard = None
        self._factory = dashboard_factory
        self._unsubscribe = auth.subscribe(self._on_identity)

    @property
    def resolved(self) -> bool:
        return self.identity is not UNRESOLVED

    def _on_identity(self, identity: Optional[Identity]) -> None:
        prev = self.identity
        self.identity = identity
        same_user = (
            identity is not None
            and isinstance(prev, Identity)
            and prev.id == identity.id
        )
        if not same_user:
            log.info("gate.identity_changed", user_id=getattr(identity, "id", None))
            self._teardown()

    def _teardown(self) -> None:
        if self.dashboard is not None:
            self.dashboard.close()
            self.dashboard = None

    def route(self, requested: Optional[str] = None) -> str:
        if not self.resolved:
            return LOADING
        if self.identity is not None:
            return DASHBOARD
        return requested if requested in AUTH_VIEWS else LOGIN

    def remembered_token(self) -> Optional[str]:
        """Refresh token of the live session. It rotates on refresh, which is not an identity push."""
        if not isinstance(self.identity, Identity):
            return None
        cur = self.auth.current
        if cur is None or cur.id != self.identity.id:
            return None
        return cur.refresh_token or None

    def dashboard_for_session(self):
        if not isinstance(self.identity, Identity):
            return None
        if self.dashboard is None:
            self.dashboard = self._factory(self.identity)
            self.dashboard.start()
        return self.dashboard

    def sign_out(self) -> bool:
        try:
            self.auth.sign_out()
        except AuthError as e:
            log.warning("gate.sign_out_failed", code=e.code, detail=e.detail)
            if self.dashboard is not None:
                self.dashboard.error = SIGN_OUT_FAILED
            return False
        return True

    def close(self) -> None:
        self._teardown()
        self._unsubscribe()
