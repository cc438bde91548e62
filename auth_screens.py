# auth_screens.py
import re
from typing import Dict, Optional

import structlog

from auth_rest import (
    ACCOUNT_DISABLED,
    ACCOUNT_NOT_FOUND,
    EMAIL_IN_USE,
    INVALID_CREDENTIALS,
    INVALID_EMAIL,
    NETWORK,
    OPERATION_NOT_ALLOWED,
    RATE_LIMITED,
    WEAK_PASSWORD,
    AuthClient,
    AuthError,
)

log = structlog.get_logger()

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6

_NETWORK_MSG = "Network error. Please check your connection"
_INVALID_EMAIL_MSG = "Invalid email address"
_NOT_FOUND_MSG = "No account found with this email address"

SIGN_IN_MESSAGES: Dict[str, str] = {
    INVALID_CREDENTIALS: "Incorrect email or password. Please try again",
    ACCOUNT_NOT_FOUND: _NOT_FOUND_MSG,
    ACCOUNT_DISABLED: "This account has been disabled",
    INVALID_EMAIL: _INVALID_EMAIL_MSG,
    RATE_LIMITED: "Too many failed attempts. Please try again later",
    NETWORK: _NETWORK_MSG,
}
SIGN_IN_FALLBACK = "Failed to sign in. Please try again"

SIGN_UP_MESSAGES: Dict[str, str] = {
    EMAIL_IN_USE: "An account with this email already exists",
    WEAK_PASSWORD: "Password is too weak. Please choose a stronger password",
    INVALID_EMAIL: _INVALID_EMAIL_MSG,
    OPERATION_NOT_ALLOWED: "Email/password accounts are not enabled",
    RATE_LIMITED: "Too many requests. Please try again later",
    NETWORK: _NETWORK_MSG,
}
SIGN_UP_FALLBACK = "Failed to create account. Please try again"

RESET_MESSAGES: Dict[str, str] = {
    ACCOUNT_NOT_FOUND: _NOT_FOUND_MSG,
    INVALID_EMAIL: _INVALID_EMAIL_MSG,
    RATE_LIMITED: "Too many requests. Please try again later",
    NETWORK: _NETWORK_MSG,
}
RESET_FALLBACK = "Failed to send reset email. Please try again"


class ValidationError(ValueError):
    pass


def message_for(err: AuthError, messages: Dict[str, str], fallback: str) -> str:
    return messages.get(err.code, fallback)


# ---------- Validation ----------
def validate_email(email: str, blank_message: str = "Email is required") -> str:
    email = (email or "").strip()
    if not email:
        raise ValidationError(blank_message)
    if not EMAIL_RE.match(email):
        raise ValidationError("Please enter a valid email address")
    return email


def validate_sign_in(email: str, password: str) -> str:
    email = validate_email(email)
    if not password:
        raise ValidationError("Password is required")
    return email


def validate_sign_up(name: str, email: str, password: str, confirm_password: str) -> str:
    if not (name or "").strip():
        raise ValidationError("Name is required")
    email = validate_email(email)
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if password != confirm_password:
        raise ValidationError("Passwords do not match")
    return email


# ---------- Forms ----------
class _Form:
    """One error slot per screen, cleared when the user edits any field."""

    def __init__(self, auth: AuthClient):
        self.auth = auth
        self.error: Optional[str] = None
        self.busy = False

    def dismiss_error(self) -> None:
        self.error = None

    def on_input_change(self) -> None:
        self.error = None


class SignInForm(_Form):
    def __init__(self, auth: AuthClient):
        super().__init__(auth)
        self.reset_sent = False

    def on_input_change(self) -> None:
        super().on_input_change()
        self.reset_sent = False

    def sign_in(self, email: str, password: str) -> bool:
        try:
            email = validate_sign_in(email, password)
        except ValidationError as e:
            self.error = str(e)
            return False
        self.busy = True
        self.error = None
        try:
            self.auth.sign_in(email, password)
        except AuthError as e:
            log.warning("auth.sign_in_failed", code=e.code, detail=e.detail)
            self.error = message_for(e, SIGN_IN_MESSAGES, SIGN_IN_FALLBACK)
            return False
        finally:
            self.busy = False
        return True

    def request_password_reset(self, email: str) -> bool:
        """Send a reset link. Identity is untouched; success only flips reset_sent."""
        try:
            email = validate_email(email, blank_message="Please enter your email address first")
        except ValidationError as e:
            self.error = str(e)
            return False
        self.busy = True
        self.error = None
        try:
            self.auth.send_password_reset(email)
        except AuthError as e:
            log.warning("auth.password_reset_failed", code=e.code, detail=e.detail)
            self.error = message_for(e, RESET_MESSAGES, RESET_FALLBACK)
            return False
        finally:
            self.busy = False
        self.reset_sent = True
        return True


class SignUpForm(_Form):
    def __init__(self, auth: AuthClient):
        super().__init__(auth)
        self.confirmation_pending = False

    def sign_up(self, name: str, email: str, password: str, confirm_password: str) -> bool:
        try:
            email = validate_sign_up(name, email, password, confirm_password)
        except ValidationError as e:
            self.error = str(e)
            return False
        name = name.strip()
        self.busy = True
        self.error = None
        try:
            identity = self.auth.sign_up(email, password, display_name=name)
        except AuthError as e:
            log.warning("auth.sign_up_failed", code=e.code, detail=e.detail)
            self.error = message_for(e, SIGN_UP_MESSAGES, SIGN_UP_FALLBACK)
            self.busy = False
            return False

        try:
            if identity is None:
                self.confirmation_pending = True
                return True
            try:
                self.auth.set_display_name(identity, name)
            except AuthError as e:
                # the account exists and the name also went in as signup metadata
                log.warning("auth.set_display_name_failed", code=e.code, user_id=identity.id)
            return True
        finally:
            self.busy = False
