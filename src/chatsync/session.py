"""Authenticated identity plus the OTP verification sequence.

The visible state is derived from two independent pieces: whether a user is
authenticated, and the (at most one) pending OTP context. The reset flow runs
in parallel to authentication, so a signed-in user may request a reset code
without losing the session until the password is actually reset.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("chatsync.session")

AuthCallback = Callable[[Optional[str]], None]


class SessionStateError(Exception):
    pass


class AuthState(str, Enum):
    ANONYMOUS = "anonymous"
    OTP_PENDING = "otp_pending"
    AUTHENTICATED = "authenticated"
    RESET_OTP_PENDING = "reset_otp_pending"
    RESET_PASSWORD_ALLOWED = "reset_password_allowed"


class OtpPurpose(str, Enum):
    REGISTER = "register"
    RESET = "reset"


@dataclass
class OtpContext:
    email: str
    purpose: OtpPurpose
    verified: bool = False


@dataclass(frozen=True)
class User:
    id: str
    name: str = ""
    username: str = ""
    email: str = ""
    avatar: Optional[str] = None

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "User":
        user_id = data.get("_id") or data.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("user id required")
        avatar = data.get("avatar")
        return cls(
            id=user_id,
            name=str(data.get("name", "")),
            username=str(data.get("username", "")),
            email=str(data.get("email", "")),
            avatar=avatar if isinstance(avatar, str) else None,
        )


class ResendTimer:
    """Countdown gating the resend-code action."""

    def __init__(self, cooldown_s: float = 60, *, now_func: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_s = cooldown_s
        self._now = now_func
        self._deadline: Optional[float] = None

    def start(self) -> None:
        self._deadline = self._now() + self.cooldown_s

    def stop(self) -> None:
        self._deadline = None

    @property
    def started(self) -> bool:
        return self._deadline is not None

    def remaining_s(self) -> int:
        if self._deadline is None:
            return 0
        return max(0, math.ceil(self._deadline - self._now()))

    @property
    def can_resend(self) -> bool:
        return self._deadline is not None and self.remaining_s() == 0


class Session:
    def __init__(
        self,
        *,
        resend_cooldown_s: float = 60,
        now_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self.user: Optional[User] = None
        self.is_authenticated = False
        self.is_initialized = False
        self.is_loading = False
        self.error: Optional[str] = None
        self.connection_error: Optional[str] = None
        self.otp: Optional[OtpContext] = None
        self.resend_timer = ResendTimer(resend_cooldown_s, now_func=now_func)
        self._callbacks: List[AuthCallback] = []

    @property
    def identity(self) -> Optional[str]:
        if not self.is_authenticated or self.user is None:
            return None
        return self.user.id

    @property
    def otp_email(self) -> Optional[str]:
        return self.otp.email if self.otp is not None else None

    @property
    def state(self) -> AuthState:
        if self.otp is not None:
            if self.otp.purpose is OtpPurpose.REGISTER:
                return AuthState.OTP_PENDING
            if self.otp.verified:
                return AuthState.RESET_PASSWORD_ALLOWED
            return AuthState.RESET_OTP_PENDING
        if self.is_authenticated:
            return AuthState.AUTHENTICATED
        return AuthState.ANONYMOUS

    def register_auth_callback(self, callback: AuthCallback) -> None:
        """``callback`` receives the new identity, or None when it is lost."""

        self._callbacks.append(callback)

    def unregister_auth_callback(self, callback: AuthCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return

    def registration_requested(self, email: str) -> None:
        if self.is_authenticated:
            raise SessionStateError("already authenticated")
        self._enter_otp(OtpContext(email=email, purpose=OtpPurpose.REGISTER))

    def reset_requested(self, email: str) -> None:
        self._enter_otp(OtpContext(email=email, purpose=OtpPurpose.RESET))

    def check_otp_target(self, purpose: OtpPurpose, email: str | None = None) -> bool:
        """Validate that a verification targets the pending context.

        A missing context, a context for the other flow, or a different
        email invalidates the sequence: the context is dropped and the caller
        has to start over from the request step.
        """

        if self.otp is None:
            self.context_invalid("Email not found. Please request a new code.")
            return False
        if self.otp.purpose is not purpose:
            raise SessionStateError(f"pending code is for {self.otp.purpose.value}, not {purpose.value}")
        if email is not None and email.strip().lower() != self.otp.email.strip().lower():
            self.context_invalid("Verification email does not match the pending request.")
            return False
        return True

    def otp_verified(self, user: User) -> None:
        if self.otp is None or self.otp.purpose is not OtpPurpose.REGISTER:
            raise SessionStateError("no registration code pending")
        self._clear_otp()
        self.error = None
        self._authenticate(user)

    def reset_otp_verified(self) -> None:
        if self.otp is None or self.otp.purpose is not OtpPurpose.RESET:
            raise SessionStateError("no reset code pending")
        self.otp.verified = True
        self.resend_timer.stop()
        self.error = None

    def password_reset_completed(self) -> None:
        if self.otp is None or self.otp.purpose is not OtpPurpose.RESET or not self.otp.verified:
            raise SessionStateError("password reset not allowed yet")
        self._clear_otp()
        self.error = None
        self._deauthenticate()

    def login_succeeded(self, user: User) -> None:
        if self.otp is not None and self.otp.purpose is OtpPurpose.REGISTER:
            self._clear_otp()
        self.error = None
        self._authenticate(user)

    def restore_succeeded(self, user: User) -> None:
        self.is_initialized = True
        self.error = None
        self._authenticate(user)

    def restore_failed(self) -> None:
        self.is_initialized = True
        self._deauthenticate()

    def logged_out(self) -> None:
        self._clear_otp()
        self.error = None
        self._deauthenticate()

    def cancel_otp(self) -> None:
        self._clear_otp()

    def failed(self, message: str) -> None:
        """Record a failed call; pending context is kept so the user can retry."""

        logger.info("auth call failed: %s", message)
        self.error = message

    def context_invalid(self, message: str) -> None:
        logger.info("otp context invalidated: %s", message)
        self._clear_otp()
        self.error = message

    def clear_error(self) -> None:
        self.error = None

    def resend_requested(self) -> bool:
        if self.otp is None or self.otp.verified or not self.resend_timer.can_resend:
            return False
        self.resend_timer.start()
        return True

    def _enter_otp(self, context: OtpContext) -> None:
        self.otp = context
        self.error = None
        self.resend_timer.start()

    def _clear_otp(self) -> None:
        self.otp = None
        self.resend_timer.stop()

    def _authenticate(self, user: User) -> None:
        previous = self.identity
        self.user = user
        self.is_authenticated = True
        self.connection_error = None
        if previous != user.id:
            self._notify(user.id)

    def _deauthenticate(self) -> None:
        was_authenticated = self.is_authenticated
        self.user = None
        self.is_authenticated = False
        if was_authenticated:
            self._notify(None)

    def _notify(self, identity: Optional[str]) -> None:
        for callback in list(self._callbacks):
            callback(identity)
