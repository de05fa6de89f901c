from __future__ import annotations

import logging
from typing import Any, Awaitable, Dict, Optional, Protocol, Tuple

import aiohttp

from .session import OtpPurpose, Session, SessionStateError, User

logger = logging.getLogger("chatsync.auth")


class AuthApiError(Exception):
    """A failed REST call. ``context_invalid`` marks a rejected email context."""

    def __init__(self, message: str, *, status: int | None = None, context_invalid: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.context_invalid = context_invalid


class AuthApi(Protocol):
    async def register(
        self, *, name: str, username: str, email: str, password: str, phone_number: str
    ) -> Dict[str, Any]: ...

    async def verify_otp(self, *, email: str, otp: str) -> Dict[str, Any]: ...

    async def resend_otp(self, *, email: str, purpose: str) -> Dict[str, Any]: ...

    async def login(self, *, email: str, password: str) -> Dict[str, Any]: ...

    async def current_user(self) -> Dict[str, Any]: ...

    async def logout(self) -> Dict[str, Any]: ...

    async def forgot_password(self, *, email: str) -> Dict[str, Any]: ...

    async def verify_reset_otp(self, *, email: str, otp: str) -> Dict[str, Any]: ...

    async def reset_password(self, *, email: str, new_password: str, confirm_password: str) -> Dict[str, Any]: ...

    async def change_password(
        self, *, current_password: str, new_password: str, confirm_password: str
    ) -> Dict[str, Any]: ...


def _user_from_response(response: Dict[str, Any], *keys: str) -> User:
    for key in keys:
        candidate = response.get(key)
        if isinstance(candidate, dict):
            return User.from_wire(candidate)
    raise AuthApiError("response did not include a user")


class AuthController:
    """Runs REST calls and feeds their outcomes into the session state machine.

    Every call clears the previous error and raises the loading flag; a
    failure leaves the session where it was (pending context included) and
    stores a user-visible message.
    """

    def __init__(self, api: AuthApi, session: Session) -> None:
        self.api = api
        self.session = session

    async def _run(
        self, call: Awaitable[Dict[str, Any]], fallback: str
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        self.session.is_loading = True
        self.session.clear_error()
        try:
            response = await call
        except AuthApiError as exc:
            if exc.context_invalid:
                self.session.context_invalid(str(exc) or fallback)
            else:
                self.session.failed(str(exc) or fallback)
            return False, None
        except aiohttp.ClientError as exc:
            logger.warning("auth request failed: %s", exc)
            self.session.failed(fallback)
            return False, None
        finally:
            self.session.is_loading = False
        return True, response if isinstance(response, dict) else {}

    async def register(self, *, name: str, username: str, email: str, password: str, phone_number: str) -> bool:
        if self.session.is_authenticated:
            raise SessionStateError("already authenticated")
        ok, _ = await self._run(
            self.api.register(
                name=name, username=username, email=email, password=password, phone_number=phone_number
            ),
            "Registration failed",
        )
        if ok:
            self.session.registration_requested(email)
        return ok

    async def verify_otp(self, otp: str, *, email: str | None = None) -> bool:
        if not self.session.check_otp_target(OtpPurpose.REGISTER, email):
            return False
        target = self.session.otp_email or ""
        ok, response = await self._run(self.api.verify_otp(email=target, otp=otp), "OTP verification failed")
        if not ok:
            return False
        try:
            user = _user_from_response(response or {}, "user")
        except (AuthApiError, ValueError) as exc:
            self.session.failed(str(exc))
            return False
        self.session.otp_verified(user)
        return True

    async def resend_code(self) -> bool:
        context = self.session.otp
        if context is None or not self.session.resend_requested():
            return False
        ok, _ = await self._run(
            self.api.resend_otp(email=context.email, purpose=context.purpose.value), "Failed to resend code"
        )
        return ok

    async def login(self, *, email: str, password: str) -> bool:
        ok, response = await self._run(self.api.login(email=email, password=password), "Login failed")
        if not ok:
            return False
        try:
            user = _user_from_response(response or {}, "userData", "user")
        except (AuthApiError, ValueError) as exc:
            self.session.failed(str(exc))
            return False
        self.session.login_succeeded(user)
        return True

    async def restore(self) -> bool:
        """Refresh the session from the backend; failure drops authentication."""

        self.session.is_loading = True
        try:
            response = await self.api.current_user()
            user = _user_from_response(response if isinstance(response, dict) else {}, "user")
        except (AuthApiError, aiohttp.ClientError, ValueError) as exc:
            logger.info("session restore failed: %s", exc)
            self.session.restore_failed()
            return False
        finally:
            self.session.is_loading = False
        self.session.restore_succeeded(user)
        return True

    async def logout(self) -> None:
        """End the local session whether or not the backend call succeeds."""

        self.session.is_loading = True
        try:
            await self.api.logout()
        except (AuthApiError, aiohttp.ClientError) as exc:
            logger.warning("logout request failed: %s", exc)
        finally:
            self.session.is_loading = False
            self.session.logged_out()

    async def forgot_password(self, email: str) -> bool:
        ok, _ = await self._run(self.api.forgot_password(email=email), "Failed to send reset code")
        if ok:
            self.session.reset_requested(email)
        return ok

    async def verify_reset_otp(self, otp: str, *, email: str | None = None) -> bool:
        if not self.session.check_otp_target(OtpPurpose.RESET, email):
            return False
        target = self.session.otp_email or ""
        ok, _ = await self._run(self.api.verify_reset_otp(email=target, otp=otp), "OTP verification failed")
        if ok:
            self.session.reset_otp_verified()
        return ok

    async def reset_password(self, new_password: str, confirm_password: str) -> bool:
        context = self.session.otp
        if context is None or context.purpose is not OtpPurpose.RESET or not context.verified:
            self.session.context_invalid("Reset session expired. Please request a new code.")
            return False
        ok, _ = await self._run(
            self.api.reset_password(
                email=context.email, new_password=new_password, confirm_password=confirm_password
            ),
            "Password reset failed",
        )
        if ok:
            self.session.password_reset_completed()
        return ok

    async def change_password(self, current_password: str, new_password: str, confirm_password: str) -> bool:
        if not self.session.is_authenticated:
            raise SessionStateError("not authenticated")
        ok, _ = await self._run(
            self.api.change_password(
                current_password=current_password,
                new_password=new_password,
                confirm_password=confirm_password,
            ),
            "Failed to change password",
        )
        return ok
