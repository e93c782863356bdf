"""
AuthManager - authentication state, login/logout, token refresh and login redirects.

State is derived from the CredentialStore: the admin slot wins when its user
is an admin, otherwise the customer slot (whose user may itself be an admin
who signed in through the customer flow).
"""

import asyncio
import base64
import json
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from storefront.services.credentials import Credential, CredentialStore, Role, UserRecord
from storefront.services.errors import ServiceError
from storefront.services.executor import RequestExecutor, RequestOptions

LOGIN_PAGES = {
    Role.ADMIN: "/admin-login.html",
    Role.CUSTOMER: "/customer-login.html",
}
LOGIN_ENDPOINTS = {
    Role.ADMIN: "/auth/admin/login",
    Role.CUSTOMER: "/auth/customer/login",
}
REFRESH_ENDPOINT = "/auth/refresh"
LOGOUT_ENDPOINT = "/auth/logout"

Navigator = Callable[[str], Any]
AuthListener = Callable[["AuthState"], Any]


@dataclass(frozen=True)
class AuthState:
    """Snapshot handed to auth-change listeners."""

    is_authenticated: bool = False
    user_role: str | None = None  # "admin" | "user"
    user: UserRecord | None = None
    token: str | None = None
    slot: Role | None = None


@dataclass
class LoginResult:
    success: bool
    user: UserRecord | None = None
    error: str | None = None


def decode_token_payload(token: str) -> dict[str, Any]:
    """Decode the (unverified) JWT payload segment."""
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("Token is not a JWT")
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    payload = json.loads(base64.urlsafe_b64decode(segment))
    if not isinstance(payload, dict):
        raise ValueError("Token payload is not an object")
    return payload


def _log_navigation(url: str) -> None:
    logger.info(f"Redirect requested: {url}")


class AuthManager:
    """
    Usage:
        auth = AuthManager(credentials, executor, navigator=open_page)
        await auth.initialize()

        result = await auth.login("a@laiq.shop", "secret", Role.ADMIN)
        if await auth.check_auth(Role.ADMIN):
            headers = auth.get_auth_header()
    """

    def __init__(
        self,
        credentials: CredentialStore,
        executor: RequestExecutor,
        navigator: Navigator | None = None,
        refresh_interval_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._credentials = credentials
        self._executor = executor
        self._navigator = navigator or _log_navigation
        self._refresh_interval = refresh_interval_seconds
        self._clock = clock
        self._state = AuthState()
        self._listeners: list[AuthListener] = []
        self._initialized = False
        self._redirect_pending = False
        self._refresh_lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None

    # Lifecycle

    async def initialize(self, scheduler: AsyncIOScheduler | None = None) -> None:
        if scheduler is not None:
            self._scheduler = scheduler
        if self._initialized:
            return

        await self.check_existing_auth()
        if self._state.is_authenticated:
            self._start_auto_refresh()
        self._initialized = True
        logger.info("Auth manager initialized")

    async def stop(self) -> None:
        self._stop_auto_refresh()

    async def check_existing_auth(self) -> bool:
        """Derive auth state from stored credentials."""
        admin = await self._credentials.load(Role.ADMIN)
        if admin is not None and admin.subject.is_admin:
            self._state = self._state_from(admin)
            logger.debug("Admin authentication found")
            return True

        customer = await self._credentials.load(Role.CUSTOMER)
        if customer is not None and customer.subject.role in ("admin", "user"):
            self._state = self._state_from(customer)
            logger.debug(f"Customer authentication found (role: {customer.subject.role})")
            return True

        self._state = AuthState()
        logger.debug("No valid authentication found")
        return False

    @staticmethod
    def _state_from(credential: Credential) -> AuthState:
        return AuthState(
            is_authenticated=True,
            user_role=credential.subject.role,
            user=credential.subject,
            token=credential.token,
            slot=credential.role,
        )

    # Checks

    async def check_auth(self, role: Role | str) -> bool:
        """
        Verify the current user may act as ``role``; redirect to login if not.

        ``admin`` requires an admin user, ``customer`` a regular user. An
        expired token gets one refresh attempt before giving up.
        """
        role = Role(role)
        if not self._initialized:
            await self.initialize()

        required = "admin" if role == Role.ADMIN else "user"
        if not self._state.is_authenticated or self._state.user_role != required:
            logger.debug(f"Not authenticated as {role.value}")
            self.redirect_to_login(role)
            return False

        if self.is_token_expired():
            logger.debug("Token expired, attempting refresh")
            await self.refresh_token()
            if self.is_token_expired():
                self.redirect_to_login(role)
                return False

        return True

    def is_token_expired(self) -> bool:
        token = self._state.token
        if not token:
            return True
        try:
            payload = decode_token_payload(token)
        except (ValueError, UnicodeDecodeError) as e:
            logger.debug(f"Could not decode token expiry: {e}")
            return True
        exp = payload.get("exp")
        if not exp:
            return False
        try:
            return float(exp) < self._clock()
        except (TypeError, ValueError):
            logger.debug(f"Unreadable token expiry: {exp!r}")
            return True

    def validate_token(self, token: str) -> bool:
        """True when ``token`` is a JWT carrying exp, iat and id claims."""
        try:
            payload = decode_token_payload(token)
        except (ValueError, UnicodeDecodeError):
            return False
        return all(payload.get(claim) for claim in ("exp", "iat", "id"))

    # Session operations

    async def refresh_token(self) -> bool:
        """Exchange the current token for a new one. Returns True on success."""
        async with self._refresh_lock:
            state = self._state
            if not state.token:
                return False
            try:
                data = await self._executor.execute(
                    REFRESH_ENDPOINT,
                    RequestOptions(
                        method="POST",
                        headers={"Authorization": f"Bearer {state.token}"},
                        skip_auth=True,
                    ),
                )
            except ServiceError as e:
                logger.error(f"Error refreshing token: {e}")
                return False

            if not isinstance(data, dict) or not data.get("success") or not data.get("token"):
                logger.warning("Token refresh rejected by server")
                return False

            token = str(data["token"])
            slot = state.slot or (Role.ADMIN if state.user_role == "admin" else Role.CUSTOMER)
            if state.user is not None:
                await self._credentials.save(
                    Credential(role=slot, token=token, subject=state.user)
                )
            else:
                await self._credentials.update_token(slot, token)

            self._state = replace(state, token=token, slot=slot)
            self._redirect_pending = False
            logger.info("Token refreshed successfully")
            return True

    async def login(self, email: str, password: str, role: Role | str = Role.ADMIN) -> LoginResult:
        role = Role(role)
        logger.info(f"Logging in as {role.value}...")
        try:
            data = await self._executor.execute(
                LOGIN_ENDPOINTS[role],
                RequestOptions(
                    method="POST",
                    body={"email": email, "password": password},
                    skip_auth=True,
                ),
            )
        except ServiceError as e:
            logger.error(f"Login error: {e}")
            return LoginResult(success=False, error=str(e))

        if not isinstance(data, dict) or not data.get("success") or not data.get("token"):
            logger.error("Login failed: unexpected response")
            return LoginResult(success=False, error="Login failed")

        user = UserRecord.model_validate(data.get("user") or {})
        credential = Credential(role=role, token=str(data["token"]), subject=user)
        await self._credentials.save(credential)

        self._state = self._state_from(credential)
        self._redirect_pending = False
        self._initialized = True
        self._start_auto_refresh()
        await self._notify()

        logger.info(f"{role.value} login successful")
        return LoginResult(success=True, user=user)

    async def logout(self) -> bool:
        logger.info("Logging out...")
        if self._state.token:
            try:
                await self._executor.execute(
                    LOGOUT_ENDPOINT,
                    RequestOptions(
                        method="POST",
                        headers={"Authorization": f"Bearer {self._state.token}"},
                        skip_auth=True,
                    ),
                )
            except ServiceError as e:
                logger.warning(f"Logout request failed, clearing local session anyway: {e}")

        await self.clear_all_auth()
        logger.info("Logout successful")
        return True

    async def clear_all_auth(self) -> None:
        """Forget both credential slots and the in-memory state."""
        self._state = AuthState()
        await self._credentials.clear_all()
        self._stop_auto_refresh()
        await self._notify()

    # Accessors

    def get_auth_state(self) -> AuthState:
        return self._state

    def has_role(self, role: str) -> bool:
        return self._state.is_authenticated and self._state.user_role == role

    def has_permission(self, permission: str) -> bool:
        # Admins hold every permission; customers none of the back-office ones
        return self._state.is_authenticated and self._state.user_role == "admin"

    def get_auth_header(self) -> dict[str, str]:
        if self._state.is_authenticated and self._state.token:
            return {"Authorization": f"Bearer {self._state.token}"}
        return {}

    # Redirects

    def redirect_to_login(self, role: Role | str) -> bool:
        """
        Send the user to ``role``'s login page.

        Fires once per session loss: repeated calls before the next
        successful login or refresh are ignored. Returns True if it fired.
        """
        if self._redirect_pending:
            logger.debug("Login redirect already pending")
            return False
        self._redirect_pending = True
        url = LOGIN_PAGES[Role(role)]
        try:
            self._navigator(url)
        except Exception as e:
            logger.error(f"Navigator failed for {url}: {e}")
        return True

    @property
    def redirect_pending(self) -> bool:
        return self._redirect_pending

    # Listeners

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        """Register an auth-change listener (sync or async). Returns an unsubscribe callable."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _notify(self) -> None:
        state = self._state
        for callback in list(self._listeners):
            try:
                result = callback(state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    # Auto-refresh

    async def _auto_refresh_job(self) -> None:
        if self._state.is_authenticated and self.is_token_expired():
            logger.info("Auto-refreshing expired token...")
            await self.refresh_token()

    def _start_auto_refresh(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self._auto_refresh_job,
            trigger="interval",
            seconds=self._refresh_interval,
            id="auth_refresh_job",
            name="Auth token auto-refresh",
            replace_existing=True,
        )

    def _stop_auto_refresh(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job("auth_refresh_job"):
            self._scheduler.remove_job("auth_refresh_job")
