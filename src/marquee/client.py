"""MarqueeClient - the surface the UI layer talks to.

Wires Settings -> storage -> SessionStore -> HttpResilienceClient and the
three services built on top of it (token refresh, server health, login
flows), and adds periodic user status checking while signed in.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

import httpx
from pydantic import ValidationError

from marquee import endpoints
from marquee.auth.orchestrator import AuthFlow, AuthOrchestrator, HandoffOpener
from marquee.auth.refresh import TokenRefreshManager
from marquee.config import Settings
from marquee.config import settings as default_settings
from marquee.errors import AuthError, MarqueeError
from marquee.health import ServerHealthMonitor
from marquee.resilience.circuit_breaker import CircuitBreaker
from marquee.resilience.http_client import HttpClientConfig, HttpResilienceClient
from marquee.schemas import User, UserStatusResponse
from marquee.session.store import SessionStore
from marquee.storage import SecureStorage, create_storage
from marquee.types import CredentialBundle, PairingSession

logger = logging.getLogger(__name__)


class ContentCache(Protocol):
    """Media cache owned by the UI layer."""

    def clear(self) -> None:
        ...

    def invalidate_user_specific(self) -> None:
        ...


class MarqueeClient:
    """Auth and resilience core of the media client.

    Use as an async context manager, or call ``start()`` / ``aclose()``::

        async with MarqueeClient() as client:
            if not client.is_authenticated:
                flow = await client.sign_in_with_provider("google")
                await flow.wait()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        storage: SecureStorage | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        cache: ContentCache | None = None,
        handoff: HandoffOpener | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None
    ):
        self.settings = settings or default_settings
        self.settings.validate_resilience_config()
        s = self.settings

        self.store = SessionStore(storage or create_storage(s))

        config = HttpClientConfig.from_settings(s)
        self.http = HttpResilienceClient(
            config,
            circuit_breaker=CircuitBreaker(
                threshold=config.circuit_breaker_threshold,
                cooldown=config.circuit_breaker_cooldown,
                reset_window=config.circuit_breaker_reset_window,
                clock=clock
            ),
            transport=transport,
            sleep=sleep
        )
        self.refresher = TokenRefreshManager(
            self.http,
            self.store,
            max_attempts=s.token_refresh_attempts,
            retry_delay=s.token_refresh_delay,
            sleep=sleep
        )
        self.health = ServerHealthMonitor(
            self.http,
            debounce_window=s.health_debounce_window,
            settle_delay=s.health_settle_delay,
            recovery_interval=s.health_recovery_interval,
            probe_attempts=s.health_probe_attempts,
            probe_retry_delay=s.health_probe_retry_delay,
            probe_timeout=s.health_probe_timeout,
            clock=clock
        )
        self.auth = AuthOrchestrator(
            self.http,
            self.store,
            handoff=handoff,
            poll_interval=s.auth_poll_interval,
            timeout=s.auth_timeout,
            device_type=s.device_type
        )

        self.http.set_token_refresher(self.refresher.refresh)
        self.http.set_server_failure_callback(self.health.probe_now)

        self._cache = cache
        self._previous: CredentialBundle | None = None
        self._started = False
        self._status_task: asyncio.Task | None = None
        self._status_check_running = False
        self._unsubscribe = self.store.subscribe(self._on_credentials_changed)

    async def __aenter__(self) -> "MarqueeClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # Lifecycle

    async def start(self) -> CredentialBundle | None:
        """Restore the persisted session and start background checks."""
        self.store.get_or_create_client_id()
        bundle = self.store.load()

        if self.store.server_url:
            self.http.set_base_url(self.store.server_url)
        elif self.settings.server_url:
            self.set_server(self.settings.server_url)

        self._started = True
        logger.info(
            f"Marquee client started (server={self.store.server_url or 'unset'}, "
            f"authenticated={bundle is not None})"
        )
        return bundle

    async def aclose(self) -> None:
        task = self._status_task
        self._stop_status_checking()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.auth.aclose()
        await self.health.aclose()
        await self.http.aclose()
        self._unsubscribe()
        logger.debug("Marquee client closed")

    # Session surface

    def set_server(self, url: str) -> None:
        """Point the client at a media server (only while signed out)."""
        self.store.set_server(url)
        self.http.set_base_url(url)
        logger.info(f"Server set to {url}")

    @property
    def server_url(self) -> str | None:
        return self.store.server_url

    def current_user(self) -> User | None:
        bundle = self.store.current
        return bundle.user if bundle else None

    @property
    def is_authenticated(self) -> bool:
        return self.store.current is not None

    def is_server_down(self) -> bool:
        return self.health.is_down

    def server_status_message(self) -> str | None:
        return self.health.message

    # Login flows

    async def sign_in_with_provider(self, provider_id: str) -> AuthFlow:
        return await self.auth.sign_in_with_provider(provider_id)

    async def sign_in_with_qr_code(self) -> PairingSession:
        return await self.auth.sign_in_with_qr_code()

    async def poll_qr_authentication(self, qr_session_id: str) -> AuthFlow:
        return await self.auth.poll_qr_authentication(qr_session_id)

    def cancel_qr_authentication(self) -> bool:
        return self.auth.cancel()

    async def sign_out(self) -> None:
        """Sign out locally; the server URL is kept."""
        logger.info("Signing out")
        self.auth.cancel()
        self._stop_status_checking()
        self.health.reset()
        self.store.clear()

    async def refresh_token(self) -> bool:
        return await self.refresher.refresh()

    # User status

    async def refresh_user_status(self) -> User | None:
        """Check the session against the server.

        A revoked or expired session gets one token refresh; when that fails
        the client signs out. A changed user profile is saved. Calls made
        while a check is running are skipped.

        Returns:
            The current user afterwards, or None when signed out
        """
        bundle = self.store.current
        if bundle is None:
            return None
        if self._status_check_running:
            logger.debug("User status check already in progress, skipping")
            return bundle.user

        self._status_check_running = True
        try:
            try:
                data = await self.http.get(endpoints.USER_STATUS)
                status = UserStatusResponse.model_validate(data or {})
            except AuthError:
                logger.warning("User status rejected after token refresh, signing out")
                await self.sign_out()
                return None
            except (MarqueeError, ValidationError) as e:
                # Connectivity problems are the health monitor's business
                logger.warning(f"User status check failed: {e}")
                return self.current_user()

            if status.is_revoked():
                logger.warning("Session revoked or expired on server, attempting token refresh")
                if await self.refresher.refresh():
                    return self.current_user()
                logger.warning("Token refresh failed after revocation, signing out")
                await self.sign_out()
                return None

            current = self.store.current
            if current is None or current.session_id != bundle.session_id:
                return self.current_user()
            if status.user is not None and status.user != current.user:
                logger.info("User profile changed on server, updating session")
                self.store.save(current.with_user(status.user))
            return self.current_user()
        finally:
            self._status_check_running = False

    async def on_app_foreground(self) -> None:
        """Re-check session and server health when the app becomes active."""
        if self.health.is_down:
            self.health.probe_now()
        if self.is_authenticated:
            await self.refresh_user_status()

    # Internals

    def _on_credentials_changed(self, bundle: CredentialBundle | None) -> None:
        previous = self._previous
        self._previous = bundle
        self.http.set_credentials(bundle)

        if bundle is None:
            if self.store.server_url:
                self.http.set_base_url(self.store.server_url)
            if previous is not None:
                self.auth.cancel()
                self._stop_status_checking()
                self.health.reset()
                if self._cache is not None:
                    self._cache.clear()
                logger.info("Signed out, cleared user state")
            return

        if self._started and (previous is None or previous.session_id != bundle.session_id):
            logger.info(f"Signed in as {bundle.user.name}")
            if self._cache is not None:
                self._cache.invalidate_user_specific()
        self._start_status_checking()

    def _start_status_checking(self) -> None:
        if self._status_task is not None and not self._status_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, user status checking not started")
            return
        logger.debug(f"Starting user status checks every {self.settings.user_status_interval}s")
        self._status_task = loop.create_task(self._status_loop())

    def _stop_status_checking(self) -> None:
        task = self._status_task
        self._status_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            logger.debug("Stopping user status checks")
            task.cancel()

    async def _status_loop(self) -> None:
        me = asyncio.current_task()
        while self._status_task is me:
            try:
                await self.refresh_user_status()
            except Exception:
                logger.error("User status check raised", exc_info=True)
            if self._status_task is not me:
                break
            await asyncio.sleep(self.settings.user_status_interval)
