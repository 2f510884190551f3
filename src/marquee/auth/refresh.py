"""Single-flight access token renewal.

Several requests can hit a 401 at the same moment. Only the first one starts
a refresh round trip; everyone else awaits the same task and observes the
same outcome.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from marquee import endpoints
from marquee.errors import ApiError, CircuitOpenError
from marquee.resilience.http_client import SESSION_HEADER, HttpResilienceClient
from marquee.schemas import TokenRefreshResponse
from marquee.session.store import SessionStore

logger = logging.getLogger(__name__)

DEFINITIVE_REJECTION_STATUSES = (401, 403)


class TokenRefreshManager:
    """Renews the access token of the current CredentialBundle.

    ``refresh()`` returns True once a new token is installed in the
    SessionStore and False when renewal is impossible. In the False case the
    bundle has been cleared (implicit sign-out), except when the bundle was
    already replaced or cleared by someone else while the refresh ran.
    """

    def __init__(
        self,
        client: HttpResilienceClient,
        store: SessionStore,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] | None = None
    ):
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")

        self._client = client
        self._store = store
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep or asyncio.sleep
        self._inflight: asyncio.Task | None = None

    @property
    def in_progress(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def refresh(self) -> bool:
        """Refresh the token, joining an in-flight refresh if there is one."""
        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        else:
            logger.debug("Token refresh already in progress, joining it")

        # Shield so one cancelled waiter does not cancel the shared refresh
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh(self) -> bool:
        bundle = self._store.current
        if bundle is None:
            logger.debug("No credential bundle, nothing to refresh")
            return False

        client_id = self._store.get_or_create_client_id()

        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"Token refresh attempt {attempt}/{self.max_attempts}")
            try:
                data = await self._client.post(
                    endpoints.REFRESH_TOKEN,
                    {"clientId": client_id, "sessionId": bundle.session_id},
                    headers={SESSION_HEADER: bundle.session_id},
                    skip_auth=True,
                    allow_refresh=False,
                    max_retries=0
                )
            except ApiError as e:
                if e.status in DEFINITIVE_REJECTION_STATUSES:
                    logger.warning(
                        f"Server rejected token refresh ({e.status}), signing out"
                    )
                    return self._give_up(bundle.session_id)
                logger.warning(f"Token refresh attempt {attempt} failed: {e}")
            except CircuitOpenError as e:
                logger.warning(f"Token refresh attempt {attempt} blocked: {e}")
            else:
                return self._apply(bundle.session_id, data)

            if attempt < self.max_attempts:
                await self._sleep(self.retry_delay)

        logger.error(
            f"Token refresh failed after {self.max_attempts} attempts, signing out"
        )
        return self._give_up(bundle.session_id)

    def _apply(self, session_id: str, data) -> bool:
        try:
            response = TokenRefreshResponse.model_validate(data or {})
        except ValidationError as e:
            logger.error(f"Malformed token refresh response: {e}")
            return self._give_up(session_id)

        if not response.success or not response.mobile_session_token:
            logger.warning(
                f"Token refresh response indicated failure: {response.error or 'no error provided'}"
            )
            return self._give_up(session_id)

        current = self._store.current
        if current is None or current.session_id != session_id:
            logger.info("Credentials changed during token refresh, discarding result")
            return False

        self._store.save(current.with_token(response.mobile_session_token, response.user))
        logger.info("Token refresh successful")
        return True

    def _give_up(self, session_id: str) -> bool:
        current = self._store.current
        if current is not None and current.session_id == session_id:
            self._store.clear()
        return False
