"""Debounced server health probing and recovery polling.

Under an outage every in-flight request fails at once and each one reports
the failure. ``probe_now()`` coalesces those reports into a single delayed
probe; once the server is considered down, recovery polling probes on a fixed
interval until the server answers again.

The monitor is independent from the circuit breaker: probes bypass it, so an
OPEN circuit never holds back recovery polling and probe failures never count
towards tripping it.
"""

import asyncio
import logging
import time
from collections.abc import Callable

from pydantic import ValidationError

from marquee import endpoints
from marquee.errors import ApiError, NetworkError, ServerError
from marquee.resilience.decorators import with_retry
from marquee.resilience.http_client import HttpResilienceClient
from marquee.schemas import ServerStatusResponse
from marquee.types import ServerHealth, ServerStatusSummary

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Server is currently unavailable. Please try again later."
UNKNOWN_STATUS_MESSAGE = "Unable to determine server status"

HealthListener = Callable[[ServerHealth], None]


def summarize_status(response: ServerStatusResponse) -> ServerStatusSummary:
    """Reduce a system-status payload to a summary.

    The server answered, so it is up; components at warning or error level
    are reported through an advisory message.
    """
    issues = [s for s in response.servers if s.level in ("error", "warning")]
    message: str | None = None

    if issues:
        error_count = sum(1 for s in issues if s.level == "error")
        warning_count = len(issues) - error_count
        if error_count and warning_count:
            message = f"{error_count} server(s) down, {warning_count} server(s) with warnings"
        elif error_count:
            message = f"{error_count} server(s) experiencing issues"
        else:
            message = f"{warning_count} server(s) with warnings"

    return ServerStatusSummary(
        is_down=False,
        has_server_issues=bool(issues),
        overall_level=response.overall.level,
        message=message,
        server_issues=issues,
    )


class ServerHealthMonitor:
    """Owns the process-wide ServerHealth value.

    Timing:
        debounce_window: Minimum spacing between completed probes
        settle_delay: Delay before a scheduled probe fires
        recovery_interval: Polling interval while the server is down
        probe_attempts / probe_retry_delay: Retries inside one probe
        probe_timeout: Read timeout of each probe request
    """

    def __init__(
        self,
        client: HttpResilienceClient,
        debounce_window: float = 5.0,
        settle_delay: float = 1.0,
        recovery_interval: float = 10.0,
        probe_attempts: int = 3,
        probe_retry_delay: float = 2.0,
        probe_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self._client = client
        self.debounce_window = debounce_window
        self.settle_delay = settle_delay
        self.recovery_interval = recovery_interval
        self.probe_timeout = probe_timeout
        self._clock = clock

        self._health = ServerHealth()
        self._last_summary: ServerStatusSummary | None = None
        self._listeners: list[HealthListener] = []
        self._last_probe_completed: float | None = None
        self._pending_probe: asyncio.Task | None = None
        self._recovery_task: asyncio.Task | None = None
        self._probes_in_flight = 0
        self._closed = False

        self._fetch_status = with_retry(
            max_attempts=probe_attempts,
            delay=probe_retry_delay,
            exceptions=(NetworkError, ServerError),
            operation_name="Server status check",
        )(self._fetch_status_once)

    # Current value

    @property
    def health(self) -> ServerHealth:
        return self._health

    @property
    def is_down(self) -> bool:
        return self._health.is_down

    @property
    def message(self) -> str | None:
        return self._health.message

    @property
    def last_summary(self) -> ServerStatusSummary | None:
        """Summary of the last status payload the server answered with."""
        return self._last_summary

    @property
    def is_recovery_polling(self) -> bool:
        return self._recovery_task is not None and not self._recovery_task.done()

    def subscribe(self, listener: HealthListener) -> Callable[[], None]:
        """Register a listener called on every health change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Probing

    def probe_now(self) -> None:
        """Request a probe; never blocks and never raises.

        Calls made while a probe is scheduled or running are coalesced into
        it. Otherwise a probe fires after the settle delay, pushed back so it
        lands no sooner than ``debounce_window`` after the last completed one.
        """
        if self._closed:
            return
        if self._probes_in_flight or (self._pending_probe is not None and not self._pending_probe.done()):
            logger.debug("Server status check already scheduled, coalescing")
            return

        delay = self.settle_delay
        if self._last_probe_completed is not None:
            remaining = self._last_probe_completed + self.debounce_window - self._clock()
            delay = max(delay, remaining)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("probe_now() called without a running event loop, ignoring")
            return

        logger.debug(f"Scheduling server status check in {delay:.2f}s")
        self._pending_probe = loop.create_task(self._delayed_probe(delay))

    async def _delayed_probe(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self.check()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Debounced server status check failed", exc_info=True)
        finally:
            if self._pending_probe is asyncio.current_task():
                self._pending_probe = None

    async def check(self) -> ServerHealth:
        """Probe the server immediately and publish the result."""
        self._probes_in_flight += 1
        try:
            health = await self._probe()
        finally:
            self._probes_in_flight -= 1
            self._last_probe_completed = self._clock()

        if self._closed:
            return health

        self._set_health(health)
        if health.is_down:
            self.start_recovery_polling()
        else:
            self.stop_recovery_polling()
        return health

    async def _probe(self) -> ServerHealth:
        if not self._client.base_url:
            logger.debug("Cannot check server status: no base URL set")
            return self._health

        try:
            summary = await self._fetch_status()
        except (NetworkError, ServerError) as e:
            logger.warning(f"Server marked as down after all status checks failed: {e}")
            return ServerHealth(is_down=True, message=UNAVAILABLE_MESSAGE)
        except ApiError as e:
            # Any 4xx means the server itself answered
            logger.info(f"Server status endpoint answered {e.status}; server is reachable")
            return ServerHealth(is_down=False, message=None)

        if summary is None:
            return ServerHealth(is_down=True, message=UNKNOWN_STATUS_MESSAGE)

        self._last_summary = summary

        if summary.has_server_issues:
            logger.info(f"Server issues detected: {summary.message}")
        else:
            logger.debug("All systems operational")
        return ServerHealth(is_down=summary.is_down, message=summary.message)

    async def _fetch_status_once(self) -> ServerStatusSummary | None:
        data = await self._client.get(
            endpoints.SYSTEM_STATUS,
            max_retries=0,
            timeout=self.probe_timeout,
            bypass_breaker=True
        )
        try:
            return summarize_status(ServerStatusResponse.model_validate(data))
        except ValidationError as e:
            logger.warning(f"Unexpected system status payload: {e}")
            return None

    # Recovery polling

    def start_recovery_polling(self) -> None:
        """Poll on ``recovery_interval`` until a probe reports healthy."""
        if self._closed or self.is_recovery_polling:
            return
        logger.info("Starting server recovery checking")
        self._recovery_task = asyncio.get_running_loop().create_task(self._recovery_loop())

    def stop_recovery_polling(self) -> None:
        task = self._recovery_task
        self._recovery_task = None
        if task is None:
            return
        logger.info("Stopping server recovery checking")
        if task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _recovery_loop(self) -> None:
        me = asyncio.current_task()
        while self._recovery_task is me:
            await asyncio.sleep(self.recovery_interval)
            if self._recovery_task is not me:
                break
            logger.debug("Checking if server has recovered")
            try:
                await self.check()
            except Exception:
                logger.error("Server recovery check failed", exc_info=True)

    # Lifecycle

    def reset(self) -> None:
        """Forget the current status (used on sign-out)."""
        self.stop_recovery_polling()
        self._cancel_pending_probe()
        self._set_health(ServerHealth())

    async def aclose(self) -> None:
        self._closed = True
        tasks = [t for t in (self._pending_probe, self._recovery_task) if t is not None]
        self.stop_recovery_polling()
        self._cancel_pending_probe()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Health task ended with error during close", exc_info=True)

    def _cancel_pending_probe(self) -> None:
        task = self._pending_probe
        self._pending_probe = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _set_health(self, health: ServerHealth) -> None:
        if health == self._health:
            return
        self._health = health
        logger.info(f"Server status changed: down={health.is_down}, message={health.message!r}")
        for listener in list(self._listeners):
            try:
                listener(health)
            except Exception:
                logger.error("Health listener failed", exc_info=True)
