"""HTTP client for the media server with credential attachment and resilience.

Every outbound request goes through :class:`HttpResilienceClient`, which:

1. Rejects the call up front when the endpoint's circuit is OPEN (health
   probes pass ``bypass_breaker`` and skip the breaker entirely)
2. Attaches the credentials that are current at send time
3. Retries network failures and 5xx answers with exponential backoff
4. Triggers a single token refresh on the first 401 and replays the call once
5. Reports server failures to a (debounced) health probe callback

Credentials are mirrored in from the SessionStore through
``set_credentials``; the client never reads storage itself.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from marquee.config import Settings
from marquee.errors import (
    ApiError,
    AuthError,
    CircuitOpenError,
    ClientError,
    ConfigurationError,
    NetworkError,
    ServerError,
)
from marquee.resilience.circuit_breaker import CircuitBreaker
from marquee.resilience.retry import RetryPolicy
from marquee.types import CredentialBundle

logger = logging.getLogger(__name__)

SESSION_HEADER = "x-session-id"
SESSION_PARAM = "sessionId"

TokenRefresher = Callable[[], Awaitable[bool]]
ServerFailureCallback = Callable[[], None]


@dataclass
class HttpClientConfig:
    """Configuration for HTTP client resilience features."""

    # Connection settings
    base_url: str | None = None
    headers: dict[str, str] = field(default_factory=lambda: {"Accept": "application/json"})

    # Timeout settings (seconds)
    default_timeout: float = 30.0
    connect_timeout: float = 10.0
    write_timeout: float = 10.0
    pool_timeout: float = 5.0

    # Connection pool limits
    max_connections: int = 20
    max_keepalive_connections: int = 10
    keepalive_expiry: float = 30.0

    # Retry configuration
    max_retries: int = 3
    retry_base_delay: float = 1.0

    # Circuit breaker configuration
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: float = 60.0
    circuit_breaker_reset_window: float = 300.0

    def __post_init__(self):
        """Validate configuration."""
        if self.base_url:
            self.base_url = self.base_url.rstrip("/")

        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay <= 0:
            raise ValueError(f"retry_base_delay must be > 0, got {self.retry_base_delay}")
        if self.max_connections < self.max_keepalive_connections:
            raise ValueError(
                f"max_connections ({self.max_connections}) must be >= "
                f"max_keepalive_connections ({self.max_keepalive_connections})"
            )
        if self.circuit_breaker_threshold <= 0:
            raise ValueError(
                f"circuit_breaker_threshold must be > 0, got {self.circuit_breaker_threshold}"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpClientConfig":
        return cls(
            base_url=settings.server_url,
            default_timeout=settings.request_timeout,
            connect_timeout=settings.connect_timeout,
            max_connections=settings.max_connections,
            max_keepalive_connections=settings.max_keepalive_connections,
            keepalive_expiry=settings.keepalive_expiry,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            circuit_breaker_threshold=settings.circuit_breaker_threshold,
            circuit_breaker_cooldown=settings.circuit_breaker_cooldown,
            circuit_breaker_reset_window=settings.circuit_breaker_reset_window,
        )


class HttpResilienceClient:
    """Async HTTP client with circuit breaker, retry and auth refresh.

    One instance per media server connection. Circuit breaker state is
    tracked per endpoint path.
    """

    def __init__(
        self,
        config: HttpClientConfig,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None
    ):
        """Initialize HTTP client.

        Args:
            config: HttpClientConfig with all resilience settings
            circuit_breaker: Breaker to share (default: built from config)
            retry_policy: Backoff policy (default: built from config)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Awaitable sleep used for backoff (default: asyncio.sleep)
        """
        self.config = config

        timeout_config = httpx.Timeout(
            connect=config.connect_timeout,
            read=config.default_timeout,
            write=config.write_timeout,
            pool=config.pool_timeout
        )

        limits_config = httpx.Limits(
            max_connections=config.max_connections,
            max_keepalive_connections=config.max_keepalive_connections,
            keepalive_expiry=config.keepalive_expiry
        )

        self._client = httpx.AsyncClient(
            timeout=timeout_config,
            limits=limits_config,
            headers=config.headers,
            follow_redirects=True,
            transport=transport
        )

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            threshold=config.circuit_breaker_threshold,
            cooldown=config.circuit_breaker_cooldown,
            reset_window=config.circuit_breaker_reset_window
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay
        )
        self._sleep = sleep or asyncio.sleep

        # Credential mirror of the SessionStore
        self._base_url = config.base_url
        self._access_token: str | None = None
        self._session_id: str | None = None

        self._token_refresher: TokenRefresher | None = None
        self._server_failure_callback: ServerFailureCallback | None = None

        logger.debug(
            f"Initialized HttpResilienceClient: base_url={self._base_url}, "
            f"timeout={config.default_timeout}s, max_retries={config.max_retries}"
        )

    # Configuration

    @property
    def base_url(self) -> str | None:
        return self._base_url

    def set_base_url(self, url: str | None) -> None:
        logger.debug(f"Setting base URL: {url or 'null'}")
        self._base_url = url.rstrip("/") if url else None

    def set_credentials(self, bundle: CredentialBundle | None) -> None:
        """Mirror the current CredentialBundle (None clears the credentials)."""
        if bundle is None:
            logger.debug("Clearing client credentials")
            self._access_token = None
            self._session_id = None
            return

        logger.debug("Applying credentials for session (token: ********)")
        self._base_url = bundle.server_url.rstrip("/")
        self._access_token = bundle.access_token
        self._session_id = bundle.session_id

    @property
    def has_credentials(self) -> bool:
        return bool(self._access_token or self._session_id)

    def set_token_refresher(self, refresher: TokenRefresher | None) -> None:
        """Install the coroutine function called on the first 401 of a request."""
        self._token_refresher = refresher

    def set_server_failure_callback(self, callback: ServerFailureCallback | None) -> None:
        """Install the fire-and-forget hook called on 5xx and network failures."""
        self._server_failure_callback = callback

    # Requests

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        json: Any = None,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        skip_auth: bool = False,
        allow_refresh: bool = True,
        max_retries: int | None = None,
        timeout: float | None = None,
        bypass_breaker: bool = False
    ) -> Any:
        """Issue a request with circuit breaker, retry and refresh handling.

        Args:
            endpoint: API path (e.g. "/api/authenticated/media"), may carry a query
            method: HTTP method
            json: JSON body
            params: Query parameters
            headers: Extra headers; an explicit Authorization header wins
            skip_auth: Do not attach credentials (login endpoints)
            allow_refresh: Refresh the token and replay once on the first 401
            max_retries: Override the policy's retry budget for this call
            timeout: Read timeout override in seconds
            bypass_breaker: Neither consult nor update the circuit breaker and
                do not report failures (health probes)

        Returns:
            Decoded JSON body, text for non-JSON bodies, or None when empty

        Raises:
            CircuitOpenError: Endpoint circuit is OPEN, no request sent
            NetworkError: No response after retries
            ServerError: 5xx after retries
            AuthError: 401 that survived one refresh attempt
            ClientError: Any other 4xx
            ConfigurationError: No base URL configured
        """
        if not self._base_url:
            raise ConfigurationError("API client base URL not set. Call set_base_url first.")

        key = self._endpoint_key(endpoint)
        operation_name = f"{method.upper()} {key}"
        request_id = str(uuid.uuid4())[:8]
        retry_budget = self.retry_policy.max_retries if max_retries is None else max_retries

        attempt = 0
        refreshed = False

        while True:
            # Check circuit breaker before every attempt
            if not bypass_breaker and self.circuit_breaker.is_open(key):
                logger.warning(f"[{request_id}] {operation_name} rejected - circuit breaker OPEN")
                raise CircuitOpenError(key)

            try:
                response = await self._send(
                    method, endpoint, json, params, headers, skip_auth, timeout, request_id
                )
            except httpx.RequestError as e:
                # Includes redirect loops and bodies that fail to decode
                error: ApiError = NetworkError(f"{operation_name} failed: {e!r}")
                if not bypass_breaker:
                    self._record_server_failure(key)
            else:
                status = response.status_code
                data = self._decode_body(response)

                if status >= 500:
                    error = ServerError(status, data, self._error_message(status, data))
                    if not bypass_breaker:
                        self._record_server_failure(key)
                else:
                    # The server answered; the endpoint itself is healthy
                    if not bypass_breaker:
                        self.circuit_breaker.record_success(key)

                    if status == 401:
                        if allow_refresh and not skip_auth and not refreshed and self._token_refresher:
                            refreshed = True
                            logger.info(f"[{request_id}] {operation_name} got 401, attempting token refresh")
                            if await self._refresh_token(request_id):
                                logger.info(f"[{request_id}] Token refreshed, replaying {operation_name}")
                                continue
                            raise AuthError(data, "Token refresh failed")
                        raise AuthError(data, self._error_message(status, data))

                    if status >= 400:
                        raise ClientError(status, data, self._error_message(status, data))

                    if attempt > 0:
                        logger.info(
                            f"[{request_id}] {operation_name} succeeded on retry "
                            f"attempt {attempt + 1}/{retry_budget + 1}"
                        )
                    else:
                        logger.debug(f"[{request_id}] {operation_name} succeeded ({status})")
                    return data

            # A replayed request after a refresh is never retried again
            if refreshed or attempt >= retry_budget or not self.retry_policy.should_retry(error):
                logger.error(
                    f"[{request_id}] {operation_name} failed after "
                    f"{attempt + 1} attempt(s): {error}"
                )
                raise error

            delay = self.retry_policy.delay_for(attempt)
            attempt += 1
            logger.info(
                f"[{request_id}] {operation_name} attempt "
                f"{attempt}/{retry_budget + 1} failed: {error}. "
                f"Retrying in {delay:.2f}s..."
            )
            await self._sleep(delay)

    async def get(self, endpoint: str, **kwargs) -> Any:
        return await self.request(endpoint, "GET", **kwargs)

    async def post(self, endpoint: str, json: Any = None, **kwargs) -> Any:
        return await self.request(endpoint, "POST", json, **kwargs)

    async def put(self, endpoint: str, json: Any = None, **kwargs) -> Any:
        return await self.request(endpoint, "PUT", json, **kwargs)

    async def delete(self, endpoint: str, **kwargs) -> Any:
        return await self.request(endpoint, "DELETE", **kwargs)

    # Helper methods

    async def _send(
        self,
        method: str,
        endpoint: str,
        json: Any,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
        skip_auth: bool,
        timeout: float | None,
        request_id: str
    ) -> httpx.Response:
        """Attach the credentials current right now and send one request."""
        request_headers = dict(headers or {})
        request_params = dict(params or {})

        if not skip_auth:
            if self._session_id:
                request_headers[SESSION_HEADER] = self._session_id
                # Some server routes only read the session from the query string
                if SESSION_PARAM not in request_params and f"{SESSION_PARAM}=" not in endpoint:
                    request_params[SESSION_PARAM] = self._session_id
            if self._access_token and "Authorization" not in request_headers:
                request_headers["Authorization"] = f"Bearer {self._access_token}"

        logger.debug(
            f"[{request_id}] {method.upper()} {endpoint} "
            f"(auth={'yes' if 'Authorization' in request_headers else 'no'})"
        )

        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = self._build_timeout(timeout)

        return await self._client.request(
            method.upper(),
            f"{self._base_url}{endpoint}",
            json=json,
            params=request_params or None,
            headers=request_headers,
            **kwargs
        )

    async def _refresh_token(self, request_id: str) -> bool:
        try:
            return bool(await self._token_refresher())
        except Exception:
            logger.error(f"[{request_id}] Token refresh raised", exc_info=True)
            return False

    def _record_server_failure(self, key: str) -> None:
        self.circuit_breaker.record_failure(key)
        if self._server_failure_callback is None:
            return
        try:
            self._server_failure_callback()
        except Exception:
            logger.warning("Server failure callback raised", exc_info=True)

    def _build_timeout(self, timeout: float) -> httpx.Timeout:
        """Build httpx.Timeout from a per-request override."""
        return httpx.Timeout(
            connect=min(self.config.connect_timeout, timeout),
            read=timeout,
            write=self.config.write_timeout,
            pool=self.config.pool_timeout
        )

    @staticmethod
    def _endpoint_key(endpoint: str) -> str:
        return endpoint.split("?", 1)[0]

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_message(status: int, data: Any) -> str:
        if isinstance(data, dict):
            message = data.get("message") or data.get("error")
            if isinstance(message, str) and message:
                return message
        return f"API Error: {status}"

    async def aclose(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()
        logger.debug("Closed HTTP client")

    def get_stats(self) -> dict:
        """Get current client statistics.

        Returns:
            Dict with base URL, retry settings and circuit breaker state
        """
        return {
            "base_url": self._base_url,
            "authenticated": self.has_credentials,
            "default_timeout": self.config.default_timeout,
            "max_retries": self.retry_policy.max_retries,
            "retry_base_delay": self.retry_policy.base_delay,
            "circuit_breaker_threshold": self.circuit_breaker.threshold,
            "circuits": self.circuit_breaker.get_stats(),
        }
