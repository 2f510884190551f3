"""Unit tests for HttpResilienceClient and HttpClientConfig.

Test coverage includes:
- HttpClientConfig validation
- Credential attachment at send time
- Retry with exponential backoff on network errors and 5xx
- Circuit breaker integration
- Single token refresh and replay on 401
- Server failure callback
- Redirect loops and decode failures mapped to NetworkError
- Breaker bypass for health probes
"""

import httpx
import pytest

from marquee.errors import (
    AuthError,
    CircuitOpenError,
    ClientError,
    ConfigurationError,
    NetworkError,
    ServerError,
)
from marquee.resilience import (
    CircuitBreaker,
    CircuitState,
    HttpClientConfig,
    HttpResilienceClient,
)

SERVER_URL = "https://cinema.example.com"
MEDIA = "/api/authenticated/media"


@pytest.fixture
def make_client(mock_server, fake_clock, no_sleep):
    """Build a client talking to the mock server with zero-delay backoff"""
    def _make(**overrides):
        config = HttpClientConfig(base_url=SERVER_URL, **overrides)
        breaker = CircuitBreaker(
            threshold=config.circuit_breaker_threshold,
            cooldown=config.circuit_breaker_cooldown,
            reset_window=config.circuit_breaker_reset_window,
            clock=fake_clock
        )
        return HttpResilienceClient(
            config,
            circuit_breaker=breaker,
            transport=mock_server.transport,
            sleep=no_sleep
        )
    return _make


@pytest.fixture
def client(make_client):
    return make_client()


def unavailable():
    return httpx.Response(503, json={"message": "Service Unavailable"})


# ============================================================================
# HttpClientConfig
# ============================================================================

class TestHttpClientConfig:
    """Test HttpClientConfig dataclass validation."""

    def test_base_url_trailing_slash_removed(self):
        config = HttpClientConfig(base_url="https://cinema.example.com/")
        assert config.base_url == "https://cinema.example.com"

    def test_invalid_negative_max_retries(self):
        with pytest.raises(ValueError, match="max_retries must be >= 0"):
            HttpClientConfig(max_retries=-1)

    def test_invalid_connection_limits(self):
        with pytest.raises(ValueError, match="max_connections"):
            HttpClientConfig(max_connections=5, max_keepalive_connections=10)

    def test_from_settings(self):
        from marquee.config import Settings

        settings = Settings(server_url="https://media.example.org", max_retries=1)
        config = HttpClientConfig.from_settings(settings)

        assert config.base_url == "https://media.example.org"
        assert config.max_retries == 1
        assert config.circuit_breaker_threshold == 5


# ============================================================================
# Credentials
# ============================================================================

class TestCredentialAttachment:
    """Credentials are read at send time"""

    @pytest.mark.asyncio
    async def test_attaches_session_and_token(self, client, mock_server, bundle):
        mock_server.on("GET", MEDIA, httpx.Response(200, json={"items": []}))
        client.set_credentials(bundle)

        result = await client.get(MEDIA)

        assert result == {"items": []}
        request = mock_server.requests[0]
        assert request.headers["x-session-id"] == "session-1"
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.url.params["sessionId"] == "session-1"

    @pytest.mark.asyncio
    async def test_keeps_caller_session_param(self, client, mock_server, bundle):
        mock_server.on("GET", MEDIA, httpx.Response(200, json={}))
        client.set_credentials(bundle)

        await client.get(MEDIA, params={"sessionId": "explicit"})

        assert mock_server.requests[0].url.params["sessionId"] == "explicit"

    @pytest.mark.asyncio
    async def test_skip_auth_sends_no_credentials(self, client, mock_server, bundle):
        mock_server.on("POST", "/api/auth/register-session", httpx.Response(200, json={}))
        client.set_credentials(bundle)

        await client.post("/api/auth/register-session", {"clientId": "c"}, skip_auth=True)

        request = mock_server.requests[0]
        assert "Authorization" not in request.headers
        assert "x-session-id" not in request.headers
        assert "sessionId" not in request.url.params

    @pytest.mark.asyncio
    async def test_cleared_credentials(self, client, mock_server, bundle):
        mock_server.on("GET", MEDIA, httpx.Response(200, json={}))
        client.set_credentials(bundle)
        client.set_credentials(None)

        await client.get(MEDIA)

        assert "Authorization" not in mock_server.requests[0].headers
        assert client.has_credentials is False
        assert client.base_url == SERVER_URL

    @pytest.mark.asyncio
    async def test_no_base_url(self, mock_server):
        client = HttpResilienceClient(HttpClientConfig(), transport=mock_server.transport)
        with pytest.raises(ConfigurationError):
            await client.get(MEDIA)
        assert mock_server.requests == []


# ============================================================================
# Responses and retries
# ============================================================================

class TestResponses:
    """Body decoding and 4xx handling"""

    @pytest.mark.asyncio
    async def test_empty_body_returns_none(self, client, mock_server):
        mock_server.on("DELETE", MEDIA, httpx.Response(204))
        assert await client.delete(MEDIA) is None

    @pytest.mark.asyncio
    async def test_text_body(self, client, mock_server):
        mock_server.on("GET", MEDIA, httpx.Response(200, text="pong"))
        assert await client.get(MEDIA) == "pong"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, client, mock_server):
        mock_server.on("GET", MEDIA, httpx.Response(404, json={"message": "No such title"}))

        with pytest.raises(ClientError) as exc_info:
            await client.get(MEDIA)

        assert exc_info.value.status == 404
        assert str(exc_info.value) == "No such title"
        assert len(mock_server.requests) == 1


class TestRetry:
    """Retry logic with exponential backoff"""

    @pytest.mark.asyncio
    async def test_server_error_retried_with_backoff(self, client, mock_server, sleeps):
        mock_server.on("GET", MEDIA, unavailable())

        with pytest.raises(ServerError) as exc_info:
            await client.get(MEDIA)

        assert exc_info.value.status == 503
        assert len(mock_server.requests) == 4
        assert sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_recovers_after_network_error(self, client, mock_server):
        mock_server.on(
            "GET", MEDIA,
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"ok": True}),
        )

        assert await client.get(MEDIA) == {"ok": True}
        assert len(mock_server.requests) == 2

    @pytest.mark.asyncio
    async def test_network_error_after_retries(self, client, mock_server):
        mock_server.on("GET", MEDIA, httpx.ReadTimeout("timed out"))

        with pytest.raises(NetworkError) as exc_info:
            await client.get(MEDIA, max_retries=1)

        assert exc_info.value.status is None
        assert len(mock_server.requests) == 2

    @pytest.mark.asyncio
    async def test_server_failure_callback(self, client, mock_server):
        reports = []
        client.set_server_failure_callback(lambda: reports.append(1))
        mock_server.on("GET", MEDIA, unavailable(), httpx.Response(404))

        with pytest.raises(ClientError):
            await client.get(MEDIA)

        assert len(reports) == 1


# ============================================================================
# Circuit breaker integration
# ============================================================================

class TestCircuitBreakerIntegration:
    """Breaker gating inside request()"""

    @pytest.mark.asyncio
    async def test_open_circuit_sends_nothing(self, client, mock_server):
        """Five 503s open the circuit; the sixth call never reaches the server"""
        mock_server.on("GET", MEDIA, unavailable())

        for _ in range(5):
            with pytest.raises(ServerError):
                await client.get(MEDIA, max_retries=0)

        with pytest.raises(CircuitOpenError):
            await client.get(MEDIA, max_retries=0)

        assert len(mock_server.requests) == 5
        assert client.circuit_breaker.get_state(MEDIA) == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_retries_stop_when_circuit_opens(self, client, mock_server):
        mock_server.on("GET", MEDIA, unavailable())

        with pytest.raises(CircuitOpenError):
            await client.get(MEDIA, max_retries=10)

        assert len(mock_server.requests) == 5

    @pytest.mark.asyncio
    async def test_query_string_shares_circuit(self, client, mock_server):
        mock_server.on("GET", MEDIA, unavailable())

        for page in range(5):
            with pytest.raises(ServerError):
                await client.get(f"{MEDIA}?page={page}", max_retries=0)

        with pytest.raises(CircuitOpenError):
            await client.get(MEDIA, max_retries=0)

    @pytest.mark.asyncio
    async def test_client_error_counts_as_success(self, client, mock_server):
        mock_server.on(
            "GET", MEDIA,
            unavailable(), unavailable(), unavailable(), unavailable(),
            httpx.Response(404),
            unavailable(),
        )

        for _ in range(4):
            with pytest.raises(ServerError):
                await client.get(MEDIA, max_retries=0)
        with pytest.raises(ClientError):
            await client.get(MEDIA, max_retries=0)
        with pytest.raises(ServerError):
            await client.get(MEDIA, max_retries=0)

        assert client.circuit_breaker.get_state(MEDIA) == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, client, mock_server, fake_clock):
        mock_server.on("GET", MEDIA, *([unavailable()] * 5), httpx.Response(200, json={}))

        for _ in range(5):
            with pytest.raises(ServerError):
                await client.get(MEDIA, max_retries=0)

        fake_clock.advance(60)
        assert await client.get(MEDIA, max_retries=0) == {}
        assert client.circuit_breaker.get_stats() == {}

    @pytest.mark.asyncio
    async def test_bypass_ignores_open_circuit(self, client, mock_server):
        mock_server.on("GET", MEDIA, unavailable())
        reports = []
        client.set_server_failure_callback(lambda: reports.append(1))
        for _ in range(5):
            with pytest.raises(ServerError):
                await client.get(MEDIA, max_retries=0)
        mock_server.on("GET", MEDIA, httpx.Response(200, json={"ok": True}))

        assert await client.get(MEDIA, max_retries=0, bypass_breaker=True) == {"ok": True}

        # Neither the success nor the request touched the breaker
        assert client.circuit_breaker.get_state(MEDIA) == CircuitState.OPEN
        assert len(mock_server.requests) == 6
        assert len(reports) == 5

    @pytest.mark.asyncio
    async def test_bypass_failures_are_not_recorded(self, client, mock_server):
        reports = []
        client.set_server_failure_callback(lambda: reports.append(1))
        mock_server.on("GET", MEDIA, unavailable())

        for _ in range(6):
            with pytest.raises(ServerError):
                await client.get(MEDIA, max_retries=0, bypass_breaker=True)

        assert client.circuit_breaker.get_stats() == {}
        assert reports == []


# ============================================================================
# Failures below the HTTP layer
# ============================================================================

class TestRequestErrors:
    """Every httpx request failure surfaces as NetworkError"""

    @pytest.mark.asyncio
    async def test_redirect_loop(self, client, mock_server):
        mock_server.on(
            "GET", MEDIA,
            httpx.Response(302, headers={"Location": f"{SERVER_URL}{MEDIA}"})
        )

        with pytest.raises(NetworkError, match="TooManyRedirects"):
            await client.get(MEDIA, max_retries=0)

        assert client.circuit_breaker.get_stats()[MEDIA]["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_decoding_error_is_retried(self, client, mock_server, sleeps):
        mock_server.on(
            "GET", MEDIA,
            httpx.DecodingError("bad gzip"),
            httpx.Response(200, json={"items": []}),
        )

        assert await client.get(MEDIA) == {"items": []}
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_redirect_loop_resolves_half_open_trial(self, client, mock_server, fake_clock):
        mock_server.on("GET", MEDIA, unavailable())
        for _ in range(5):
            with pytest.raises(ServerError):
                await client.get(MEDIA, max_retries=0)
        mock_server.on(
            "GET", MEDIA,
            httpx.Response(302, headers={"Location": f"{SERVER_URL}{MEDIA}"})
        )
        fake_clock.advance(60)

        with pytest.raises(NetworkError):
            await client.get(MEDIA, max_retries=0)

        assert client.circuit_breaker.get_state(MEDIA) == CircuitState.OPEN


# ============================================================================
# Token refresh on 401
# ============================================================================

class TestTokenRefresh:
    """First 401 triggers one refresh and one replay"""

    @pytest.mark.asyncio
    async def test_refresh_and_replay(self, client, mock_server, bundle):
        """Exactly two requests: the 401 and the replay with the new token"""
        mock_server.on(
            "GET", MEDIA,
            httpx.Response(401, json={"error": "expired"}),
            httpx.Response(200, json={"items": [1]}),
        )
        client.set_credentials(bundle)
        refreshes = []

        async def refresher():
            refreshes.append(1)
            client.set_credentials(bundle.with_token("token-2"))
            return True

        client.set_token_refresher(refresher)

        assert await client.get(MEDIA) == {"items": [1]}
        assert len(refreshes) == 1
        assert len(mock_server.requests) == 2
        assert mock_server.requests[0].headers["Authorization"] == "Bearer token-1"
        assert mock_server.requests[1].headers["Authorization"] == "Bearer token-2"

    @pytest.mark.asyncio
    async def test_second_401_raises(self, client, mock_server, bundle):
        mock_server.on("GET", MEDIA, httpx.Response(401))
        client.set_credentials(bundle)
        refreshes = []

        async def refresher():
            refreshes.append(1)
            return True

        client.set_token_refresher(refresher)

        with pytest.raises(AuthError):
            await client.get(MEDIA)

        assert len(refreshes) == 1
        assert len(mock_server.requests) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_raises(self, client, mock_server, bundle):
        mock_server.on("GET", MEDIA, httpx.Response(401))
        client.set_credentials(bundle)

        async def refresher():
            return False

        client.set_token_refresher(refresher)

        with pytest.raises(AuthError, match="Token refresh failed"):
            await client.get(MEDIA)
        assert len(mock_server.requests) == 1

    @pytest.mark.asyncio
    async def test_refresh_raising_is_a_failed_refresh(self, client, mock_server, bundle):
        mock_server.on("GET", MEDIA, httpx.Response(401))
        client.set_credentials(bundle)

        async def refresher():
            raise RuntimeError("boom")

        client.set_token_refresher(refresher)

        with pytest.raises(AuthError):
            await client.get(MEDIA)

    @pytest.mark.asyncio
    async def test_allow_refresh_false(self, client, mock_server, bundle):
        mock_server.on("GET", MEDIA, httpx.Response(401))
        client.set_credentials(bundle)
        refreshes = []

        async def refresher():
            refreshes.append(1)
            return True

        client.set_token_refresher(refresher)

        with pytest.raises(AuthError):
            await client.get(MEDIA, allow_refresh=False)
        assert refreshes == []

    @pytest.mark.asyncio
    async def test_replay_is_not_retried(self, client, mock_server, bundle, sleeps):
        mock_server.on("GET", MEDIA, httpx.Response(401), unavailable())
        client.set_credentials(bundle)

        async def refresher():
            return True

        client.set_token_refresher(refresher)

        with pytest.raises(ServerError):
            await client.get(MEDIA)

        assert len(mock_server.requests) == 2
        assert sleeps == []


class TestStats:
    def test_get_stats(self, client, bundle):
        client.set_credentials(bundle)
        stats = client.get_stats()

        assert stats["base_url"] == SERVER_URL
        assert stats["authenticated"] is True
        assert stats["max_retries"] == 3
        assert stats["circuits"] == {}
