"""Login flows: provider redirect (browser handoff) and QR pairing.

Both flows share one state machine::

    IDLE -> REGISTERING -> AWAITING_COMPLETION -> COMPLETED
                        \\-> FAILED          \\-> EXPIRED | TIMED_OUT | CANCELLED

Registering creates a server-side session bound to the client id. While
awaiting completion the orchestrator polls the matching check endpoint until
the server reports ``complete`` (credentials are saved) or ``expired``. A
wall-clock timeout armed when registration starts ends the flow even if the
server never reports expiry.

Only one flow is active per orchestrator; starting another one force-cancels
the active flow first.
"""

import asyncio
import logging
import platform
import webbrowser
from collections.abc import Callable
from typing import Any
from urllib.parse import quote, urlencode, urlparse

from pydantic import ValidationError

from marquee import endpoints
from marquee.errors import (
    AuthFlowCancelledError,
    ConfigurationError,
    MarqueeError,
    SessionExpiredError,
)
from marquee.resilience.http_client import HttpResilienceClient
from marquee.schemas import (
    DeviceInfo,
    QRSessionRequest,
    QRSessionResponse,
    RegisterSessionResponse,
    TokenCheckResponse,
)
from marquee.session.store import SessionStore
from marquee.types import (
    CredentialBundle,
    FlowKind,
    FlowState,
    LoginSession,
    PairingSession,
)

logger = logging.getLogger(__name__)

HandoffOpener = Callable[[str], Any]


def open_in_browser(url: str) -> None:
    """Default handoff: open the system browser, fire-and-forget."""
    webbrowser.open(url, new=2)


def get_device_info() -> DeviceInfo:
    """Describe this device for the QR pairing screen on the server."""
    return DeviceInfo(
        brand=platform.system() or None,
        model=platform.machine() or None,
        platform=(platform.system() or "unknown").lower(),
    )


class AuthFlow:
    """Handle for one login or pairing attempt.

    ``await flow.wait()`` returns the installed CredentialBundle or raises
    SessionExpiredError / AuthFlowCancelledError / the registration error.
    """

    def __init__(self, kind: FlowKind):
        self.kind = kind
        self.state = FlowState.IDLE
        self.session: LoginSession | PairingSession | None = None
        self._result: asyncio.Future = asyncio.get_running_loop().create_future()
        self._result.add_done_callback(_consume_exception)
        self._poll_task: asyncio.Task | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None

    @property
    def session_id(self) -> str | None:
        if isinstance(self.session, LoginSession):
            return self.session.session_id
        if isinstance(self.session, PairingSession):
            return self.session.qr_session_id
        return None

    @property
    def done(self) -> bool:
        return self.state.is_terminal

    async def wait(self) -> CredentialBundle:
        return await asyncio.shield(self._result)

    def __repr__(self) -> str:
        return f"AuthFlow(kind={self.kind.value}, state={self.state.value}, session={self.session_id})"


def _consume_exception(future: asyncio.Future) -> None:
    # Nobody is obliged to await a flow; avoid "exception never retrieved"
    if not future.cancelled():
        future.exception()


class AuthOrchestrator:
    """Owns the login state machines and is the only starter of login sessions."""

    def __init__(
        self,
        client: HttpResilienceClient,
        store: SessionStore,
        handoff: HandoffOpener | None = None,
        poll_interval: float = 2.0,
        timeout: float = 300.0,
        device_type: str = "desktop"
    ):
        self._client = client
        self._store = store
        self._handoff = handoff or open_in_browser
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.device_type = device_type
        self._active: AuthFlow | None = None

    @property
    def active_flow(self) -> AuthFlow | None:
        return self._active

    @property
    def state(self) -> FlowState:
        return self._active.state if self._active else FlowState.IDLE

    @property
    def is_authenticating(self) -> bool:
        return self._active is not None

    # Provider redirect flow

    async def sign_in_with_provider(self, provider_id: str) -> AuthFlow:
        """Register a login session, open the browser handoff, start polling."""
        server = self._require_server()
        flow = self._begin(FlowKind.PROVIDER)
        logger.info(f"Starting auth flow with provider: {provider_id}")

        try:
            client_id = self._store.get_or_create_client_id()
            data = await self._client.post(
                endpoints.REGISTER_SESSION,
                {"clientId": client_id},
                skip_auth=True,
                allow_refresh=False
            )
            registered = RegisterSessionResponse.model_validate(data)
        except (MarqueeError, ValidationError) as e:
            self._fail(flow, e)
            raise

        self._ensure_live(flow)
        flow.session = LoginSession(
            session_id=registered.session_id,
            expires_at=registered.expires_at,
        )
        logger.info(f"Registered auth session ID: {registered.session_id}")

        query = urlencode({"sessionId": registered.session_id})
        auth_url = f"{server}{endpoints.native_signin(quote(provider_id, safe=''))}?{query}"
        try:
            logger.info(f"Opening browser handoff: {auth_url}")
            self._handoff(auth_url)
        except Exception as e:
            logger.error("Failed to open browser handoff", exc_info=True)
            self._fail(flow, e)
            raise

        self._start_polling(flow)
        return flow

    # QR pairing flow

    async def sign_in_with_qr_code(self) -> PairingSession:
        """Register a pairing session; the UI renders it, then calls poll_qr_authentication."""
        server = self._require_server()
        flow = self._begin(FlowKind.QR)
        logger.info("Starting QR code authentication flow")

        try:
            request = QRSessionRequest(
                client_id=self._store.get_or_create_client_id(),
                device_type=self.device_type,
                host=urlparse(server).netloc or server,
                device_info=get_device_info(),
            )
            data = await self._client.post(
                endpoints.REGISTER_QR_SESSION,
                request.model_dump(by_alias=True, exclude_none=True),
                skip_auth=True,
                allow_refresh=False
            )
            registered = QRSessionResponse.model_validate(data)
        except (MarqueeError, ValidationError) as e:
            self._fail(flow, e)
            raise

        self._ensure_live(flow)
        pairing = PairingSession(
            qr_session_id=registered.qr_session_id,
            expires_at=registered.expires_at,
        )
        flow.session = pairing
        flow.state = FlowState.AWAITING_COMPLETION
        logger.info(f"Registered QR session ID: {pairing.qr_session_id}")
        return pairing

    async def poll_qr_authentication(self, qr_session_id: str) -> AuthFlow:
        """Start polling for pairing completion.

        Polling the active pairing session reuses its flow (and its timeout);
        any other id starts a fresh flow.
        """
        self._require_server()
        flow = self._active
        if (
            flow is None
            or flow.kind != FlowKind.QR
            or flow.session_id != qr_session_id
            or flow.state != FlowState.AWAITING_COMPLETION
        ):
            flow = self._begin(FlowKind.QR)
            flow.session = PairingSession(qr_session_id=qr_session_id, expires_at=0)

        if flow._poll_task is None:
            logger.info(f"Starting QR authentication polling for session: {qr_session_id}")
            self._start_polling(flow)
        return flow

    # Cancellation

    def cancel(self) -> bool:
        """Cancel the active flow without touching existing credentials."""
        flow = self._active
        if flow is None or flow.done:
            return False
        logger.info(f"Cancelling {flow.kind.value} authentication and stopping polling")
        self._finish(
            flow,
            FlowState.CANCELLED,
            error=AuthFlowCancelledError("Authentication cancelled"),
        )
        return True

    async def aclose(self) -> None:
        flow = self._active
        task = flow._poll_task if flow else None
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # State machine internals

    def _require_server(self) -> str:
        server = self._client.base_url
        if not server:
            raise ConfigurationError("Server not set. Call set_server first.")
        return server

    def _begin(self, kind: FlowKind) -> AuthFlow:
        if self._active is not None:
            logger.info("Stopping existing authentication flow before starting a new one")
            self.cancel()

        flow = AuthFlow(kind)
        flow.state = FlowState.REGISTERING
        flow._timeout_handle = asyncio.get_running_loop().call_later(
            self.timeout, self._on_timeout, flow
        )
        self._active = flow
        return flow

    def _ensure_live(self, flow: AuthFlow) -> None:
        """Abort a registration whose flow was cancelled while it awaited."""
        if flow.done or flow is not self._active:
            raise AuthFlowCancelledError("Authentication flow was superseded")

    def _is_live(self, flow: AuthFlow) -> bool:
        return flow is self._active and flow.state == FlowState.AWAITING_COMPLETION

    def _start_polling(self, flow: AuthFlow) -> None:
        flow.state = FlowState.AWAITING_COMPLETION
        flow._poll_task = asyncio.get_running_loop().create_task(self._poll(flow))

    async def _poll(self, flow: AuthFlow) -> None:
        if flow.kind == FlowKind.PROVIDER:
            endpoint, param = endpoints.CHECK_TOKEN, "sessionId"
        else:
            endpoint, param = endpoints.CHECK_QR_TOKEN, "qrSessionId"

        while self._is_live(flow):
            await asyncio.sleep(self.poll_interval)
            if not self._is_live(flow):
                return

            logger.debug(f"Polling for token status: {flow.session_id}")
            try:
                data = await self._client.get(
                    endpoint,
                    params={param: flow.session_id},
                    skip_auth=True,
                    allow_refresh=False,
                    max_retries=0
                )
                check = TokenCheckResponse.model_validate(data)
            except (MarqueeError, ValidationError) as e:
                # Transient; the next tick tries again
                logger.debug(f"Token check failed, continuing to poll: {e}")
                continue

            if not self._is_live(flow):
                return

            if check.status == "expired":
                self._finish(
                    flow,
                    FlowState.EXPIRED,
                    error=SessionExpiredError("Authentication session expired"),
                )
                return

            if check.status == "complete" and check.tokens is not None:
                try:
                    self._complete(flow, check)
                except ValueError as e:
                    logger.warning(f"Ignoring incomplete credentials from token check: {e}")
                    continue
                return

    def _complete(self, flow: AuthFlow, check: TokenCheckResponse) -> None:
        tokens = check.tokens
        if flow.kind == FlowKind.PROVIDER:
            # The registered auth session id is what the API expects, not the user id
            session_id = flow.session_id
        else:
            session_id = tokens.session_id or flow.session_id
            if not tokens.session_id:
                logger.warning("QR completion carried no session id, using pairing id")

        bundle = CredentialBundle(
            server_url=self._client.base_url,
            user=tokens.user,
            access_token=tokens.mobile_session_token,
            session_id=session_id,
        )
        self._store.save(bundle)
        logger.info(f"Authentication completed for user: {tokens.user.name or 'unknown'}")
        self._finish(flow, FlowState.COMPLETED, result=bundle)

    def _on_timeout(self, flow: AuthFlow) -> None:
        flow._timeout_handle = None
        if flow.done or flow is not self._active:
            return
        logger.info(f"Authentication timed out after {self.timeout:.0f}s")
        self._finish(
            flow,
            FlowState.TIMED_OUT,
            error=SessionExpiredError(f"Authentication timed out after {self.timeout:.0f}s"),
        )

    def _fail(self, flow: AuthFlow, error: BaseException) -> None:
        logger.error(f"Authentication error: {error}")
        self._finish(flow, FlowState.FAILED, error=error)

    def _finish(
        self,
        flow: AuthFlow,
        state: FlowState,
        result: CredentialBundle | None = None,
        error: BaseException | None = None
    ) -> None:
        if flow.done:
            return
        flow.state = state

        if flow._timeout_handle is not None:
            flow._timeout_handle.cancel()
            flow._timeout_handle = None

        task = flow._poll_task
        flow._poll_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        if self._active is flow:
            self._active = None

        if not flow._result.done():
            if error is not None:
                flow._result.set_exception(error)
            else:
                flow._result.set_result(result)

        logger.debug(f"Auth flow finished: {flow!r}")
