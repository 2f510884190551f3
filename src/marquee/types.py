"""Core data types shared across the Marquee client."""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from marquee.schemas import ComponentStatus, ServerLevel, User


@dataclass(frozen=True)
class CredentialBundle:
    """Server address, user profile, access token and session id as one unit.

    A bundle either exists with all four fields set or does not exist at all;
    signed-out state is represented by ``None``, never by a partial bundle.
    """

    server_url: str
    user: User
    access_token: str
    session_id: str

    def __post_init__(self):
        missing = [
            name for name in ("server_url", "access_token", "session_id")
            if not getattr(self, name)
        ]
        if missing or self.user is None:
            raise ValueError(f"Incomplete credential bundle (missing: {missing or ['user']})")

    def with_token(self, access_token: str, user: User | None = None) -> "CredentialBundle":
        """Copy with a refreshed token (and optionally a refreshed profile)."""
        return replace(self, access_token=access_token, user=user or self.user)

    def with_user(self, user: User) -> "CredentialBundle":
        return replace(self, user=user)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted auth blob layout."""
        return {
            "server": self.server_url,
            "user": self.user.model_dump(by_alias=True, exclude_none=True),
            "mobileToken": self.access_token,
            "sessionId": self.session_id,
        }


@dataclass(frozen=True)
class LoginSession:
    """Server-issued handle for one provider-redirect login attempt."""

    session_id: str
    expires_at: int


@dataclass(frozen=True)
class PairingSession:
    """Server-issued handle for one QR-pairing login attempt."""

    qr_session_id: str
    expires_at: int


@dataclass(frozen=True)
class ServerHealth:
    """Latest server health as seen by the health monitor."""

    is_down: bool = False
    message: str | None = None


@dataclass(frozen=True)
class ServerStatusSummary:
    """Parsed system-status payload."""

    is_down: bool
    has_server_issues: bool
    overall_level: ServerLevel
    message: str | None
    server_issues: list[ComponentStatus] = field(default_factory=list)


class FlowKind(str, Enum):
    """Login flow variants handled by the orchestrator."""
    PROVIDER = "provider"
    QR = "qr"


class FlowState(str, Enum):
    """Auth flow lifecycle.

    IDLE -> REGISTERING -> AWAITING_COMPLETION -> one terminal state.
    """
    IDLE = "idle"
    REGISTERING = "registering"
    AWAITING_COMPLETION = "awaiting_completion"
    COMPLETED = "completed"
    EXPIRED = "expired"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    FlowState.COMPLETED,
    FlowState.EXPIRED,
    FlowState.TIMED_OUT,
    FlowState.CANCELLED,
    FlowState.FAILED,
})
