"""Wire schemas for the media server's auth and status endpoints."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ServerLevel = Literal["normal", "warning", "error", "unknown"]


class WireModel(BaseModel):
    """Base for server payloads: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class User(WireModel):
    id: str
    name: str
    email: str
    approved: bool = False
    limited_access: bool | None = Field(default=None, alias="limitedAccess")
    admin: bool | None = None


class RegisterSessionResponse(WireModel):
    session_id: str = Field(alias="sessionId")
    expires_at: int = Field(alias="expiresAt")


class QRSessionResponse(WireModel):
    qr_session_id: str = Field(alias="qrSessionId")
    expires_at: int = Field(alias="expiresAt")


class AuthTokens(WireModel):
    user: User
    mobile_session_token: str = Field(alias="mobileSessionToken")
    session_id: str | None = Field(default=None, alias="sessionId")


class TokenCheckResponse(WireModel):
    """Response of check-token and check-qr-token."""

    status: str
    tokens: AuthTokens | None = None


class TokenRefreshResponse(WireModel):
    success: bool = False
    mobile_session_token: str | None = Field(default=None, alias="mobileSessionToken")
    user: User | None = None
    error: str | None = None


class DeviceInfo(WireModel):
    brand: str | None = None
    model: str | None = None
    platform: str


class QRSessionRequest(WireModel):
    client_id: str = Field(alias="clientId")
    device_type: Literal["tv", "mobile", "tablet", "desktop"] = Field(alias="deviceType")
    host: str
    device_info: DeviceInfo = Field(alias="deviceInfo")


class UserStatusResponse(WireModel):
    """user-status payload; any of the revocation flags may be present."""

    user: User | None = None
    session_revoked: bool = Field(default=False, alias="sessionRevoked")
    session_expired: bool = Field(default=False, alias="sessionExpired")
    revoked: bool = False
    expired: bool = False
    valid: bool | None = None
    status: str | None = None

    def is_revoked(self) -> bool:
        return (
            self.session_revoked
            or self.session_expired
            or self.revoked
            or self.expired
            or self.status == "invalid"
            or self.valid is False
        )


class OverallStatus(WireModel):
    level: ServerLevel = "unknown"
    message: str = ""
    updated_at: str | None = Field(default=None, alias="updatedAt")


class ComponentStatus(WireModel):
    server_id: str = Field(alias="serverId")
    server_name: str = Field(alias="serverName")
    last_updated: str | None = Field(default=None, alias="lastUpdated")
    level: ServerLevel = "unknown"
    message: str = ""
    error: str | None = None


class ServerStatusResponse(WireModel):
    overall: OverallStatus
    servers: list[ComponentStatus] = Field(default_factory=list)
    has_active_incidents: bool = Field(default=False, alias="hasActiveIncidents")
