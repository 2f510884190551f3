"""Media server endpoint paths used by the auth and resilience layer."""

from urllib.parse import urlencode

REGISTER_SESSION = "/api/auth/register-session"
CHECK_TOKEN = "/api/auth/check-token"
REGISTER_QR_SESSION = "/api/auth/register-qr-session"
CHECK_QR_TOKEN = "/api/auth/check-qr-token"
USER_STATUS = "/api/auth/user-status"
REFRESH_TOKEN = "/api/auth/refresh-token"

SYSTEM_STATUS = "/api/authenticated/system-status"

QR_AUTH = "/qr-auth"


def native_signin(provider_id: str) -> str:
    """Browser entry point for a provider-redirect login."""
    return f"/native-signin/{provider_id}"


def qr_auth_url(server_url: str, qr_session_id: str) -> str:
    """URL encoded in the pairing QR code, opened on an already signed-in device."""
    query = urlencode({"qrSessionId": qr_session_id})
    return f"{server_url.rstrip('/')}{QR_AUTH}?{query}"
