"""Session store - single owner of the persisted credential bundle.

The store is the only writer of credentials. Every other component either
receives the bundle through a subscription (the HTTP client mirrors it into
its own fields) or reads ``store.current`` fresh at the point of use.

Persisted layout (key ``auth-info``)::

    {"server": "...", "user": {...}, "mobileToken": "...", "sessionId": "..."}

After sign-out the server URL stays in the blob and the other three fields
are null, so the client still knows which server it was pointed at.
"""

import json
import logging
import uuid
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from marquee.schemas import User
from marquee.storage.base import SecureStorage
from marquee.types import CredentialBundle

logger = logging.getLogger(__name__)

STORAGE_KEY = "auth-info"
CLIENT_ID_KEY = "client-id"

BundleListener = Callable[[CredentialBundle | None], None]


class SessionStore:
    """Persists and publishes the current CredentialBundle.

    Mutation happens only through ``save`` and ``clear``. Both update the
    in-memory value and notify listeners synchronously, so no caller can
    observe a half-applied change across an await point.
    """

    def __init__(self, storage: SecureStorage):
        self._storage = storage
        self._current: CredentialBundle | None = None
        self._server_url: str | None = None
        self._listeners: list[BundleListener] = []

    @property
    def current(self) -> CredentialBundle | None:
        """Bundle produced by the last load/save/clear."""
        return self._current

    @property
    def server_url(self) -> str | None:
        """Server the client is pointed at, remembered across sign-out."""
        if self._current is not None:
            return self._current.server_url
        return self._server_url

    def subscribe(self, listener: BundleListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def load(self) -> CredentialBundle | None:
        """Read the persisted bundle.

        Malformed or partial data yields ``None``; this never raises for bad
        stored content. The partial data is overwritten so the next start sees
        a clean signed-out state.
        """
        raw = self._storage.get(STORAGE_KEY)
        bundle = None
        if raw:
            data = self._decode(raw)
            if data is not None:
                server = data.get("server")
                self._server_url = server if isinstance(server, str) and server else None
                bundle = self._bundle_from_dict(data)
                if bundle is None and self._has_any_credential(data):
                    logger.warning("Discarding partial credential bundle from storage")
                    self._persist(None)

        self._current = bundle
        logger.info(f"Loaded session: {'authenticated' if bundle else 'signed out'}")
        self._notify()
        return bundle

    def save(self, bundle: CredentialBundle) -> None:
        """Persist ``bundle`` and make it the current one."""
        self._persist(bundle)
        self._current = bundle
        self._server_url = bundle.server_url
        logger.debug(f"Saved credential bundle for user {bundle.user.id}")
        self._notify()

    def clear(self) -> None:
        """Sign out locally: drop the bundle, keep the server URL."""
        had_bundle = self._current is not None
        self._persist(None)
        self._current = None
        if had_bundle:
            logger.info("Cleared credential bundle")
        self._notify()

    def set_server(self, url: str) -> None:
        """Point the client at a server while signed out."""
        url = url.rstrip("/")
        if self._current is not None and self._current.server_url != url:
            raise ValueError("Cannot change server while signed in; sign out first")
        self._server_url = url
        if self._current is None:
            self._persist(None)

    def get_or_create_client_id(self) -> str:
        """Stable per-installation identifier, generated and persisted once."""
        client_id = self._storage.get(CLIENT_ID_KEY)
        if not client_id:
            client_id = str(uuid.uuid4())
            self._storage.set(CLIENT_ID_KEY, client_id)
            logger.info(f"Generated new client ID: {client_id}")
        return client_id

    # Helper methods

    def _persist(self, bundle: CredentialBundle | None) -> None:
        if bundle is not None:
            payload = bundle.to_dict()
        else:
            payload = {
                "server": self._server_url,
                "user": None,
                "mobileToken": None,
                "sessionId": None,
            }
        self._storage.set(STORAGE_KEY, json.dumps(payload))

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._current)
            except Exception:
                logger.error("Session listener failed", exc_info=True)

    @staticmethod
    def _decode(raw: str) -> dict[str, Any] | None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Stored auth data is not valid JSON; treating as signed out")
            return None
        if not isinstance(data, dict):
            logger.warning("Stored auth data has unexpected shape; treating as signed out")
            return None
        return data

    @staticmethod
    def _has_any_credential(data: dict[str, Any]) -> bool:
        return any(data.get(key) for key in ("user", "mobileToken", "sessionId"))

    @staticmethod
    def _bundle_from_dict(data: dict[str, Any]) -> CredentialBundle | None:
        server = data.get("server")
        token = data.get("mobileToken")
        session_id = data.get("sessionId")
        user_data = data.get("user")

        if not all(isinstance(v, str) and v for v in (server, token, session_id)):
            return None
        if not isinstance(user_data, dict):
            return None

        try:
            user = User.model_validate(user_data)
            return CredentialBundle(
                server_url=server,
                user=user,
                access_token=token,
                session_id=session_id,
            )
        except (ValidationError, ValueError) as e:
            logger.warning(f"Stored credential bundle is invalid: {e}")
            return None
