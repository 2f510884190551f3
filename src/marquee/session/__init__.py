"""Credential bundle persistence."""

from marquee.session.store import CLIENT_ID_KEY, STORAGE_KEY, SessionStore

__all__ = ["SessionStore", "STORAGE_KEY", "CLIENT_ID_KEY"]
