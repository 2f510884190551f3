"""In-memory secure storage (tests and throwaway sessions)"""

from marquee.storage.base import SecureStorage


class InMemorySecureStorage(SecureStorage):
    """Dict-backed storage; contents are lost when the process exits"""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)
