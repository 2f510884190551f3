"""Secure storage interface - durable key-value store for credentials"""

from abc import ABC, abstractmethod


class SecureStorage(ABC):
    """Abstract base class for durable credential storage

    Values are opaque strings; callers serialize structured data themselves.
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        """
        Read a value

        Args:
            key: Storage key

        Returns:
            Stored string, or None if the key does not exist
        """
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Write a value, replacing any existing one

        Args:
            key: Storage key
            value: String to store
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """
        Remove a key. Deleting a missing key is not an error.

        Args:
            key: Storage key
        """
        pass

    def get_name(self) -> str:
        """Get storage backend name"""
        return self.__class__.__name__
