"""Base classes for format readers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import BinaryIO, Generic, TypeVar

T = TypeVar("T")


class FormatParser(ABC, Generic[T]):
    """Base class for read-only format parsers."""

    @abstractmethod
    def parse(self, data: bytes | BinaryIO) -> T:
        """Parse binary data.

        Args:
            data: Binary data or stream

        Returns:
            Parsed format object
        """
        ...


def as_bytes(data: bytes | bytearray | memoryview | BinaryIO) -> bytes:
    """Normalize parser input to an immutable byte string."""
    if isinstance(data, bytes):
        return data
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    return data.read()
