"""Exceptions raised at the transport boundary."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ConnectFailure(Exception):
    """Opening a connection failed or was rejected."""

    url: str
    reason: str
    original_exception: BaseException | None = None

    def __str__(self) -> str:
        return f"could not connect to {self.url}: {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "url": self.url,
            "error": self.reason,
            "error_type": self.__class__.__name__,
        }
        if self.original_exception is not None:
            result["original_error_type"] = self.original_exception.__class__.__name__
        return result
