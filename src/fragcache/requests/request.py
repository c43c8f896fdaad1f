"""Replay request value object."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Request:
    """A page request that regenerates cached content when replayed.

    Two requests are equal iff method, path, parameters and options all
    match; queues use this equality to deduplicate.
    """

    method: str
    path: str
    parameters: dict[str, Any] | None = None
    options: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())

    @property
    def xhr(self) -> bool:
        """Whether the request targets an asynchronous content endpoint."""
        return bool(self.options and self.options.get("xhr"))

    def describe(self) -> str:
        """Short description for logs."""
        kind = "xhr request" if self.xhr else "request"
        text = f"{kind} '{self.method} {self.path}'"
        if self.parameters is not None:
            text += f" with {self.parameters!r}"
        return text

    def to_dict(self) -> dict[str, Any]:
        """Serialize request to dictionary."""
        return {
            "method": self.method,
            "path": self.path,
            "parameters": self.parameters,
            "options": self.options,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Request:
        """Deserialize request from dictionary."""
        return cls(
            method=data["method"],
            path=data["path"],
            parameters=data.get("parameters"),
            options=data.get("options"),
        )
