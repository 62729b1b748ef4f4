from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Literal, Tuple

Role = Literal["query", "response"]
ROLES: Tuple[str, ...] = ("query", "response")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """A single conversation message stored in memory."""

    role: Role                  # "query" | "response"
    text: str                   # message text
    timestamp: int = field(default_factory=_now_ms)  # creation time, epoch millis

    def to_dict(self) -> dict:
        return {"role": self.role, "text": self.text, "timestamp": self.timestamp}
