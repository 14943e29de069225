"""
Cardinality parsing.

A cardinality string has the form "[min:max]" where either bound may be
empty: an empty min means 0, an empty max means unbounded.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from ..errors import ModelError

DEFAULT_CARDINALITY = "[:]"

_CARDINALITY_RE = re.compile(r"^\[\s*(\d*)\s*:\s*(\d*)\s*\]$")


@dataclass(frozen=True)
class Cardinality:
    """Parsed [min:max] bounds. `max` is math.inf when unbounded."""

    min: int = 0
    max: float = math.inf

    @classmethod
    def parse(cls, text: str | None) -> Cardinality:
        match = _CARDINALITY_RE.match((text or DEFAULT_CARDINALITY).strip())
        if not match:
            raise ModelError(f"Invalid cardinality {text!r}", attribute="cardinality")

        low, high = match.groups()
        bounds = cls(
            min=int(low) if low else 0,
            max=int(high) if high else math.inf,
        )
        if bounds.min > bounds.max:
            raise ModelError(f"Cardinality {text!r} has min above max", attribute="cardinality")
        return bounds

    @property
    def bounded(self) -> bool:
        return self.max != math.inf

    def __str__(self) -> str:
        high = "" if not self.bounded else str(int(self.max))
        return f"[{self.min or ''}:{high}]"
