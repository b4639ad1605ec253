"""
Identity domain constants and simple helpers.

Why:
- Centralize the administrative tiers to avoid drift between the role panel,
  the CLI and every privileged endpoint that calls `authorize`.
- Keep terms aligned with the glossary (tier, grant, effective tier).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class Tier(IntEnum):
    """Administrative privilege tier. Lower value means more privilege."""

    SUPER_ADMIN = 1
    ADMIN = 2
    MODERATOR = 3

    @property
    def label(self) -> str:
        return TIER_LABELS[self]


TIER_LABELS = {
    Tier.SUPER_ADMIN: "Super Admin",
    Tier.ADMIN: "Admin",
    Tier.MODERATOR: "Moderator",
}

# Immutable to prevent accidental mutation.
ALLOWED_TIERS = frozenset(int(t) for t in Tier)


def parse_tier(value: object) -> Tier:
    """Coerce user input (int or numeric string) to a `Tier`.

    Booleans are rejected explicitly because `True == 1` would otherwise be a
    silent SuperAdmin request.
    """
    if isinstance(value, Tier):
        return value
    if isinstance(value, bool):
        raise ValueError("invalid_tier")
    try:
        level = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError("invalid_tier") from exc
    if level not in ALLOWED_TIERS:
        raise ValueError("invalid_tier")
    return Tier(level)


def tier_label(level: Optional[int]) -> str:
    if level is None or level not in ALLOWED_TIERS:
        return "Unknown"
    return Tier(level).label


@dataclass(frozen=True)
class Identity:
    """A known person as seen by the directory. Read-only for this core."""

    id: str
    display_name: str
    email: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "display_name": self.display_name, "email": self.email}


__all__ = ["Tier", "TIER_LABELS", "ALLOWED_TIERS", "parse_tier", "tier_label", "Identity"]
