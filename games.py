# games.py
"""
Game variants. Both games run on the same round engine and differ only in the
outcome domain (and, optionally, timing and entry fee).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Tuple

from config import settings


@dataclass(frozen=True)
class GameVariant:
    key: str
    label: str
    outcomes: Tuple[int, ...]
    wait_seconds: int = settings.ROUND_WAIT_SECONDS
    duration_seconds: int = settings.ROUND_DURATION_SECONDS
    # None -> use system_config.entry_fee
    entry_fee: Optional[Decimal] = None
    outcome_labels: Dict[int, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.outcomes:
            raise ValueError(f"{self.key}: empty outcome domain")
        if self.duration_seconds <= 0:
            raise ValueError(f"{self.key}: duration must be positive")

    def is_valid_outcome(self, value: int) -> bool:
        return value in self.outcomes

    def label_for(self, value: Optional[int]) -> Optional[str]:
        if value is None:
            return None
        return self.outcome_labels.get(value, str(value))


NUMBER_DRAW = GameVariant(
    key="number_draw",
    label="Number Draw",
    outcomes=tuple(range(1, 11)),
)

FIGHT_DRAGON = GameVariant(
    key="fight_dragon",
    label="Fight Dragon",
    outcomes=(1, 10),
    outcome_labels={1: "Dragon", 10: "Knight"},
)

GAMES: Dict[str, GameVariant] = {g.key: g for g in (NUMBER_DRAW, FIGHT_DRAGON)}
DEFAULT_GAME = NUMBER_DRAW.key


def get_game(key: Optional[str]) -> GameVariant:
    """Look up a variant; raises KeyError for unknown keys."""
    k = (key or DEFAULT_GAME).strip().lower()
    try:
        return GAMES[k]
    except KeyError:
        raise KeyError(f"Unknown game: {key}") from None
