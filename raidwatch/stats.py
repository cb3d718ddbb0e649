from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List

TOP_N = 5


@dataclass
class PlayerTop:
    name: str
    value: int


def rank_top(counts: Dict[str, int], limit: int = TOP_N) -> List[PlayerTop]:
    """Rank counters by value descending, ties kept in first-seen order."""
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [PlayerTop(name=name, value=value) for name, value in ranked[:limit]]


class DeathTally:
    """Running death counters across every fight of one report.

    ``add_fight`` takes the names of the players who died, already ordered by
    timestamp. Only the earliest named death of a fight counts as that
    fight's first death.
    """

    def __init__(self):
        self.total: Dict[str, int] = {}
        self.first: Dict[str, int] = {}

    def add_fight(self, names: Iterable[str]):
        first_taken = False
        for name in names:
            if not name:
                continue
            self.total[name] = self.total.get(name, 0) + 1
            if not first_taken:
                self.first[name] = self.first.get(name, 0) + 1
                first_taken = True

    def top_deaths(self, limit: int = TOP_N) -> List[PlayerTop]:
        return rank_top(self.total, limit)

    def top_first_deaths(self, limit: int = TOP_N) -> List[PlayerTop]:
        return rank_top(self.first, limit)
