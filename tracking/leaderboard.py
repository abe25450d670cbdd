"""
tracking/leaderboard.py — Caller ranking.

Per caller (excluded calls ignored):
  total_calls   every call, priced or not
  best_multiple max(1, best last/entry)
  avg_multiple  mean last/entry over calls that have both values (1.0 if none)

Sorted by best, then avg, then total, all descending.
"""

from __future__ import annotations

from typing import Iterable

from tracking.models import Call, LeaderboardEntry


def rank_callers(calls: Iterable[Call], limit: int = 10) -> list[LeaderboardEntry]:
    groups: dict[str, dict] = {}

    for call in calls:
        if call.excluded_from_leaderboard:
            continue
        caller_id = call.caller.external_id
        g = groups.setdefault(
            caller_id,
            {"total": 0, "multiples": [], "name": None, "name_ts": None},
        )
        g["total"] += 1

        name = (call.caller.display_name or "").strip()
        if name and (g["name_ts"] is None or call.created_at >= g["name_ts"]):
            g["name"] = name
            g["name_ts"] = call.created_at

        multiple = call.current_multiple
        if multiple is not None:
            g["multiples"].append(multiple)

    entries = []
    for caller_id, g in groups.items():
        multiples = g["multiples"]
        best = max([1.0] + multiples)
        avg = sum(multiples) / len(multiples) if multiples else 1.0
        entries.append(
            LeaderboardEntry(
                caller_id=caller_id,
                display_name=g["name"],
                total_calls=g["total"],
                best_multiple=best,
                avg_multiple=avg,
            )
        )

    entries.sort(key=lambda e: (-e.best_multiple, -e.avg_multiple, -e.total_calls, e.caller_id))
    return entries[:max(0, int(limit))]


class LeaderboardRanker:
    def __init__(self, store):
        self.store = store

    def rank(self, limit: int = 10) -> list[LeaderboardEntry]:
        return rank_callers(self.store.find_all(), limit)
