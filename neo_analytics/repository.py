"""
Neo Analytics — Periodization storage port

PeriodizationRepository is the narrow interface the periodization service
reads and writes through. InMemoryRepository backs tests and CSV mode;
supabase_client.SupabaseRepository backs the hosted database.

Rows are plain dicts shaped like the database tables. Dates are ISO strings.
"""
import copy
import itertools
from typing import Protocol

import pandas as pd


class PeriodizationRepository(Protocol):
    """Storage operations needed to run the mesocycle/microcycle track."""

    def list_mesocycles(self, program_id: str) -> list[dict]:
        """All mesocycles of a program, ordered by mesocycle_number."""
        ...

    def list_microcycles(self, program_id: str) -> list[dict]:
        """All microcycles of a program, oldest first."""
        ...

    def insert_mesocycle(self, row: dict) -> dict:
        ...

    def insert_microcycle(self, row: dict) -> dict:
        ...

    def update_mesocycle(self, mesocycle_id: str, fields: dict) -> dict:
        ...

    def delete_mesocycle(self, mesocycle_id: str) -> None:
        ...

    def update_microcycle(self, microcycle_id: str, fields: dict) -> dict:
        ...

    def complete_microcycle_if_active(self, microcycle_id: str, fields: dict) -> bool:
        """
        Set status=completed plus `fields`, only if the row is still active.
        Returns False when another writer already completed it.
        """
        ...

    def insert_completed_session(self, row: dict) -> dict:
        ...

    def list_completed_sessions(self, microcycle_id: str) -> list[dict]:
        ...

    def list_set_logs(self, start_date: str, end_date: str | None) -> list[dict]:
        """Set logs whose logged_at calendar day is within [start_date, end_date]."""
        ...


def _in_range(logged_at, start_date: str, end_date: str | None) -> bool:
    day = pd.Timestamp(logged_at)
    if day.tzinfo is not None:
        day = day.tz_convert("UTC").tz_localize(None)
    day = day.normalize()
    if day < pd.Timestamp(start_date):
        return False
    return end_date is None or day <= pd.Timestamp(end_date)


class InMemoryRepository:
    """Dict-backed repository. Returned rows are copies; mutate via methods only."""

    def __init__(self, set_logs: list[dict] = None):
        self._ids = itertools.count(1)
        self.mesocycles: dict[str, dict] = {}
        self.microcycles: dict[str, dict] = {}
        self.completed_sessions: dict[str, dict] = {}
        self.set_logs: list[dict] = list(set_logs or [])

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def add_set_logs(self, rows: list[dict]) -> None:
        self.set_logs.extend(rows)

    # ── Mesocycles ───────────────────────────────────────────────────
    def list_mesocycles(self, program_id: str) -> list[dict]:
        rows = [m for m in self.mesocycles.values() if m["program_id"] == program_id]
        return copy.deepcopy(sorted(rows, key=lambda m: m["mesocycle_number"]))

    def insert_mesocycle(self, row: dict) -> dict:
        stored = {**row, "id": self._new_id("meso")}
        self.mesocycles[stored["id"]] = stored
        return copy.deepcopy(stored)

    def update_mesocycle(self, mesocycle_id: str, fields: dict) -> dict:
        self.mesocycles[mesocycle_id].update(fields)
        return copy.deepcopy(self.mesocycles[mesocycle_id])

    def delete_mesocycle(self, mesocycle_id: str) -> None:
        self.mesocycles.pop(mesocycle_id, None)

    # ── Microcycles ──────────────────────────────────────────────────
    def list_microcycles(self, program_id: str) -> list[dict]:
        return copy.deepcopy([m for m in self.microcycles.values() if m["program_id"] == program_id])

    def insert_microcycle(self, row: dict) -> dict:
        stored = {**row, "id": self._new_id("micro")}
        self.microcycles[stored["id"]] = stored
        return copy.deepcopy(stored)

    def update_microcycle(self, microcycle_id: str, fields: dict) -> dict:
        self.microcycles[microcycle_id].update(fields)
        return copy.deepcopy(self.microcycles[microcycle_id])

    def complete_microcycle_if_active(self, microcycle_id: str, fields: dict) -> bool:
        row = self.microcycles.get(microcycle_id)
        if row is None or row["status"] != "active":
            return False
        row.update(fields)
        row["status"] = "completed"
        return True

    # ── Sessions & logs ──────────────────────────────────────────────
    def insert_completed_session(self, row: dict) -> dict:
        stored = {**row, "id": self._new_id("done")}
        self.completed_sessions[stored["id"]] = stored
        return copy.deepcopy(stored)

    def list_completed_sessions(self, microcycle_id: str) -> list[dict]:
        return copy.deepcopy([
            s for s in self.completed_sessions.values() if s["microcycle_id"] == microcycle_id
        ])

    def list_set_logs(self, start_date: str, end_date: str | None) -> list[dict]:
        return copy.deepcopy([
            log for log in self.set_logs if _in_range(log["logged_at"], start_date, end_date)
        ])
