"""
Neo Analytics — Periodization (mesocycle / microcycle track)

Decision logic is pure: session fatigue scores, microcycle summaries,
recommendations and the advance plan are plain functions over rows.
PeriodizationService applies them through a PeriodizationRepository.

Lifecycle of a program:
    no-periodization → initialize() → microcycle-active
    last required session completed → microcycle-finalizing
      → next microcycle (microcycle-active), or
      → mesocycle-completed → next mesocycle + microcycle #1 (microcycle-active)
The track never terminates.
"""
from datetime import date, timedelta

import numpy as np

from neo_analytics.config import (
    BLOCK_CHANGE_TREND_PCT,
    DEFAULT_MICROCYCLE_WEEKS,
    DEFAULT_TOTAL_MICROCYCLES,
    DELOAD_FATIGUE_INDEX,
    NEUTRAL_RIR,
    RIR_FATIGUE_STEP,
)
from neo_analytics.repository import PeriodizationRepository

NO_PERIODIZATION = "no-periodization"
MICROCYCLE_ACTIVE = "microcycle-active"
MICROCYCLE_FINALIZING = "microcycle-finalizing"
MESOCYCLE_COMPLETED = "mesocycle-completed"

ACTIVE = "active"
COMPLETED = "completed"


class PeriodizationError(Exception):
    """A periodization operation could not be carried out."""


# ═══════════════════════════════════════════════════════════════════════
# 1. PURE DECISIONS
# ═══════════════════════════════════════════════════════════════════════

def _working(set_logs: list[dict]) -> list[dict]:
    return [log for log in set_logs if not log.get("is_warmup")]


def session_fatigue_score(set_logs: list[dict]) -> float:
    """
    total_volume × (1 + (3 − avg_RIR) × 0.1)

    avg_RIR covers sets that recorded one; none recorded → neutral 3.
    """
    working = _working(set_logs)
    total_volume = sum(log["weight"] * log["reps"] for log in working)
    rirs = [log["rir"] for log in working if log.get("rir") is not None]
    avg_rir = float(np.mean(rirs)) if rirs else NEUTRAL_RIR
    return round(total_volume * (1 + (NEUTRAL_RIR - avg_rir) * RIR_FATIGUE_STEP), 2)


def average_estimated_1rm(set_logs: list[dict]) -> float:
    """Mean of weight × (1 + reps/30) across working sets; 0 with none."""
    values = [log["weight"] * (1 + log["reps"] / 30) for log in _working(set_logs)]
    return float(np.mean(values)) if values else 0.0


def performance_trend(current_avg: float, previous_avg: float | None) -> float:
    """% change of the current microcycle's average e1RM vs the previous one."""
    if not previous_avg:
        return 0.0
    return round((current_avg - previous_avg) / previous_avg * 100, 2)


def fatigue_index(scores: list[float]) -> float:
    return round(float(np.mean(scores)), 2) if scores else 0.0


def recommend(fatigue_idx: float, trend: float) -> str:
    """Rules in priority order: deload, block_change, optimal."""
    if fatigue_idx > DELOAD_FATIGUE_INDEX and trend <= 0:
        return "deload"
    if trend < BLOCK_CHANGE_TREND_PCT:
        return "block_change"
    return "optimal"


def summarize_microcycle(
    completed_sessions: list[dict],
    current_logs: list[dict],
    previous_logs: list[dict] | None,
) -> dict:
    """fatigue_index / performance_trend / recommendation for a finished microcycle."""
    f_idx = fatigue_index([s["fatigue_score"] for s in completed_sessions if s.get("fatigue_score") is not None])
    previous_avg = average_estimated_1rm(previous_logs) if previous_logs is not None else None
    trend = performance_trend(average_estimated_1rm(current_logs), previous_avg)
    return {
        "fatigue_index": f_idx,
        "performance_trend": trend,
        "recommendation": recommend(f_idx, trend),
    }


def plan_advance(mesocycle: dict, microcycle: dict, today: str) -> list[dict]:
    """
    Commands that open the next unit after `microcycle` is finalized.

    A create_microcycle with mesocycle_id None belongs to the mesocycle
    created by the preceding command.
    """
    duration = microcycle.get("duration_weeks") or DEFAULT_MICROCYCLE_WEEKS
    if microcycle["microcycle_number"] < mesocycle["total_microcycles"]:
        return [{
            "op": "create_microcycle",
            "values": {
                "program_id": mesocycle["program_id"],
                "mesocycle_id": mesocycle["id"],
                "microcycle_number": microcycle["microcycle_number"] + 1,
                "duration_weeks": duration,
                "status": ACTIVE,
                "start_date": today,
            },
        }]
    return [
        {"op": "complete_mesocycle", "values": {"id": mesocycle["id"], "status": COMPLETED, "end_date": today}},
        {
            "op": "create_mesocycle",
            "values": {
                "program_id": mesocycle["program_id"],
                "mesocycle_number": mesocycle["mesocycle_number"] + 1,
                "total_microcycles": mesocycle["total_microcycles"],
                "status": ACTIVE,
                "start_date": today,
            },
        },
        {
            "op": "create_microcycle",
            "values": {
                "program_id": mesocycle["program_id"],
                "mesocycle_id": None,
                "microcycle_number": 1,
                "duration_weeks": duration,
                "status": ACTIVE,
                "start_date": today,
            },
        },
    ]


def periodization_state(snapshot: dict) -> str:
    if not snapshot["mesocycles"]:
        return NO_PERIODIZATION
    if snapshot["active_mesocycle"] is None:
        return MESOCYCLE_COMPLETED
    if snapshot["active_microcycle"] is None:
        return MICROCYCLE_FINALIZING
    return MICROCYCLE_ACTIVE


# ═══════════════════════════════════════════════════════════════════════
# 2. SERVICE
# ═══════════════════════════════════════════════════════════════════════

def _iso(day) -> str:
    if day is None:
        return date.today().isoformat()
    return day.isoformat() if hasattr(day, "isoformat") else str(day)


class PeriodizationService:
    """
    Drives one user's programs through the repository.

    Assumes a single writer per program; finalization is additionally
    guarded by a compare-and-set on the microcycle's active status.
    """

    def __init__(self, repository: PeriodizationRepository):
        self.repo = repository

    def snapshot(self, program_id: str) -> dict:
        mesocycles = self.repo.list_mesocycles(program_id)
        active_meso = next((m for m in mesocycles if m["status"] == ACTIVE), None)
        microcycles = self.repo.list_microcycles(program_id)
        active_micro = None
        if active_meso is not None:
            active_micro = next(
                (m for m in microcycles if m["mesocycle_id"] == active_meso["id"] and m["status"] == ACTIVE),
                None,
            )
        return {
            "active_mesocycle": active_meso,
            "active_microcycle": active_micro,
            "mesocycles": mesocycles,
            "microcycles": microcycles,
        }

    def state(self, program_id: str) -> str:
        return periodization_state(self.snapshot(program_id))

    def initialize(
        self,
        program_id: str,
        total_microcycles: int = DEFAULT_TOTAL_MICROCYCLES,
        duration_weeks: int = DEFAULT_MICROCYCLE_WEEKS,
        today=None,
    ) -> dict:
        """
        Create a mesocycle and its microcycle #1 together. The mesocycle is
        numbered after any the program already has (#1 on a fresh program).

        If the microcycle insert fails the mesocycle is deleted again and
        PeriodizationError is raised, leaving nothing active.
        """
        if total_microcycles < 1:
            raise ValueError("total_microcycles must be >= 1")
        snap = self.snapshot(program_id)
        if snap["active_mesocycle"] is not None:
            raise PeriodizationError(f"Program {program_id} already has an active mesocycle")

        today = _iso(today)
        number = max((m["mesocycle_number"] for m in snap["mesocycles"]), default=0) + 1
        meso = self.repo.insert_mesocycle({
            "program_id": program_id,
            "mesocycle_number": number,
            "total_microcycles": total_microcycles,
            "status": ACTIVE,
            "start_date": today,
            "end_date": None,
        })
        try:
            micro = self.repo.insert_microcycle({
                "program_id": program_id,
                "mesocycle_id": meso["id"],
                "microcycle_number": 1,
                "duration_weeks": duration_weeks,
                "status": ACTIVE,
                "start_date": today,
                "end_date": None,
            })
        except Exception as exc:
            self.repo.delete_mesocycle(meso["id"])
            raise PeriodizationError(f"Could not initialize periodization for {program_id}: {exc}") from exc

        return {"mesocycle": meso, "microcycle": micro}

    def record_session_completion(
        self,
        program_id: str,
        session_id: str,
        set_logs: list[dict],
        total_slots: int,
        today=None,
    ) -> dict:
        """
        Store a completed session with its fatigue score and, when it fills
        the last open slot of the active microcycle, finalize and advance
        before returning.
        """
        today = _iso(today)
        snap = self.snapshot(program_id)
        stalled = self._stalled_microcycle(snap) if snap["active_microcycle"] is None else None
        if stalled is not None:
            self._resume(snap["active_mesocycle"], stalled, today)
            snap = self.snapshot(program_id)
        micro = snap["active_microcycle"]

        completed = self.repo.insert_completed_session({
            "program_id": program_id,
            "session_id": session_id,
            "microcycle_id": micro["id"] if micro else None,
            "completed_at": today,
            "fatigue_score": session_fatigue_score(set_logs),
        })
        result = {"completed_session": completed, "finalized": None}
        if micro is None:
            return result

        done = {s["session_id"] for s in self.repo.list_completed_sessions(micro["id"])}
        if total_slots > 0 and len(done) == total_slots:
            result["finalized"] = self._finalize(snap["active_mesocycle"], micro, snap["microcycles"], today)
        return result

    def finalize_microcycle(self, program_id: str, microcycle_id: str = None, today=None) -> dict | None:
        """
        Finalize a microcycle (the active one by default) and advance.
        A microcycle that is no longer active is skipped: returns None.

        In the microcycle-finalizing state (a closed microcycle whose
        successor was never created) the advance is resumed instead.
        """
        snap = self.snapshot(program_id)
        micro = snap["active_microcycle"]
        if micro is None:
            stalled = self._stalled_microcycle(snap)
            if stalled is None or (microcycle_id is not None and stalled["id"] != microcycle_id):
                return None
            return self._resume(snap["active_mesocycle"], stalled, _iso(today))
        if microcycle_id is not None and micro["id"] != microcycle_id:
            return None
        return self._finalize(snap["active_mesocycle"], micro, snap["microcycles"], _iso(today))

    def complete_microcycle(self, program_id: str, today=None) -> dict | None:
        """Finalize the active microcycle now, regardless of slot count."""
        if self.snapshot(program_id)["active_mesocycle"] is None:
            raise PeriodizationError(f"Program {program_id} has no active microcycle")
        return self.finalize_microcycle(program_id, today=today)

    def update_total_microcycles(self, program_id: str, total: int) -> dict:
        if total < 1:
            raise ValueError("total must be >= 1")
        meso = self.snapshot(program_id)["active_mesocycle"]
        if meso is None:
            raise PeriodizationError(f"Program {program_id} has no active mesocycle")
        return self.repo.update_mesocycle(meso["id"], {"total_microcycles": total})

    def _previous_microcycle(self, microcycle: dict, microcycles: list[dict]) -> dict | None:
        ids = [m["id"] for m in microcycles]
        if microcycle["id"] not in ids:
            return None
        pos = ids.index(microcycle["id"])
        return microcycles[pos - 1] if pos > 0 else None

    def _stalled_microcycle(self, snap: dict) -> dict | None:
        meso = snap["active_mesocycle"]
        if meso is None:
            return None
        closed = [m for m in snap["microcycles"] if m["mesocycle_id"] == meso["id"] and m["status"] == COMPLETED]
        return closed[-1] if closed else None

    def _finalize(self, mesocycle: dict, microcycle: dict, microcycles: list[dict], today: str) -> dict | None:
        """
        Close `microcycle` and open the next unit. Returns None when another
        writer already closed it (nothing is created twice).

        If the advance fails the microcycle is reopened and
        PeriodizationError is raised.
        """
        sessions = self.repo.list_completed_sessions(microcycle["id"])
        prev = self._previous_microcycle(microcycle, microcycles)
        start = microcycle["start_date"]
        # the day a microcycle ends belongs to it, not to its successor
        if prev and prev.get("end_date") and prev["end_date"] >= start:
            start = _next_day(prev["end_date"])
        current_logs = self.repo.list_set_logs(start, today) if start <= today else []
        previous_logs = self.repo.list_set_logs(prev["start_date"], prev.get("end_date")) if prev else None

        summary = summarize_microcycle(sessions, current_logs, previous_logs)
        if not self.repo.complete_microcycle_if_active(microcycle["id"], {**summary, "end_date": today}):
            return None

        try:
            created = self._advance(mesocycle, microcycle, today)
        except Exception as exc:
            self.repo.update_microcycle(microcycle["id"], {
                "status": ACTIVE, "end_date": None,
                "fatigue_index": None, "performance_trend": None, "recommendation": None,
            })
            raise PeriodizationError(f"Could not advance microcycle {microcycle['id']}: {exc}") from exc

        return {"microcycle_id": microcycle["id"], **summary, **created}

    def _resume(self, mesocycle: dict, microcycle: dict, today: str) -> dict:
        try:
            created = self._advance(mesocycle, microcycle, today)
        except Exception as exc:
            raise PeriodizationError(f"Could not advance microcycle {microcycle['id']}: {exc}") from exc
        return {
            "microcycle_id": microcycle["id"],
            "fatigue_index": microcycle.get("fatigue_index"),
            "performance_trend": microcycle.get("performance_trend"),
            "recommendation": microcycle.get("recommendation"),
            **created,
        }

    def _advance(self, mesocycle: dict, microcycle: dict, today: str) -> dict:
        """Apply plan_advance; on failure undo the writes already made and re-raise."""
        created = {"next_mesocycle": None, "next_microcycle": None}
        undo = []
        try:
            for cmd in plan_advance(mesocycle, microcycle, today):
                values = dict(cmd["values"])
                if cmd["op"] == "complete_mesocycle":
                    self.repo.update_mesocycle(values.pop("id"), values)
                    undo.append(lambda: self.repo.update_mesocycle(
                        mesocycle["id"], {"status": ACTIVE, "end_date": mesocycle.get("end_date")},
                    ))
                elif cmd["op"] == "create_mesocycle":
                    new_meso = self.repo.insert_mesocycle({**values, "end_date": None})
                    created["next_mesocycle"] = new_meso
                    undo.append(lambda: self.repo.delete_mesocycle(new_meso["id"]))
                elif cmd["op"] == "create_microcycle":
                    if values["mesocycle_id"] is None:
                        values["mesocycle_id"] = created["next_mesocycle"]["id"]
                    created["next_microcycle"] = self.repo.insert_microcycle({**values, "end_date": None})
        except Exception:
            for step in reversed(undo):
                step()
            raise
        return created


def _next_day(day: str) -> str:
    return (date.fromisoformat(day[:10]) + timedelta(days=1)).isoformat()
