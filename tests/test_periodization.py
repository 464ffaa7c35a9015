"""
Tests for the mesocycle / microcycle track — pure decisions and the service.
Run: pytest tests/ -v
"""
import pytest


def _log(weight, reps, rir, day, warmup=False):
    return {"exercise_id": "ex-bench", "weight": weight, "reps": reps, "rir": rir,
            "is_warmup": warmup, "logged_at": f"{day}T10:00:00Z"}


def _service(repo=None):
    from neo_analytics.periodization import PeriodizationService
    from neo_analytics.repository import InMemoryRepository
    repo = repo if repo is not None else InMemoryRepository()
    return PeriodizationService(repo), repo


# ═══════════════════════════════════════════════════════════════════════
# PURE DECISIONS
# ═══════════════════════════════════════════════════════════════════════

class TestSessionFatigueScore:
    def test_rir_below_neutral_raises_score(self):
        from neo_analytics.periodization import session_fatigue_score
        logs = [_log(100, 5, 1, "2026-03-02"), _log(100, 5, 3, "2026-03-02")]
        # volume 1000, avg RIR 2 → ×1.1
        assert session_fatigue_score(logs) == pytest.approx(1100)

    def test_no_rir_is_neutral(self):
        from neo_analytics.periodization import session_fatigue_score
        logs = [_log(100, 5, None, "2026-03-02"), _log(100, 5, None, "2026-03-02")]
        assert session_fatigue_score(logs) == pytest.approx(1000)

    def test_warmups_excluded(self):
        from neo_analytics.periodization import session_fatigue_score
        logs = [_log(60, 10, None, "2026-03-02", warmup=True), _log(100, 5, 3, "2026-03-02")]
        assert session_fatigue_score(logs) == pytest.approx(500)

    def test_empty(self):
        from neo_analytics.periodization import session_fatigue_score
        assert session_fatigue_score([]) == 0


class TestTrendAndRecommendation:
    def test_average_estimated_1rm(self):
        from neo_analytics.periodization import average_estimated_1rm
        assert average_estimated_1rm([_log(90, 3, 0, "2026-03-02")]) == pytest.approx(99)
        assert average_estimated_1rm([]) == 0

    def test_performance_trend(self):
        from neo_analytics.periodization import performance_trend
        assert performance_trend(110, 100) == pytest.approx(10)
        assert performance_trend(100, None) == 0
        assert performance_trend(100, 0) == 0

    def test_fatigue_index(self):
        from neo_analytics.periodization import fatigue_index
        assert fatigue_index([80, 90]) == 85
        assert fatigue_index([]) == 0

    @pytest.mark.parametrize("fatigue,trend,expected", [
        (90, 0, "deload"),
        (90, 1, "optimal"),
        (90, -6, "deload"),
        (50, -6, "block_change"),
        (50, -5, "optimal"),
        (85, -1, "optimal"),
    ])
    def test_recommendation_rules(self, fatigue, trend, expected):
        from neo_analytics.periodization import recommend
        assert recommend(fatigue, trend) == expected


class TestPlanAdvance:
    MESO = {"id": "m1", "program_id": "p1", "mesocycle_number": 1, "total_microcycles": 2}

    def test_next_microcycle_in_same_mesocycle(self):
        from neo_analytics.periodization import plan_advance
        micro = {"id": "u1", "microcycle_number": 1, "duration_weeks": 2}
        cmds = plan_advance(self.MESO, micro, "2026-03-09")
        assert [c["op"] for c in cmds] == ["create_microcycle"]
        values = cmds[0]["values"]
        assert values["mesocycle_id"] == "m1"
        assert values["microcycle_number"] == 2
        assert values["duration_weeks"] == 2
        assert values["start_date"] == "2026-03-09"

    def test_last_microcycle_rolls_mesocycle(self):
        from neo_analytics.periodization import plan_advance
        micro = {"id": "u2", "microcycle_number": 2, "duration_weeks": 1}
        cmds = plan_advance(self.MESO, micro, "2026-03-16")
        assert [c["op"] for c in cmds] == ["complete_mesocycle", "create_mesocycle", "create_microcycle"]
        assert cmds[1]["values"]["mesocycle_number"] == 2
        assert cmds[1]["values"]["total_microcycles"] == 2
        assert cmds[2]["values"]["microcycle_number"] == 1

    def test_state_without_rows(self):
        from neo_analytics.periodization import NO_PERIODIZATION, periodization_state
        snap = {"mesocycles": [], "microcycles": [], "active_mesocycle": None, "active_microcycle": None}
        assert periodization_state(snap) == NO_PERIODIZATION


# ═══════════════════════════════════════════════════════════════════════
# SERVICE
# ═══════════════════════════════════════════════════════════════════════

class TestInitialize:
    def test_creates_first_units(self):
        from neo_analytics.periodization import MICROCYCLE_ACTIVE
        service, _ = _service()
        created = service.initialize("p1", total_microcycles=3, today="2026-03-02")
        assert created["mesocycle"]["mesocycle_number"] == 1
        assert created["mesocycle"]["total_microcycles"] == 3
        assert created["microcycle"]["microcycle_number"] == 1
        assert created["microcycle"]["mesocycle_id"] == created["mesocycle"]["id"]
        assert service.state("p1") == MICROCYCLE_ACTIVE

    def test_refuses_second_initialization(self):
        from neo_analytics.periodization import PeriodizationError
        service, _ = _service()
        service.initialize("p1", today="2026-03-02")
        with pytest.raises(PeriodizationError):
            service.initialize("p1", today="2026-03-03")

    def test_rolls_back_when_microcycle_insert_fails(self):
        from neo_analytics.periodization import NO_PERIODIZATION, PeriodizationError
        from neo_analytics.repository import InMemoryRepository

        class FailingRepository(InMemoryRepository):
            def insert_microcycle(self, row):
                raise RuntimeError("connection reset")

        repo = FailingRepository()
        service, _ = _service(repo)
        with pytest.raises(PeriodizationError, match="connection reset"):
            service.initialize("p1", today="2026-03-02")
        assert repo.mesocycles == {}
        assert service.state("p1") == NO_PERIODIZATION

    def test_invalid_total(self):
        service, _ = _service()
        with pytest.raises(ValueError):
            service.initialize("p1", total_microcycles=0)


class TestSessionCompletion:
    def test_records_without_active_microcycle(self):
        service, _ = _service()
        result = service.record_session_completion("p1", "s1", [_log(100, 5, 3, "2026-03-02")], 3)
        assert result["completed_session"]["microcycle_id"] is None
        assert result["completed_session"]["fatigue_score"] == pytest.approx(500)
        assert result["finalized"] is None

    def test_advances_when_all_slots_done(self):
        service, repo = _service()
        service.initialize("p1", total_microcycles=4, today="2026-03-02")
        first = service.record_session_completion("p1", "s1", [], 2, today="2026-03-03")
        assert first["finalized"] is None

        second = service.record_session_completion("p1", "s2", [], 2, today="2026-03-05")
        finalized = second["finalized"]
        assert finalized is not None
        assert finalized["next_microcycle"]["microcycle_number"] == 2
        assert finalized["next_mesocycle"] is None

        snap = service.snapshot("p1")
        assert snap["active_microcycle"]["microcycle_number"] == 2
        assert snap["active_microcycle"]["start_date"] == "2026-03-05"
        old = repo.microcycles[finalized["microcycle_id"]]
        assert old["status"] == "completed"
        assert old["end_date"] == "2026-03-05"
        assert old["recommendation"] in ("deload", "block_change", "optimal")

    def test_repeated_session_counts_once(self):
        service, _ = _service()
        service.initialize("p1", today="2026-03-02")
        service.record_session_completion("p1", "s1", [], 2, today="2026-03-03")
        again = service.record_session_completion("p1", "s1", [], 2, today="2026-03-04")
        assert again["finalized"] is None
        assert service.snapshot("p1")["active_microcycle"]["microcycle_number"] == 1

    def test_zero_slots_never_advances(self):
        service, _ = _service()
        service.initialize("p1", today="2026-03-02")
        result = service.record_session_completion("p1", "s1", [], 0, today="2026-03-03")
        assert result["finalized"] is None

    def test_last_microcycle_starts_new_mesocycle(self):
        from neo_analytics.periodization import MICROCYCLE_ACTIVE
        service, repo = _service()
        first = service.initialize("p1", total_microcycles=1, duration_weeks=2, today="2026-03-02")
        result = service.record_session_completion("p1", "s1", [], 1, today="2026-03-15")

        finalized = result["finalized"]
        assert finalized["next_mesocycle"]["mesocycle_number"] == 2
        assert finalized["next_microcycle"]["microcycle_number"] == 1
        assert finalized["next_microcycle"]["mesocycle_id"] == finalized["next_mesocycle"]["id"]
        assert finalized["next_microcycle"]["duration_weeks"] == 2

        old_meso = repo.mesocycles[first["mesocycle"]["id"]]
        assert old_meso["status"] == "completed"
        assert old_meso["end_date"] == "2026-03-15"
        assert service.state("p1") == MICROCYCLE_ACTIVE
        assert service.snapshot("p1")["active_mesocycle"]["mesocycle_number"] == 2


class TestMicrocycleSummary:
    def test_fatigue_trend_and_recommendation(self):
        service, repo = _service()
        service.initialize("p1", today="2026-03-02")

        week1 = [_log(100, 5, 2, "2026-03-03")]
        repo.add_set_logs(week1)
        first = service.record_session_completion("p1", "s1", week1, 1, today="2026-03-08")["finalized"]
        # 500 kg × 1.1; no previous microcycle → trend 0
        assert first["fatigue_index"] == pytest.approx(550)
        assert first["performance_trend"] == 0
        assert first["recommendation"] == "deload"

        week2 = [_log(110, 5, 2, "2026-03-10")]
        repo.add_set_logs(week2)
        second = service.record_session_completion("p1", "s2", week2, 1, today="2026-03-15")["finalized"]
        assert second["fatigue_index"] == pytest.approx(605)
        assert second["performance_trend"] == pytest.approx(10)
        assert second["recommendation"] == "optimal"


class TestIdempotency:
    def test_completed_microcycle_never_advanced_twice(self):
        service, repo = _service()
        service.initialize("p1", today="2026-03-02")
        finalized = service.record_session_completion("p1", "s1", [], 1, today="2026-03-05")["finalized"]
        old_id = finalized["microcycle_id"]

        assert repo.complete_microcycle_if_active(old_id, {}) is False
        assert service.finalize_microcycle("p1", microcycle_id=old_id, today="2026-03-06") is None
        assert len(repo.microcycles) == 2

    def test_concurrent_writer_already_finalized(self):
        from neo_analytics.repository import InMemoryRepository

        class RacingRepository(InMemoryRepository):
            def complete_microcycle_if_active(self, microcycle_id, fields):
                # another device completed it between our read and write
                super().complete_microcycle_if_active(microcycle_id, fields)
                return False

        repo = RacingRepository()
        service, _ = _service(repo)
        service.initialize("p1", today="2026-03-02")
        result = service.record_session_completion("p1", "s1", [], 1, today="2026-03-05")
        assert result["finalized"] is None
        assert len(repo.microcycles) == 1


class TestManualControls:
    def test_complete_microcycle(self):
        service, _ = _service()
        service.initialize("p1", today="2026-03-02")
        finalized = service.complete_microcycle("p1", today="2026-03-04")
        assert finalized["next_microcycle"]["microcycle_number"] == 2

    def test_complete_without_active_microcycle(self):
        from neo_analytics.periodization import PeriodizationError
        service, _ = _service()
        with pytest.raises(PeriodizationError):
            service.complete_microcycle("p1")

    def test_update_total_microcycles(self):
        service, _ = _service()
        service.initialize("p1", total_microcycles=4, today="2026-03-02")
        updated = service.update_total_microcycles("p1", 1)
        assert updated["total_microcycles"] == 1
        finalized = service.complete_microcycle("p1", today="2026-03-09")
        assert finalized["next_mesocycle"]["mesocycle_number"] == 2

    def test_update_total_needs_active_mesocycle(self):
        from neo_analytics.periodization import PeriodizationError
        service, _ = _service()
        with pytest.raises(PeriodizationError):
            service.update_total_microcycles("p1", 3)

    def test_programs_are_independent(self):
        from neo_analytics.periodization import NO_PERIODIZATION
        service, _ = _service()
        service.initialize("p1", today="2026-03-02")
        assert service.state("p2") == NO_PERIODIZATION


# ═══════════════════════════════════════════════════════════════════════
# FAILED ADVANCES & RECOVERY
# ═══════════════════════════════════════════════════════════════════════

def _flaky_repo():
    from neo_analytics.repository import InMemoryRepository

    class FlakyRepository(InMemoryRepository):
        fail_microcycle_inserts = False

        def insert_microcycle(self, row):
            if self.fail_microcycle_inserts:
                raise RuntimeError("insert timed out")
            return super().insert_microcycle(row)

    return FlakyRepository()


class TestAdvanceFailure:
    def test_failed_advance_reopens_microcycle(self):
        from neo_analytics.periodization import MICROCYCLE_ACTIVE, PeriodizationError
        repo = _flaky_repo()
        service, _ = _service(repo)
        service.initialize("p1", today="2026-03-02")

        repo.fail_microcycle_inserts = True
        with pytest.raises(PeriodizationError, match="insert timed out"):
            service.record_session_completion("p1", "s1", [], 1, today="2026-03-05")

        assert service.state("p1") == MICROCYCLE_ACTIVE
        micro = service.snapshot("p1")["active_microcycle"]
        assert micro["microcycle_number"] == 1
        assert micro["end_date"] is None
        assert micro["recommendation"] is None

        repo.fail_microcycle_inserts = False
        finalized = service.complete_microcycle("p1", today="2026-03-06")
        assert finalized["next_microcycle"]["microcycle_number"] == 2
        assert service.state("p1") == MICROCYCLE_ACTIVE

    def test_failed_mesocycle_roll_is_undone(self):
        from neo_analytics.periodization import MICROCYCLE_ACTIVE, PeriodizationError
        repo = _flaky_repo()
        service, _ = _service(repo)
        first = service.initialize("p1", total_microcycles=1, today="2026-03-02")

        repo.fail_microcycle_inserts = True
        with pytest.raises(PeriodizationError):
            service.record_session_completion("p1", "s1", [], 1, today="2026-03-09")

        assert list(repo.mesocycles) == [first["mesocycle"]["id"]]
        assert repo.mesocycles[first["mesocycle"]["id"]]["status"] == "active"
        assert repo.mesocycles[first["mesocycle"]["id"]]["end_date"] is None
        assert service.state("p1") == MICROCYCLE_ACTIVE

        repo.fail_microcycle_inserts = False
        finalized = service.complete_microcycle("p1", today="2026-03-10")
        assert finalized["next_mesocycle"]["mesocycle_number"] == 2

    def test_stalled_microcycle_resumes(self):
        """A closed microcycle without a successor is advanced on the next call."""
        from neo_analytics.periodization import MICROCYCLE_ACTIVE, MICROCYCLE_FINALIZING
        service, repo = _service()
        created = service.initialize("p1", today="2026-03-02")
        repo.complete_microcycle_if_active(created["microcycle"]["id"], {
            "end_date": "2026-03-08", "fatigue_index": 40.0,
            "performance_trend": 0.0, "recommendation": "optimal",
        })
        assert service.state("p1") == MICROCYCLE_FINALIZING

        resumed = service.complete_microcycle("p1", today="2026-03-09")
        assert resumed["microcycle_id"] == created["microcycle"]["id"]
        assert resumed["recommendation"] == "optimal"
        assert resumed["next_microcycle"]["microcycle_number"] == 2
        assert service.state("p1") == MICROCYCLE_ACTIVE
        # already resumed: nothing left to do
        assert service.finalize_microcycle("p1", microcycle_id=created["microcycle"]["id"]) is None

    def test_reinitialize_after_completed_mesocycle(self):
        from neo_analytics.periodization import MESOCYCLE_COMPLETED
        service, repo = _service()
        created = service.initialize("p1", today="2026-03-02")
        repo.update_mesocycle(created["mesocycle"]["id"], {"status": "completed"})
        assert service.state("p1") == MESOCYCLE_COMPLETED

        again = service.initialize("p1", today="2026-04-01")
        assert again["mesocycle"]["mesocycle_number"] == 2

    def test_completion_during_stall_lands_in_next_microcycle(self):
        service, repo = _service()
        created = service.initialize("p1", today="2026-03-02")
        repo.complete_microcycle_if_active(created["microcycle"]["id"], {"end_date": "2026-03-08"})

        result = service.record_session_completion("p1", "s1", [], 3, today="2026-03-09")
        micro = service.snapshot("p1")["active_microcycle"]
        assert micro["microcycle_number"] == 2
        assert result["completed_session"]["microcycle_id"] == micro["id"]


class TestTransitionDay:
    def test_day_belongs_to_microcycle_that_ended(self):
        service, repo = _service()
        service.initialize("p1", today="2026-03-02")

        week1 = [_log(100, 5, 2, "2026-03-03"), _log(100, 5, 2, "2026-03-08")]
        repo.add_set_logs(week1)
        service.record_session_completion("p1", "s1", week1, 1, today="2026-03-08")

        week2 = [_log(110, 5, 2, "2026-03-10")]
        repo.add_set_logs(week2)
        second = service.record_session_completion("p1", "s2", week2, 1, today="2026-03-15")["finalized"]
        # 2026-03-08 counts only toward the first microcycle's average
        assert second["performance_trend"] == pytest.approx(10)
