"""
Tests for the report runner in CSV mode (no database).
"""
import pandas as pd
import pytest

NOW = pd.Timestamp("2026-03-05T12:00:00Z")


@pytest.fixture
def csv_path(tmp_path):
    rows = [
        {"exercise_id": "ex-bench", "exercise_name": "Bench Press", "muscle_id": "m-chest",
         "muscle_name": "Pectoral", "set_number": 1, "weight": 60, "reps": 10, "rir": None,
         "is_warmup": True, "logged_at": "2026-03-02T09:55:00Z"},
        {"exercise_id": "ex-bench", "exercise_name": "Bench Press", "muscle_id": "m-chest",
         "muscle_name": "Pectoral", "set_number": 2, "weight": 100, "reps": 5, "rir": 2,
         "is_warmup": False, "logged_at": "2026-03-02T10:00:00Z"},
        {"exercise_id": "ex-bench", "exercise_name": "Bench Press", "muscle_id": "m-chest",
         "muscle_name": "Pectoral", "set_number": 1, "weight": 105, "reps": 5, "rir": 2,
         "is_warmup": False, "logged_at": "2026-03-05T10:00:00Z"},
        {"exercise_id": "ex-row", "exercise_name": None, "muscle_id": None,
         "muscle_name": None, "set_number": 1, "weight": 80, "reps": 8, "rir": None,
         "is_warmup": False, "logged_at": "2026-03-04T10:00:00Z"},
    ]
    path = tmp_path / "set_logs.csv"
    pd.DataFrame(rows).to_csv(path, index=False)
    return str(path)


class TestLoadCsv:
    def test_names_and_muscles(self, csv_path):
        from neo_analytics.report import load_csv
        data = load_csv(csv_path)
        assert len(data["set_logs"]) == 4
        assert data["exercise_names"] == {"ex-bench": "Bench Press"}
        assert data["exercise_muscles"] == {"ex-bench": {"muscle_id": "m-chest", "muscle_name": "Pectoral"}}
        assert data["cardio_logs"] == []


class TestRunReport:
    def test_pipeline(self, csv_path, capsys):
        from neo_analytics.config import load_config
        from neo_analytics.report import run_report
        result = run_report(csv_path, now=NOW, config=load_config(use_env=False))
        assert result["sets"] == 4
        assert result["exercises"] == 2
        assert result["alerts"] == []
        assert list(result["recovery"]["muscle_id"]) == ["m-chest"]

        out = capsys.readouterr().out
        assert "Bench Press: baseline" in out
        assert "Pectoral: 54%" in out

    def test_main_exit_codes(self, csv_path, tmp_path):
        from neo_analytics.report import main
        assert main(["--csv", csv_path]) == 0
        assert main(["--csv", str(tmp_path / "missing.csv")]) == 1

    def test_csv_flag_needs_path(self):
        from neo_analytics.report import _csv_arg
        with pytest.raises(ValueError):
            _csv_arg(["--csv"])
        assert _csv_arg(["--backup"]) is None


class TestBackup:
    def test_writes_csv(self, tmp_path):
        from neo_analytics.report import backup_data
        df = pd.DataFrame([{"exercise_id": "ex-bench", "weight": 100, "reps": 5}])
        path = backup_data(df, directory=str(tmp_path / "backup"))
        assert path.endswith(".csv")
        assert len(pd.read_csv(path)) == 1
