"""
Neo Analytics — Pandas Analytics Pipeline

Turns flat set-log / cardio-log rows into per-session performance frames,
baselines, alerts and per-muscle recovery. All per-record math is delegated
to engine.py so the DataFrame results match the scalar functions exactly.
"""
import re

import numpy as np
import pandas as pd

from neo_analytics.config import normalize_name, resolve_config
from neo_analytics.engine import (
    aggregate_session_exercise,
    apply_interference,
    calculate_baseline,
    calculate_fatigue,
    calculate_running_load,
    calculate_set_metrics,
    calculate_swimming_load,
    detect_alerts,
    estimate_running_intensity,
    estimate_swimming_intensity,
    infer_session_type,
    point_color,
    point_color_intensity,
)

SET_LOG_COLUMNS = ["id", "exercise_id", "set_number", "weight", "reps", "rir", "is_warmup", "logged_at"]
CARDIO_LOG_COLUMNS = [
    "id", "activity_type", "session_name", "total_distance_m",
    "total_duration_seconds", "avg_pace_seconds_per_unit", "completed_at", "notes",
]
STRENGTH_BASE_LOAD = 50


def set_logs_to_dataframe(rows: list[dict]) -> pd.DataFrame:
    """
    Convert raw set-log rows to a flat DataFrame, one row per set.

    Adds a `date` column (calendar day of logged_at) used as the session key.
    Missing is_warmup is read as a working set.
    """
    df = pd.DataFrame(rows)
    if df.empty:
        return pd.DataFrame(columns=SET_LOG_COLUMNS + ["date"])
    for col in SET_LOG_COLUMNS:
        if col not in df.columns:
            df[col] = None
    df["is_warmup"] = df["is_warmup"].fillna(False).astype(bool)
    df["weight"] = pd.to_numeric(df["weight"], errors="coerce").fillna(0.0)
    df["reps"] = pd.to_numeric(df["reps"], errors="coerce").fillna(0).astype(int)
    df["rir"] = pd.to_numeric(df["rir"], errors="coerce")
    df["logged_at"] = pd.to_datetime(df["logged_at"], utc=True, format="mixed")
    df["date"] = df["logged_at"].dt.tz_localize(None).dt.normalize()
    return df.sort_values(["logged_at", "set_number"], na_position="last").reset_index(drop=True)


def filter_dates(df: pd.DataFrame, start=None, end=None) -> pd.DataFrame:
    """Keep rows whose `date` falls in [start, end] (either bound optional)."""
    if df.empty:
        return df
    mask = pd.Series(True, index=df.index)
    if start is not None:
        mask &= df["date"] >= pd.Timestamp(start).normalize()
    if end is not None:
        mask &= df["date"] <= pd.Timestamp(end).normalize()
    return df[mask]


def add_set_metrics(df: pd.DataFrame, config: dict = None) -> pd.DataFrame:
    """Attach rtf / est_1rm_set / effective_volume to working sets (NaN on warmups)."""
    if df.empty:
        return df
    df = df.copy()
    df["rtf"] = np.nan
    df["est_1rm_set"] = np.nan
    df["effective_volume"] = np.nan
    working = df[~df["is_warmup"]]
    for idx, row in working.iterrows():
        m = calculate_set_metrics(row["weight"], row["reps"], row["rir"], config)
        df.loc[idx, ["rtf", "est_1rm_set", "effective_volume"]] = [m["rtf"], m["est_1rm_set"], m["effective_volume"]]
    return df


# ═══════════════════════════════════════════════════════════════════════
# 1. SESSIONS & BASELINES
# ═══════════════════════════════════════════════════════════════════════

def session_metrics(df: pd.DataFrame, config: dict = None) -> pd.DataFrame:
    """
    One row per (exercise, calendar day) with session aggregates and the
    rolling baseline computed from that exercise's earlier sessions.
    """
    config = resolve_config(config)
    if df.empty:
        return pd.DataFrame()
    working = df[~df["is_warmup"]]
    if working.empty:
        return pd.DataFrame()

    rows = []
    for exercise_id, ex_df in working.groupby("exercise_id", sort=False):
        history = []
        for date, day_df in ex_df.groupby("date"):
            sets = day_df[["weight", "reps", "rir", "is_warmup"]].to_dict("records")
            agg = aggregate_session_exercise(exercise_id, date, sets, config)
            base = calculate_baseline(agg["session_est_1rm"], history, config)
            history.append(agg["session_est_1rm"])
            # best_rir is the RIR of the day's first working set, not of the top set
            first_rir = day_df["rir"].iloc[0]
            rows.append({
                "exercise_id": exercise_id,
                "date": date,
                "n_sets": len(agg["sets"]),
                "session_est_1rm": agg["session_est_1rm"],
                "session_effective_volume": agg["session_effective_volume"],
                "best_weight": agg["best_weight"],
                "best_reps": agg["best_reps"],
                "best_rir": None if pd.isna(first_rir) else first_rir,
                "rir_estimated": bool(day_df["rir"].isna().any()),
                "total_reps": agg["total_reps"],
                "total_weight": agg["total_weight"],
                "volume_kg": float((day_df["weight"] * day_df["reps"]).sum()),
                **base,
            })

    sessions = pd.DataFrame(rows)
    sessions["color"] = sessions["pct_change"].map(point_color)
    return sessions.sort_values(["exercise_id", "date"]).reset_index(drop=True)


def exercise_performance(
    df: pd.DataFrame,
    exercise_names: dict = None,
    systemic_fatigue: float = 0,
    config: dict = None,
) -> dict:
    """
    Full per-exercise picture: session frame, latest baseline, alerts, totals.

    Returns {exercise_id: {...}}; exercises without working sets are absent.
    """
    config = resolve_config(config)
    exercise_names = exercise_names or {}
    sessions = session_metrics(df, config)
    if sessions.empty:
        return {}

    result = {}
    for exercise_id, ex_sessions in sessions.groupby("exercise_id", sort=False):
        ex_sessions = ex_sessions.reset_index(drop=True)
        name = exercise_names.get(exercise_id, "Exercise")
        last = ex_sessions.iloc[-1]
        result[exercise_id] = {
            "exercise_id": exercise_id,
            "exercise_name": name,
            "sessions": ex_sessions,
            "current_baseline": float(last["baseline"]),
            "latest_pct_change": float(last["pct_change"]),
            "alerts": detect_alerts(
                exercise_id, name, ex_sessions["session_est_1rm"].tolist(),
                min(100, systemic_fatigue), config,
            ),
            "total_sets": int(ex_sessions["n_sets"].sum()),
            "total_reps": int(ex_sessions["total_reps"].sum()),
            "total_effective_volume": round(float(ex_sessions["session_effective_volume"].sum()), 2),
            "best_est_1rm": float(ex_sessions["session_est_1rm"].max()),
            "best_weight": float(ex_sessions["best_weight"].max()),
            "last_date": last["date"],
        }
    return result


def all_alerts(performances: dict) -> list[dict]:
    """Flatten alerts across exercises, most severe first."""
    order = {"error": 0, "warn": 1, "info": 2}
    alerts = [a for perf in performances.values() for a in perf["alerts"]]
    return sorted(alerts, key=lambda a: order.get(a["severity"], 3))


def chart_points(df: pd.DataFrame, exercise_id: str, config: dict = None) -> list[dict]:
    """Per-session tooltip records for one exercise's trend chart."""
    sessions = session_metrics(df, config)
    if sessions.empty:
        return []
    ex = sessions[sessions["exercise_id"] == exercise_id]
    return [
        {
            "date": row["date"].strftime("%Y-%m-%d"),
            "best_weight": row["best_weight"],
            "best_reps": int(row["best_reps"]),
            "best_rir": row["best_rir"],
            "est_1rm": row["session_est_1rm"],
            "session_effective_volume": row["session_effective_volume"],
            "baseline": row["baseline"],
            "pct_change": row["pct_change"],
            "adjusted_pct": row["adjusted_pct"],
            "rir_estimated": row["rir_estimated"],
            "color": row["color"],
            "color_intensity": point_color_intensity(row["pct_change"]),
        }
        for _, row in ex.iterrows()
    ]


def pr_table(sessions: pd.DataFrame, exercise_names: dict = None) -> pd.DataFrame:
    """Best session e1RM per exercise, strongest first."""
    if sessions.empty:
        return pd.DataFrame()
    weighted = sessions[sessions["session_est_1rm"] > 0]
    if weighted.empty:
        return pd.DataFrame()
    idx = weighted.groupby("exercise_id")["session_est_1rm"].idxmax()
    prs = weighted.loc[idx, ["exercise_id", "best_weight", "best_reps", "session_est_1rm", "date"]].copy()
    prs["exercise"] = prs["exercise_id"].map(exercise_names or {}).fillna(prs["exercise_id"])
    prs = prs.sort_values("session_est_1rm", ascending=False).reset_index(drop=True)
    prs.index = prs.index + 1
    return prs


def global_summary(df: pd.DataFrame) -> dict:
    if df.empty:
        return {}
    working = df[~df["is_warmup"]]
    return {
        "total_sessions": int(working["date"].nunique()),
        "total_sets": len(working),
        "warmup_sets": int(df["is_warmup"].sum()),
        "total_reps": int(working["reps"].sum()),
        "total_volume": int((working["weight"] * working["reps"]).sum()),
        "exercises": int(working["exercise_id"].nunique()),
        "date_first": df["date"].min(),
        "date_last": df["date"].max(),
    }


# ═══════════════════════════════════════════════════════════════════════
# 2. CARDIO LOAD
# ═══════════════════════════════════════════════════════════════════════

def cardio_loads(rows: list[dict], config: dict = None, start=None, end=None) -> pd.DataFrame:
    """
    Convert running / swimming session logs to load rows.

    Pace is taken as sec/km for running and sec/100m for swimming.
    """
    config = resolve_config(config)
    out = []
    for s in rows:
        ts = pd.Timestamp(s["completed_at"])
        if ts.tzinfo is not None:
            ts = ts.tz_convert("UTC").tz_localize(None)
        date = ts.normalize()
        if start is not None and date < pd.Timestamp(start):
            continue
        if end is not None and date > pd.Timestamp(end):
            continue
        duration_min = (s.get("total_duration_seconds") or 0) / 60
        pace = s.get("avg_pace_seconds_per_unit")
        activity = s["activity_type"]

        if activity == "running":
            intensity = estimate_running_intensity(pace, duration_min)
            session_type = infer_session_type(s.get("session_name"), s.get("notes"))
            load = calculate_running_load(duration_min, intensity, session_type, config)
            trimp, total = load["trimp"], load["running_load"]
        elif activity == "swimming":
            intensity = estimate_swimming_intensity(pace, duration_min)
            session_type = "freestyle"
            load = calculate_swimming_load(duration_min, intensity, 1.0, config)
            trimp, total = None, load["swim_load"]
        else:
            continue

        out.append({
            "session_id": s.get("id"),
            "activity_type": activity,
            "date": date,
            "duration_min": round(duration_min, 2),
            "distance_m": s.get("total_distance_m") or 0,
            "intensity_rel": intensity,
            "session_type": session_type,
            "trimp": trimp,
            "total_load": total,
            "muscle_loads": load["muscle_loads"],
        })
    return pd.DataFrame(out)


def systemic_fatigue(cardio: pd.DataFrame) -> float:
    """Mean cardio load per session, capped at 100. No cardio → 0."""
    if cardio is None or cardio.empty:
        return 0.0
    return float(min(100.0, cardio["total_load"].mean()))


def cardio_summary(cardio: pd.DataFrame) -> dict:
    def _block(part: pd.DataFrame) -> dict:
        return {
            "sessions": len(part),
            "total_load": round(float(part["total_load"].sum()), 2) if not part.empty else 0,
            "total_minutes": round(float(part["duration_min"].sum()), 1) if not part.empty else 0,
            "total_distance_m": float(part["distance_m"].sum()) if not part.empty else 0,
            "avg_intensity": round(float(part["intensity_rel"].mean()), 2) if not part.empty else 0,
        }

    if cardio is None or cardio.empty:
        empty = _block(pd.DataFrame())
        return {"running": empty, "swimming": empty, "total_sessions": 0, "total_load": 0}
    return {
        "running": _block(cardio[cardio["activity_type"] == "running"]),
        "swimming": _block(cardio[cardio["activity_type"] == "swimming"]),
        "total_sessions": len(cardio),
        "total_load": round(float(cardio["total_load"].sum()), 2),
    }


# ═══════════════════════════════════════════════════════════════════════
# 3. MUSCLE RECOVERY MAP
# ═══════════════════════════════════════════════════════════════════════

def _words(name: str) -> list[str]:
    text = re.sub(r"[^a-z0-9\s]", "", normalize_name(name))
    return [w for w in text.split() if len(w) >= 3]


def build_exercise_muscle_map(exercise_names: dict, catalog: list[dict]) -> dict:
    """
    Map exercise_id → {"muscle_id", "muscle_name"} by fuzzy name match
    against catalog entries ({name, muscle_id, muscle_name}).

    Score = exercise words (≥3 chars) that overlap a catalog word by
    substring either way. Highest score wins, first entry on ties;
    exercises scoring 0 are left unmapped.
    """
    entries = [(e, _words(e["name"])) for e in catalog]
    mapping = {}
    for exercise_id, name in exercise_names.items():
        ex_words = _words(name)
        best, best_score = None, 0
        for entry, cat_words in entries:
            score = sum(1 for w in ex_words if any(cw in w or w in cw for cw in cat_words))
            if score > best_score:
                best, best_score = entry, score
        if best is not None:
            mapping[exercise_id] = {"muscle_id": best["muscle_id"], "muscle_name": best["muscle_name"]}
    return mapping


def _match_muscle(cardio_muscle: str, strength_muscles: dict) -> str | None:
    """Exact normalized name first, then substring either way."""
    n = normalize_name(cardio_muscle)
    by_name = {normalize_name(m["muscle_name"]): mid for mid, m in strength_muscles.items()}
    if n in by_name:
        return by_name[n]
    for key, mid in by_name.items():
        if key in n or n in key:
            return mid
    return None


def muscle_fatigue(
    df: pd.DataFrame,
    exercise_muscles: dict,
    now=None,
    config: dict = None,
    cardio: pd.DataFrame = None,
) -> pd.DataFrame:
    """
    Recovery state per muscle.

    exercise_muscles maps exercise_id → {"muscle_id", "muscle_name"}.
    A muscle's clock starts at its most recent working set. Cardio loads
    raise the base load of matching muscles (with interference) and add
    cardio-only muscles that strength work never touched.
    """
    config = resolve_config(config)
    muscles = {}

    working = df[~df["is_warmup"]] if not df.empty else df
    for exercise_id, ex_df in (working.groupby("exercise_id") if not working.empty else []):
        mapping = exercise_muscles.get(exercise_id)
        if not mapping:
            continue
        mid = mapping["muscle_id"]
        entry = muscles.setdefault(mid, {
            "muscle_id": mid, "muscle_name": mapping["muscle_name"],
            "total_sets": 0, "total_effective_volume": 0.0, "cardio_load": 0.0,
            "last_trained": None, "exercises": [],
        })
        entry["total_sets"] += len(ex_df)
        entry["total_effective_volume"] += sum(
            calculate_set_metrics(r["weight"], r["reps"], r["rir"], config)["effective_volume"]
            for _, r in ex_df.iterrows()
        )
        entry["exercises"].append(exercise_id)
        last = ex_df["logged_at"].max()
        if entry["last_trained"] is None or last > entry["last_trained"]:
            entry["last_trained"] = last

    for entry in muscles.values():
        entry["fatigue"] = calculate_fatigue(
            entry["muscle_name"], entry["last_trained"], STRENGTH_BASE_LOAD, config, now, entry["muscle_id"],
        )

    if cardio is not None and not cardio.empty:
        overlapping = sorted(cardio["activity_type"].unique().tolist())
        accum = {}
        for _, c in cardio.iterrows():
            for muscle, load in c["muscle_loads"].items():
                a = accum.setdefault(muscle, {"load": 0.0, "last_date": c["date"]})
                a["load"] += load
                a["last_date"] = max(a["last_date"], c["date"])

        for muscle, a in accum.items():
            mid = _match_muscle(muscle, muscles)
            if mid is not None:
                entry = muscles[mid]
                entry["cardio_load"] += a["load"]
                adjusted = apply_interference(STRENGTH_BASE_LOAD + a["load"] * 0.5, "strength", overlapping, config)
                candidate = calculate_fatigue(
                    entry["muscle_name"], a["last_date"], min(100, adjusted), config, now, mid,
                )
                current = entry["fatigue"]
                if current["hours_since_last"] is None or candidate["hours_since_last"] < current["hours_since_last"]:
                    entry["fatigue"] = candidate
            else:
                vid = f"cardio_{muscle}"
                muscles[vid] = {
                    "muscle_id": vid, "muscle_name": muscle.capitalize(),
                    "total_sets": 0, "total_effective_volume": 0.0, "cardio_load": a["load"],
                    "last_trained": a["last_date"], "exercises": [],
                    "fatigue": calculate_fatigue(muscle, a["last_date"], min(100, a["load"]), config, now, vid),
                }

    rows = []
    for entry in muscles.values():
        f = entry["fatigue"]
        rows.append({
            "muscle_id": entry["muscle_id"],
            "muscle_name": entry["muscle_name"],
            "total_sets": entry["total_sets"],
            "total_effective_volume": round(entry["total_effective_volume"], 2),
            "cardio_load": round(entry["cardio_load"], 2),
            "exercises": entry["exercises"],
            "recovery_group": f["recovery_group"],
            "hours_since_last": f["hours_since_last"],
            "current_fatigue": f["current_fatigue"],
            "recovery_pct": f["recovery_pct"],
            "hours_remaining": f["hours_remaining"],
            "color": f["color"],
            "label": f["label"],
        })
    result = pd.DataFrame(rows)
    if not result.empty:
        result = result.sort_values(["recovery_pct", "muscle_name"]).reset_index(drop=True)
    return result
