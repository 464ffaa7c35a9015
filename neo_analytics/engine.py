"""
Neo Analytics — Performance Engine

Pure per-record calculations. Nothing here touches I/O or shared state;
the only clock dependence is calculate_fatigue(), which takes `now`.

Formulas (Epley default):
    RTF              = reps + rir
    est_1rm_set      = weight * (1 + RTF / 30)
    effective_volume = est_1rm_set * reps / max(1, RTF)
    session_est_1rm  = MAX(est_1rm_set) over the session's working sets
    baseline         = MAX(session_est_1rm) over the last N sessions
    pct_change       = (session_est_1rm - baseline) / baseline
"""
import math
from datetime import datetime

import numpy as np
import pandas as pd

from neo_analytics.config import (
    DEFAULT_RECOVERY_GROUP,
    MUSCLE_RECOVERY_TABLE,
    POINT_COLORS,
    POINT_NEUTRAL_BAND,
    RECOVERED_COLOR,
    RECOVERED_LABEL,
    RECOVERY_BUCKETS,
    normalize_name,
    resolve_config,
)

# Fatigue level at which a muscle counts as recovered (95%)
RECOVERED_FATIGUE = 5


def _round2(x: float) -> float:
    return round(float(x), 2)


def _round4(x: float) -> float:
    return round(float(x), 4)


# ═══════════════════════════════════════════════════════════════════════
# 1. SET METRICS
# ═══════════════════════════════════════════════════════════════════════

def estimate_1rm(weight: float, rtf: float, formula: str = "epley") -> float:
    """Estimated one-rep max for `weight` lifted with `rtf` reps to failure."""
    if formula == "brzycki":
        # Brzycki diverges at 37 reps; past that the raw weight is the estimate
        if rtf >= 37:
            return float(weight)
        return weight * 36 / (37 - rtf)
    return weight * (1 + rtf / 30)


def calculate_set_metrics(weight: float, reps: int, rir: int | None, config: dict = None) -> dict:
    """
    Metrics for one working set. Warmup filtering is the caller's job.

    Raises ValueError on negative weight or reps.
    """
    config = resolve_config(config)
    if weight is None or weight < 0:
        raise ValueError(f"weight must be >= 0, got {weight!r}")
    if reps is None or reps < 0:
        raise ValueError(f"reps must be >= 0, got {reps!r}")

    effective_rir = config["rir_default"] if rir is None or pd.isna(rir) else rir
    rtf = reps + effective_rir
    est_1rm = estimate_1rm(weight, rtf, config["formula"])
    effective_volume = est_1rm * (reps / max(1, rtf))

    return {
        "weight_kg": float(weight),
        "reps": int(reps),
        "rir": effective_rir,
        "rtf": rtf,
        "est_1rm_set": _round2(est_1rm),
        "effective_volume": _round2(effective_volume),
    }


# ═══════════════════════════════════════════════════════════════════════
# 2. SESSION AGGREGATION
# ═══════════════════════════════════════════════════════════════════════

def aggregate_session_exercise(
    exercise_id: str,
    session_date: str,
    sets: list[dict],
    config: dict = None,
) -> dict:
    """
    Combine one exercise's sets from one calendar day.

    `sets` are dicts with weight, reps, rir and optional is_warmup.
    Warmups are dropped; with no working sets every aggregate is 0.
    """
    working = [s for s in sets if not s.get("is_warmup")]
    metrics = [calculate_set_metrics(s["weight"], s["reps"], s.get("rir"), config) for s in working]

    return {
        "exercise_id": exercise_id,
        "session_date": session_date,
        "sets": metrics,
        "session_est_1rm": max((m["est_1rm_set"] for m in metrics), default=0),
        "session_effective_volume": _round2(sum(m["effective_volume"] for m in metrics)),
        "best_weight": max((m["weight_kg"] for m in metrics), default=0),
        "best_reps": max((m["reps"] for m in metrics), default=0),
        "total_reps": sum(m["reps"] for m in metrics),
        "total_weight": _round2(sum(m["weight_kg"] for m in metrics)),
    }


# ═══════════════════════════════════════════════════════════════════════
# 3. BASELINE
# ═══════════════════════════════════════════════════════════════════════

def calculate_baseline(
    current_est_1rm: float,
    history: list[float],
    config: dict = None,
    sensitivity: float = None,
) -> dict:
    """
    Rolling-max baseline over the last N prior sessions (oldest → newest).

    Empty history makes the current session its own baseline (pct_change 0).
    """
    config = resolve_config(config)
    if sensitivity is None:
        sensitivity = config["sensitivity_default"]

    window = list(history)[-config["n_baseline_sessions"]:]
    baseline = max(window) if window else current_est_1rm
    pct_change = (current_est_1rm - baseline) / baseline if baseline > 0 else 0.0

    return {
        "baseline": _round2(baseline),
        "pct_change": _round4(pct_change),
        "adjusted_pct": _round4(pct_change * sensitivity),
    }


def point_color(pct_change: float) -> str:
    if pct_change > POINT_NEUTRAL_BAND:
        return POINT_COLORS["up"]
    if pct_change < -POINT_NEUTRAL_BAND:
        return POINT_COLORS["down"]
    return POINT_COLORS["flat"]


def point_color_intensity(pct_change: float) -> float:
    """Opacity hint for chart points: ±10% change saturates at 1."""
    return min(1.0, abs(pct_change) * 10)


# ═══════════════════════════════════════════════════════════════════════
# 4. FATIGUE / RECOVERY
# ═══════════════════════════════════════════════════════════════════════

def get_recovery_group(muscle_name: str) -> str:
    """Longest keyword contained in the name wins; ties go to table order."""
    name = normalize_name(muscle_name)
    best_group, best_len = DEFAULT_RECOVERY_GROUP, 0
    for keyword, group in MUSCLE_RECOVERY_TABLE:
        if keyword in name and len(keyword) > best_len:
            best_group, best_len = group, len(keyword)
    return best_group


def recovery_display(recovery_pct: float) -> tuple[str, str]:
    """(color, label) for a recovery percentage."""
    for upper, color, label in RECOVERY_BUCKETS:
        if recovery_pct < upper:
            return color, label
    return RECOVERED_COLOR, RECOVERED_LABEL


def _to_utc(ts) -> pd.Timestamp:
    ts = pd.Timestamp(ts)
    return ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")


def hours_between(start, end) -> float:
    return (_to_utc(end) - _to_utc(start)).total_seconds() / 3600


def calculate_fatigue(
    muscle_name: str,
    last_trained,
    load_amount: float = 50,
    config: dict = None,
    now: datetime = None,
    muscle_id: str = "",
) -> dict:
    """
    Recovery state of a muscle by exponential decay since it was last trained.

    fatigue(t) = min(100, load) * e^(-k t), k from the muscle's recovery group.
    Naive timestamps are read as UTC. Never trained → fully recovered.
    """
    config = resolve_config(config)
    group = get_recovery_group(muscle_name)
    k = config["recovery_k"][group]

    if last_trained is None or (not isinstance(last_trained, str) and pd.isna(last_trained)):
        return {
            "muscle_id": muscle_id, "muscle_name": muscle_name, "recovery_group": group,
            "hours_since_last": None, "current_fatigue": 0.0, "recovery_pct": 100,
            "hours_remaining": 0, "color": RECOVERED_COLOR, "label": RECOVERED_LABEL,
        }

    now = now if now is not None else pd.Timestamp.now(tz="UTC")
    hours_ago = max(0.0, hours_between(last_trained, now))

    initial_fatigue = min(100.0, float(load_amount))
    current_fatigue = initial_fatigue * math.exp(-k * hours_ago)
    recovery_pct = int(np.clip(round(100 - current_fatigue), 0, 100))

    if current_fatigue > RECOVERED_FATIGUE:
        hours_remaining = max(0, math.ceil(math.log(initial_fatigue / RECOVERED_FATIGUE) / k - hours_ago))
    else:
        hours_remaining = 0

    color, label = recovery_display(recovery_pct)
    return {
        "muscle_id": muscle_id, "muscle_name": muscle_name, "recovery_group": group,
        "hours_since_last": round(hours_ago), "current_fatigue": _round2(current_fatigue),
        "recovery_pct": recovery_pct, "hours_remaining": hours_remaining,
        "color": color, "label": label,
    }


# ═══════════════════════════════════════════════════════════════════════
# 5. CARDIO LOAD & INTERFERENCE
# ═══════════════════════════════════════════════════════════════════════

def calculate_running_load(
    duration_min: float,
    intensity_rel: float,
    session_type: str,
    config: dict = None,
) -> dict:
    """TRIMP-style running load, split across the running muscle map."""
    config = resolve_config(config)
    trimp = duration_min * intensity_rel
    d_factor = config["running_d_factors"].get(session_type, 1.0)
    running_load = _round2(trimp * d_factor)
    muscle_loads = {m: _round2(running_load * pct) for m, pct in config["running_muscle_map"].items()}
    return {"trimp": _round2(trimp), "running_load": running_load, "muscle_loads": muscle_loads}


def calculate_swimming_load(
    total_min: float,
    intensity_rel: float,
    stroke_factor: float = 1.0,
    config: dict = None,
) -> dict:
    config = resolve_config(config)
    swim_load = _round2(total_min * intensity_rel * stroke_factor)
    muscle_loads = {m: _round2(swim_load * pct) for m, pct in config["swimming_muscle_map"].items()}
    return {"swim_load": swim_load, "muscle_loads": muscle_loads}


def apply_interference(
    base_load: float,
    source_modality: str,
    overlapping: list[str],
    config: dict = None,
) -> float:
    """Scale a load by the strongest cross-modality interference factor."""
    config = resolve_config(config)
    row = config["interference_matrix"].get(source_modality, {})
    factor = max([1.0] + [row.get(m, 1.0) for m in overlapping])
    return _round2(base_load * factor)


def estimate_running_intensity(pace_sec_per_km: float | None, duration_min: float) -> float:
    """Relative intensity 0.3–1.0 from pace (3:00/km ≈ 1.0, 7:00/km ≈ 0.3)."""
    if not pace_sec_per_km or pace_sec_per_km <= 0:
        if duration_min > 60:
            return 0.55
        if duration_min > 40:
            return 0.65
        return 0.70
    pace_min = pace_sec_per_km / 60
    return round(float(np.clip(1.2 - pace_min * 0.13, 0.3, 1.0)), 2)


def estimate_swimming_intensity(pace_sec_per_100m: float | None, duration_min: float) -> float:
    """Relative intensity 0.3–1.0 from pace (1:00/100m ≈ 1.0, 3:00/100m ≈ 0.3)."""
    if not pace_sec_per_100m or pace_sec_per_100m <= 0:
        if duration_min > 45:
            return 0.55
        if duration_min > 30:
            return 0.65
        return 0.70
    pace_min = pace_sec_per_100m / 60
    return round(float(np.clip(1.3 - pace_min * 0.35, 0.3, 1.0)), 2)


def infer_session_type(name: str | None, notes: str | None) -> str:
    text = normalize_name(f"{name or ''} {notes or ''}")
    if "serie" in text or "interval" in text:
        return "series_pista"
    if "tempo" in text or "umbral" in text:
        return "tempo"
    if "long" in text or "largo" in text or "tirada" in text:
        return "long"
    if "easy" in text or "facil" in text or "suave" in text:
        return "easy"
    return "rodaje"


# ═══════════════════════════════════════════════════════════════════════
# 6. ALERTS
# ═══════════════════════════════════════════════════════════════════════

def _alert(kind: str, severity: str, exercise_id: str, exercise_name: str,
           message: str, pct_change: float = None, metadata: dict = None) -> dict:
    return {
        "type": kind, "severity": severity,
        "exercise_id": exercise_id, "exercise_name": exercise_name,
        "message": message, "pct_change": pct_change, "metadata": metadata or {},
    }


def detect_alerts(
    exercise_id: str,
    exercise_name: str,
    recent_sessions: list[float],
    systemic_fatigue: float,
    config: dict = None,
) -> list[dict]:
    """
    Scan session e1RMs (newest last) for improvement, stagnation, regression
    and overtraining. Fewer than 4 sessions → no alerts. Every qualifying
    alert is returned.
    """
    config = resolve_config(config)
    th = config["alert_thresholds"]
    alerts = []
    values = [float(v) for v in recent_sessions]
    n = len(values)
    if n < 4:
        return alerts

    # Improvement / stagnation: last 3 vs the 3 before
    if n >= 6:
        avg_last = float(np.mean(values[-3:]))
        avg_prev = float(np.mean(values[-6:-3]))
        change = (avg_last - avg_prev) / avg_prev if avg_prev > 0 else 0.0

        if change > th["improvement_pct"]:
            alerts.append(_alert(
                "improvement", "info", exercise_id, exercise_name,
                f"Significant improvement in {exercise_name}: +{change * 100:.1f}%", change,
            ))
        if abs(change) < th["stagnation_pct"] and n >= 8:
            alerts.append(_alert(
                "stagnation", "warn", exercise_id, exercise_name,
                f"Possible plateau in {exercise_name}", change,
            ))

    # Regression: last two sessions both below the session three back
    base = values[-3]
    if base > 0:
        chg1 = (values[-2] - base) / base
        chg2 = (values[-1] - base) / base
        if chg1 < th["regression_pct"] and chg2 < th["regression_pct"]:
            alerts.append(_alert(
                "regression", "warn", exercise_id, exercise_name,
                f"Regression detected in {exercise_name}", chg2,
            ))

    # Overtraining: high systemic fatigue + falling performance
    if systemic_fatigue > th["systemic_fatigue_max"]:
        prev = values[-2]
        last_change = (values[-1] - prev) / prev if prev > 0 else 0.0
        if last_change < 0:
            alerts.append(_alert(
                "overtraining", "error", exercise_id, exercise_name,
                "Possible overtraining: high systemic fatigue with declining performance",
                last_change,
                {"systemic_fatigue": systemic_fatigue, "last_change": last_change},
            ))

    return alerts
