"""
Neo Analytics — Configuration

Every tunable of the performance engine lives in DEFAULT_CONFIG.
Callers pass partial dicts; load_config() deep-merges them over the defaults
and the NEO_* environment overrides.
"""
import copy
import os
import unicodedata

# ── Hosted database (PostgREST) ──────────────────────────────────────
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = os.environ.get("SUPABASE_KEY", "")
NEO_USER_ID = os.environ.get("NEO_USER_ID", "")

ONE_RM_FORMULAS = ("epley", "brzycki")
RECOVERY_GROUPS = ("large", "medium", "fast")

# ═════════════════════════════════════════════════════════════════════
# PERFORMANCE ENGINE DEFAULTS
# ═════════════════════════════════════════════════════════════════════

DEFAULT_CONFIG = {
    "n_baseline_sessions": 8,
    "rir_default": 0,
    "sensitivity_default": 1.0,
    "formula": "epley",
    "alert_thresholds": {
        "improvement_pct": 0.02,
        "stagnation_pct": 0.01,
        "regression_pct": -0.03,
        "systemic_fatigue_max": 80,
    },
    # Decay constant per recovery group, chosen so 100·e^(−k·t) < 5 at t
    "recovery_k": {
        "large": 0.046,   # ~72h
        "medium": 0.063,  # ~48h
        "fast": 0.125,    # ~24h
    },
    "interference_matrix": {
        "strength": {"running": 1.3, "swimming": 1.15, "strength": 1.0},
        "running": {"strength": 1.2, "swimming": 1.1, "running": 1.0},
        "swimming": {"strength": 1.1, "running": 1.05, "swimming": 1.0},
    },
    "running_muscle_map": {
        "quadriceps": 0.40, "calves": 0.15, "glutes": 0.20, "core": 0.10, "hamstrings": 0.15,
    },
    "swimming_muscle_map": {
        "back": 0.35, "shoulders": 0.30, "core": 0.20, "chest": 0.15,
    },
    "running_d_factors": {
        "rodaje": 1.0, "easy": 1.0, "tempo": 1.2, "series_pista": 1.4, "interval": 1.4, "long": 1.1,
    },
}


def _env_overrides() -> dict:
    """Read NEO_* environment variables. Only variables that are set are returned."""
    env = {}
    if os.environ.get("NEO_BASELINE_SESSIONS"):
        env["n_baseline_sessions"] = int(os.environ["NEO_BASELINE_SESSIONS"])
    if os.environ.get("NEO_RIR_DEFAULT"):
        env["rir_default"] = int(os.environ["NEO_RIR_DEFAULT"])
    if os.environ.get("NEO_SENSITIVITY"):
        env["sensitivity_default"] = float(os.environ["NEO_SENSITIVITY"])
    if os.environ.get("NEO_1RM_FORMULA"):
        env["formula"] = os.environ["NEO_1RM_FORMULA"].strip().lower()
    return env


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _is_complete(config: dict) -> bool:
    for key, default in DEFAULT_CONFIG.items():
        if key not in config:
            return False
        if isinstance(default, dict) and not set(default) <= set(config[key]):
            return False
    return True


def resolve_config(config: dict = None) -> dict:
    """Fill a partial engine config from DEFAULT_CONFIG (environment ignored)."""
    if not config:
        return DEFAULT_CONFIG
    if _is_complete(config):
        return config
    return _deep_merge(DEFAULT_CONFIG, config)


def load_config(overrides: dict = None, use_env: bool = True) -> dict:
    """
    Build a full engine config.

    Precedence: explicit overrides > NEO_* environment > DEFAULT_CONFIG.
    Nested sections (alert_thresholds, recovery_k, ...) merge key by key, so
    {"alert_thresholds": {"improvement_pct": 0.05}} keeps the other thresholds.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if use_env:
        config = _deep_merge(config, _env_overrides())
    if overrides:
        config = _deep_merge(config, overrides)

    if config["formula"] not in ONE_RM_FORMULAS:
        raise ValueError(
            f"Unknown 1RM formula {config['formula']!r}; expected one of {ONE_RM_FORMULAS}"
        )
    if config["n_baseline_sessions"] < 1:
        raise ValueError("n_baseline_sessions must be >= 1")
    missing = set(RECOVERY_GROUPS) - set(config["recovery_k"])
    if missing:
        raise ValueError(f"recovery_k is missing groups: {sorted(missing)}")
    return config


# ═════════════════════════════════════════════════════════════════════
# MUSCLE RECOVERY TABLE
#
# Ordered (keyword, group) pairs, accent-free and lower-case.
# Lookup picks the LONGEST keyword contained in the muscle name;
# equal lengths resolve to the earlier entry. No match → "medium".
# ═════════════════════════════════════════════════════════════════════

MUSCLE_RECOVERY_TABLE = [
    # ── Large ────────────────────────────────────────────────────────
    ("cuadriceps", "large"), ("quadriceps", "large"), ("quads", "large"),
    ("isquiotibiales", "large"), ("isquiosurales", "large"), ("hamstrings", "large"), ("isquios", "large"),
    ("dorsal", "large"), ("espalda", "large"), ("back", "large"), ("lats", "large"),
    ("pectoral", "large"), ("pecho", "large"), ("chest", "large"),
    ("gluteo mayor", "large"), ("gluteos", "large"), ("glutes", "large"),
    ("trapecio", "large"), ("traps", "large"),
    ("abductor", "large"), ("aductor", "large"), ("adductor", "large"),
    # ── Medium ───────────────────────────────────────────────────────
    ("biceps", "medium"), ("triceps", "medium"),
    ("gemelos", "medium"), ("calves", "medium"), ("pantorrillas", "medium"),
    ("antebrazo", "medium"), ("forearms", "medium"), ("forearm", "medium"),
    ("lumbar", "medium"), ("lower back", "medium"), ("erector", "medium"),
    # ── Fast ─────────────────────────────────────────────────────────
    ("deltoides", "fast"), ("hombros", "fast"), ("shoulders", "fast"), ("delts", "fast"),
    ("abdominales", "fast"), ("abdomen", "fast"), ("abs", "fast"), ("core", "fast"),
    ("oblicuos", "fast"), ("obliques", "fast"),
]

DEFAULT_RECOVERY_GROUP = "medium"


def normalize_name(name: str) -> str:
    """Lower-case and strip accents: 'Cuádriceps' → 'cuadriceps'."""
    decomposed = unicodedata.normalize("NFD", name or "")
    return "".join(c for c in decomposed if unicodedata.category(c) != "Mn").lower().strip()


# ── Recovery display buckets ─────────────────────────────────────────
# (upper bound exclusive, color, label); 100% falls through to RECOVERED_*
RECOVERY_BUCKETS = [
    (33, "#EF4444", "Fatigued"),
    (67, "#F97316", "Recovering"),
    (100, "#EAB308", "Almost ready"),
]
RECOVERED_COLOR = "#10B981"
RECOVERED_LABEL = "Recovered"

# ── Chart point palette ──────────────────────────────────────────────
POINT_COLORS = {
    "up": "#10B981",
    "down": "#EF4444",
    "flat": "#6B7280",
}
POINT_NEUTRAL_BAND = 0.005

# ── Periodization ────────────────────────────────────────────────────
DEFAULT_TOTAL_MICROCYCLES = 4
DEFAULT_MICROCYCLE_WEEKS = 1
NEUTRAL_RIR = 3                # avg RIR assumed when a session logged none
RIR_FATIGUE_STEP = 0.1         # fatigue multiplier per rep of RIR below neutral
DELOAD_FATIGUE_INDEX = 85
BLOCK_CHANGE_TREND_PCT = -5
