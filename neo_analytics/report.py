"""
Neo Analytics — Report Runner
Run manually or from CI: python -m neo_analytics.report [--csv PATH] [--backup]

Without --csv, set logs, cardio logs and the exercise catalog are fetched
from the hosted database (SUPABASE_URL / SUPABASE_KEY / NEO_USER_ID).
"""
import os
import sys
from datetime import datetime

import pandas as pd

from neo_analytics.analytics import (
    all_alerts,
    build_exercise_muscle_map,
    cardio_loads,
    cardio_summary,
    exercise_performance,
    global_summary,
    muscle_fatigue,
    pr_table,
    set_logs_to_dataframe,
    systemic_fatigue,
)
from neo_analytics.config import load_config

SEVERITY_ICONS = {"error": "❌", "warn": "⚠️", "info": "📈"}


def load_csv(path: str) -> dict:
    """
    Set logs from a CSV export. Optional exercise_name / muscle_id /
    muscle_name columns supply names and the muscle map.
    """
    raw = pd.read_csv(path)
    raw = raw.astype(object).where(raw.notna(), None)
    rows = raw.to_dict("records")

    names, muscles = {}, {}
    for r in rows:
        ex_id = r.get("exercise_id")
        if r.get("exercise_name"):
            names[ex_id] = r["exercise_name"]
        if r.get("muscle_id") and r.get("muscle_name"):
            muscles[ex_id] = {"muscle_id": r["muscle_id"], "muscle_name": r["muscle_name"]}
    return {"set_logs": rows, "cardio_logs": [], "exercise_names": names, "exercise_muscles": muscles}


def load_remote() -> dict:
    from neo_analytics.supabase_client import (
        SupabaseClient, fetch_cardio_logs, fetch_exercise_names, fetch_muscle_catalog, fetch_set_logs,
    )

    client = SupabaseClient()
    set_logs = fetch_set_logs(client)
    names = fetch_exercise_names(client, list({r["exercise_id"] for r in set_logs}))
    catalog = fetch_muscle_catalog(client)
    return {
        "set_logs": set_logs,
        "cardio_logs": fetch_cardio_logs(client),
        "exercise_names": names,
        "exercise_muscles": build_exercise_muscle_map(names, catalog),
    }


def run_report(csv_path: str = None, now=None, config: dict = None) -> dict:
    """
    Full report pipeline:
    1. Load set + cardio logs
    2. Session metrics, baselines and alerts per exercise
    3. Muscle recovery map
    """
    config = config or load_config()
    print("🔄 Neo Analytics Report — Starting...")
    print(f"   {datetime.now().isoformat()}")

    # 1. Load
    source = csv_path or "hosted database"
    print(f"\n📥 Loading set logs from {source}...")
    data = load_csv(csv_path) if csv_path else load_remote()
    df = set_logs_to_dataframe(data["set_logs"])
    print(f"   {len(df)} sets across {df['date'].nunique() if not df.empty else 0} training days")

    if df.empty:
        print("   No set logs found. Done.")
        return {"sets": 0, "exercises": 0, "alerts": []}

    cardio = cardio_loads(data["cardio_logs"], config)
    sys_fatigue = systemic_fatigue(cardio)
    if not cardio.empty:
        c = cardio_summary(cardio)
        print(f"   {c['total_sessions']} cardio sessions, systemic fatigue {sys_fatigue:.0f}")

    # 2. Performance
    perf = exercise_performance(df, data["exercise_names"], sys_fatigue, config)
    summary = global_summary(df)

    print(f"\n{'='*50}")
    print("📊 Summary:")
    print(f"   Sessions: {summary.get('total_sessions', 0)}")
    print(f"   Working sets: {summary.get('total_sets', 0)} (+{summary.get('warmup_sets', 0)} warmup)")
    print(f"   Total volume: {summary.get('total_volume', 0):,} kg")

    print("\n📊 Baselines:")
    for p in sorted(perf.values(), key=lambda p: p["exercise_name"]):
        print(f"   {p['exercise_name']}: baseline {p['current_baseline']}kg "
              f"({p['latest_pct_change'] * 100:+.1f}% last session, {len(p['sessions'])} sessions)")

    sessions = pd.concat([p["sessions"] for p in perf.values()], ignore_index=True) if perf else pd.DataFrame()
    prs = pr_table(sessions, data["exercise_names"])
    if not prs.empty:
        print("\n🏆 Top e1RM:")
        for _, row in prs.head(5).iterrows():
            print(f"   {row['exercise']}: {row['best_weight']}kg x{row['best_reps']} (e1RM {row['session_est_1rm']})")

    alerts = all_alerts(perf)
    if alerts:
        print("\n⚠️  Alerts:")
        for a in alerts:
            print(f"   {SEVERITY_ICONS.get(a['severity'], '•')} {a['message']}")

    # 3. Recovery
    recovery = muscle_fatigue(df, data["exercise_muscles"], now, config, cardio)
    if not recovery.empty:
        print("\n💪 Muscle recovery:")
        for _, m in recovery.iterrows():
            eta = f", ~{m['hours_remaining']}h left" if m["hours_remaining"] else ""
            print(f"   {m['muscle_name']}: {m['recovery_pct']}% {m['label']}{eta}")

    return {
        "sets": len(df),
        "exercises": len(perf),
        "alerts": alerts,
        "recovery": recovery,
        "df": df,
    }


def backup_data(df: pd.DataFrame, directory: str = "backup") -> str:
    """Export set logs as CSV for disaster recovery. Saved to backup/ dir."""
    os.makedirs(directory, exist_ok=True)
    today = datetime.now().strftime("%Y-%m-%d")
    path = os.path.join(directory, f"set_logs_{today}.csv")
    df.to_csv(path, index=False)
    print(f"💾 Backup: {len(df)} rows → {path}")
    return path


def _csv_arg(argv: list[str]) -> str | None:
    if "--csv" in argv:
        i = argv.index("--csv")
        if i + 1 < len(argv):
            return argv[i + 1]
        raise ValueError("--csv needs a file path")
    return None


def main(argv: list[str]) -> int:
    try:
        result = run_report(csv_path=_csv_arg(argv))
    except Exception as e:
        print(f"\n❌ Report FAILED: {e}")
        return 1

    if "--backup" in argv and result.get("sets"):
        print("\n💾 Creating data backup...")
        try:
            backup_data(result["df"])
        except OSError as e:
            print(f"⚠️  Backup failed: {e}")
            return 1

    print(f"\nDone. {result['sets']} sets, {result['exercises']} exercises, {len(result['alerts'])} alerts.")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
