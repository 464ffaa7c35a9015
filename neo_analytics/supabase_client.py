"""
Neo Analytics — Hosted database client (PostgREST / Supabase REST API)

Fetches set logs, cardio logs and the exercise catalog for the analytics
pipeline, and implements the periodization repository port.
"""
import time

import requests

from neo_analytics.config import NEO_USER_ID, SUPABASE_KEY, SUPABASE_URL

PAGE_SIZE = 1000
MAX_RETRIES = 3
RETRY_BACKOFF = 2  # exponential backoff multiplier
TIMEOUT = 15


class SupabaseClient:
    """Thin PostgREST wrapper with retry on 429 / 5xx / timeouts."""

    def __init__(self, url: str = SUPABASE_URL, key: str = SUPABASE_KEY):
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")
        self.base_url = f"{url.rstrip('/')}/rest/v1"
        self.headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _request(self, method: str, table: str, params: dict = None, body=None, headers: dict = None):
        url = f"{self.base_url}/{table}"
        hdrs = {**self.headers, **(headers or {})}
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                r = requests.request(method, url, headers=hdrs, params=params or {}, json=body, timeout=TIMEOUT)
                if r.status_code == 429:
                    wait = RETRY_BACKOFF ** attempt
                    print(f"  ⏳ Database rate limit, retrying in {wait}s (attempt {attempt}/{MAX_RETRIES})")
                    time.sleep(wait)
                    continue
                r.raise_for_status()
                return r.json() if r.content else None
            except requests.exceptions.Timeout:
                if attempt < MAX_RETRIES:
                    print(f"  ⏳ Database timeout, retrying (attempt {attempt}/{MAX_RETRIES})")
                    time.sleep(RETRY_BACKOFF ** attempt)
                else:
                    raise
            except requests.exceptions.HTTPError:
                if attempt < MAX_RETRIES and r.status_code >= 500:
                    print(f"  ⏳ Database {r.status_code}, retrying (attempt {attempt}/{MAX_RETRIES})")
                    time.sleep(RETRY_BACKOFF ** attempt)
                else:
                    raise
        raise requests.exceptions.RetryError(f"{method} {table} failed after {MAX_RETRIES} attempts")

    def select(self, table: str, params: dict) -> list[dict]:
        """GET every page of a filtered query."""
        rows = []
        offset = 0
        while True:
            page = self._request("GET", table, {**params, "limit": PAGE_SIZE, "offset": offset}) or []
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return rows

    def insert(self, table: str, row: dict) -> dict:
        data = self._request("POST", table, body=row)
        return data[0] if isinstance(data, list) else data

    def update(self, table: str, filters: dict, fields: dict) -> list[dict]:
        return self._request("PATCH", table, params=filters, body=fields) or []

    def delete(self, table: str, filters: dict) -> None:
        self._request("DELETE", table, params=filters)


# ═══════════════════════════════════════════════════════════════════════
# ANALYTICS INPUTS
# ═══════════════════════════════════════════════════════════════════════

def fetch_set_logs(client: SupabaseClient, user_id: str = NEO_USER_ID) -> list[dict]:
    return client.select("set_logs", {
        "select": "id,exercise_id,set_number,weight,reps,rir,is_warmup,logged_at",
        "user_id": f"eq.{user_id}",
        "order": "logged_at.asc",
    })


def fetch_cardio_logs(client: SupabaseClient, user_id: str = NEO_USER_ID) -> list[dict]:
    return client.select("cardio_session_logs", {
        "select": "id,activity_type,session_name,total_distance_m,total_duration_seconds,"
                  "avg_pace_seconds_per_unit,completed_at,notes",
        "user_id": f"eq.{user_id}",
        "order": "completed_at.asc",
    })


def fetch_exercise_names(client: SupabaseClient, exercise_ids: list[str]) -> dict:
    """{exercise_id: name} for the given ids."""
    if not exercise_ids:
        return {}
    rows = client.select("exercises", {
        "select": "id,name",
        "id": f"in.({','.join(sorted(exercise_ids))})",
    })
    return {r["id"]: r["name"] for r in rows}


def fetch_muscle_catalog(client: SupabaseClient) -> list[dict]:
    """Catalog entries with a primary muscle: [{name, muscle_id, muscle_name}]."""
    rows = client.select("exercise_catalog", {
        "select": "id,name,primary_muscle_id,muscle_groups:muscle_groups!exercise_catalog_primary_muscle_id_fkey(id,name)",
        "primary_muscle_id": "not.is.null",
    })
    return [
        {"name": r["name"], "muscle_id": r["muscle_groups"]["id"], "muscle_name": r["muscle_groups"]["name"]}
        for r in rows
        if r.get("muscle_groups")
    ]


# ═══════════════════════════════════════════════════════════════════════
# PERIODIZATION REPOSITORY
# ═══════════════════════════════════════════════════════════════════════

class SupabaseRepository:
    """PeriodizationRepository over PostgREST. Inserts are stamped with user_id."""

    def __init__(self, client: SupabaseClient, user_id: str = NEO_USER_ID):
        self.client = client
        self.user_id = user_id

    def list_mesocycles(self, program_id: str) -> list[dict]:
        return self.client.select("mesocycles", {
            "select": "*", "user_id": f"eq.{self.user_id}",
            "program_id": f"eq.{program_id}", "order": "mesocycle_number.asc",
        })

    def list_microcycles(self, program_id: str) -> list[dict]:
        return self.client.select("microcycles", {
            "select": "*", "user_id": f"eq.{self.user_id}",
            "program_id": f"eq.{program_id}", "order": "created_at.asc",
        })

    def insert_mesocycle(self, row: dict) -> dict:
        return self.client.insert("mesocycles", {**row, "user_id": self.user_id})

    def insert_microcycle(self, row: dict) -> dict:
        return self.client.insert("microcycles", {**row, "user_id": self.user_id})

    def update_mesocycle(self, mesocycle_id: str, fields: dict) -> dict:
        rows = self.client.update("mesocycles", {"id": f"eq.{mesocycle_id}"}, fields)
        return rows[0] if rows else {}

    def delete_mesocycle(self, mesocycle_id: str) -> None:
        self.client.delete("mesocycles", {"id": f"eq.{mesocycle_id}"})

    def update_microcycle(self, microcycle_id: str, fields: dict) -> dict:
        rows = self.client.update("microcycles", {"id": f"eq.{microcycle_id}"}, fields)
        return rows[0] if rows else {}

    def complete_microcycle_if_active(self, microcycle_id: str, fields: dict) -> bool:
        # The status filter makes the PATCH a compare-and-set
        rows = self.client.update(
            "microcycles",
            {"id": f"eq.{microcycle_id}", "status": "eq.active"},
            {**fields, "status": "completed"},
        )
        return len(rows) > 0

    def insert_completed_session(self, row: dict) -> dict:
        return self.client.insert("completed_sessions", {**row, "user_id": self.user_id})

    def list_completed_sessions(self, microcycle_id: str) -> list[dict]:
        return self.client.select("completed_sessions", {
            "select": "*", "microcycle_id": f"eq.{microcycle_id}",
        })

    def list_set_logs(self, start_date: str, end_date: str | None) -> list[dict]:
        params = {
            "select": "id,exercise_id,weight,reps,rir,is_warmup,logged_at",
            "user_id": f"eq.{self.user_id}",
            "order": "logged_at.asc",
        }
        if end_date is None:
            params["logged_at"] = f"gte.{start_date}"
        else:
            params["and"] = f"(logged_at.gte.{start_date},logged_at.lte.{end_date}T23:59:59.999999)"
        return self.client.select("set_logs", params)
