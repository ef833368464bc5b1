from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Tuple

import pendulum

# Airflow
from airflow.decorators import dag, task
from airflow.exceptions import AirflowException

from db_to_db_sync.alerts import send_discord_alert
from db_to_db_sync.catalog import iter_catalog_jobs
from db_to_db_sync.config import configure_logging
from db_to_db_sync.records import ValidationStatus
from db_to_db_sync_factory import _freeze, _json_sanitize, _load_catalog, _persisted, _registry, _settings

log = logging.getLogger(__name__)

# ----------------------------- helpers -----------------------------


def _group_jobs_by_pair(catalog: Dict[str, Any]) -> Dict[Tuple[str, str], List[Tuple[Dict[str, Any], List[Dict[str, Any]]]]]:
    """Frozen (job, rules) catalog entries grouped by (source_datasource, target_datasource)."""
    grouped: Dict[Tuple[str, str], List[Tuple[Dict[str, Any], List[Dict[str, Any]]]]] = defaultdict(list)
    for job, rules in iter_catalog_jobs(catalog, _settings()):
        grouped[(job.source_datasource, job.target_datasource)].append(_freeze(job, rules))
    return grouped


def summarize_results(payload: Dict[str, Any]) -> str:
    results = payload.get("results", [])
    bad = [r for r in results if r.get("status") != ValidationStatus.CONSISTENT.value]
    if not bad:
        return f"All {len(results)} job(s) consistent."
    return f"{len(bad)}/{len(results)} job(s) inconsistent or failed validation."


# ----------------------------- DAG factory -----------------------------

def _build_compare_dag(source_ds: str, target_ds: str):
    """
    Build a DAG that:
      - validates every catalog job of one datasource pair by bucket checksums
      - aggregates results into a single payload
      - summarizes and alerts on mismatches
    """
    dag_id = f"db_to_db_sync_compare__{source_ds}__{target_ds}"

    @dag(
        dag_id=dag_id,
        schedule="0 10 * * *",
        start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
        catchup=False,
        max_active_runs=1,
        tags=["db2db", "database_comparison", source_ds, target_ds],
        description=f"Bucket checksum comparison for {source_ds} → {target_ds}",
    )
    def _dag():

        @task
        def load_pair_jobs() -> List[Any]:
            items = _pairs.get((source_ds, target_ds), [])
            log.info("Loaded %d job(s) for %s → %s", len(items), source_ds, target_ds)
            return _json_sanitize(items)

        @task
        def run_bucket_compare_for_pair(items: List[Any]) -> Dict[str, Any]:
            registry = _registry()
            results = []
            for jcfg, rcfg in items or []:
                job = _persisted(registry, jcfg, rcfg)
                log.info("▶️ Comparing job %s (%s → %s)", job.name, job.source_label, job.target_label)
                entry = registry.validate_job(job.id)
                results.append({"job": job.name, **entry.as_dict()})
                log.info("✅ Done job %s: %s", job.name, entry.status.value)
            if not results and items:
                raise AirflowException(f"No validation results for {source_ds} → {target_ds}")
            payload = {
                "results": results,
                "is_consistent": all(r["status"] == ValidationStatus.CONSISTENT.value for r in results),
            }
            log.info("📦 Pair payload: %s", {"is_consistent": payload["is_consistent"], "count": len(results)})
            return _json_sanitize(payload)

        @task
        def summarize(payload: Dict[str, Any]) -> str:
            return summarize_results(payload)

        @task(do_xcom_push=False)
        def alert_if_needed(payload: Dict[str, Any], summary: str) -> None:
            if payload.get("is_consistent", True):
                log.info("🎉 Tables are consistent. No alert.")
                return
            lines = []
            for r in payload.get("results", []):
                if r.get("status") == ValidationStatus.CONSISTENT.value:
                    continue
                lines.append(
                    f"- `{r['job']}`: {r['status']} {r['mismatched_bucket_count']}/{r['bucket_count']} "
                    f"{(r.get('message') or '')[:300]}"
                )
            header = f"❗ **Database inconsistency detected**\n`{source_ds}` → `{target_ds}`\n{summary}"
            if send_discord_alert(f"{header}\n" + "\n".join(lines), _settings().discord_webhook):
                log.info("🔔 Alert sent to Discord.")

        items = load_pair_jobs()
        payload = run_bucket_compare_for_pair(items)
        summary = summarize(payload)
        alert_if_needed(payload, summary)

    return _dag()


# ----------------------------- DAG registration -----------------------------

configure_logging(_settings().log_level)
_catalog = _load_catalog()
_pairs = _group_jobs_by_pair(_catalog)

if not _pairs:
    log.warning("No (source_datasource, target_datasource) pairs found in catalog.")
else:
    for source_ds, target_ds in _pairs:
        dag_obj = _build_compare_dag(source_ds, target_ds)
        globals()[dag_obj.dag_id] = dag_obj
