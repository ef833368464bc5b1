from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any, Dict, List, Tuple

import pendulum

from airflow.decorators import dag, task
from airflow.exceptions import AirflowFailException
from airflow.models import Variable

from db_to_db_sync.SyncJob import SyncJob
from db_to_db_sync.alerts import send_discord_alert
from db_to_db_sync.catalog import iter_catalog_jobs, load_catalog
from db_to_db_sync.config import Settings, configure_logging, load_settings
from db_to_db_sync.connections import AirflowDatasourceRegistry
from db_to_db_sync.context import build_context
from db_to_db_sync.records import ColumnMappingRule, ValidationStatus
from db_to_db_sync.registry import JobRegistry

log = logging.getLogger(__name__)

# ------------------------ Helpers ------------------------
def _json_sanitize(value: Any) -> Any:
    """Ensure value is JSON-serializable (round-trip via dumps/loads)."""
    return json.loads(json.dumps(value, default=str))


def _settings() -> Settings:
    base = load_settings()
    return dataclasses.replace(
        base,
        catalog_path=Variable.get("JSON_CONFIG_PATH", default_var=base.catalog_path).strip(),
        discord_webhook=Variable.get("DISCORD_WEBHOOK", default_var=base.discord_webhook),
    )


def _registry() -> JobRegistry:
    return JobRegistry(build_context(_settings(), AirflowDatasourceRegistry()))


def _load_catalog() -> Dict[str, Any]:
    return load_catalog(_settings().catalog_path)


def _freeze(job: SyncJob, rules: List[ColumnMappingRule]) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    return _json_sanitize(dataclasses.asdict(job)), _json_sanitize([dataclasses.asdict(r) for r in rules])


def _thaw(jcfg: Dict[str, Any], rcfg: List[Dict[str, Any]]) -> Tuple[SyncJob, List[ColumnMappingRule]]:
    return SyncJob(**jcfg), [ColumnMappingRule(**r) for r in rcfg]


def _persisted(registry: JobRegistry, jcfg: Dict[str, Any], rcfg: List[Dict[str, Any]]) -> SyncJob:
    """Catalog entry upserted into the state store; ids (and so checkpoints) are stable across runs."""
    [job] = registry.apply_catalog([_thaw(jcfg, rcfg)])
    return job


# ------------------------ DAG creation helpers ------------------------
def _build_single_job_dag(job: SyncJob, rules: List[ColumnMappingRule]):
    dag_id = f"db_to_db_sync_{job.name}".replace(":", "_").replace(" ", "_")
    jcfg, rcfg = _freeze(job, rules)

    @dag(
        dag_id=dag_id,
        schedule=job.cron_schedule,
        start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
        catchup=False,
        max_active_runs=16 if job.allow_concurrent else 1,
        is_paused_upon_creation=not job.enabled,
        tags=["db2db", job.group, job.source_datasource, job.target_datasource],
        description=job.description or f"Sync {job.source_label} → {job.target_label}",
    )
    def sync_dag():

        @task(do_xcom_push=False)
        def sync_data() -> None:
            registry = _registry()
            persisted = _persisted(registry, jcfg, rcfg)
            log.info("Syncing job %s (%s)", persisted.id, persisted.name)
            if registry.execute_job(persisted.id):
                return
            summary = registry.last_summary
            if summary is None:
                log.info("Job %s skipped (disabled or already running).", persisted.id)
                return
            raise AirflowFailException(
                f"Sync job {persisted.name} ended {summary.status.value}: {summary.error_message}"
            )

        @task
        def validate_sync() -> Dict[str, Any]:
            registry = _registry()
            persisted = _persisted(registry, jcfg, rcfg)
            if not persisted.validate_after_sync:
                log.info("Validation disabled for %s", persisted.name)
                return {}
            # execute_job already ran the validator after a successful sync
            latest = registry.ctx.store.list_validation_logs(persisted.id, limit=1)
            return _json_sanitize(latest[0].as_dict()) if latest else {}

        @task(do_xcom_push=False)
        def alerting(result: Dict[str, Any]) -> None:
            if not result or result.get("status") == ValidationStatus.CONSISTENT.value:
                log.info("Comparison OK; no alerting.")
                return
            settings = _settings()
            header = f"❗️ **Database inconsistency detected**: `{jcfg['name']}`"
            message = (
                f"{header}\n- Status: {result.get('status')}\n"
                f"- Mismatched buckets: {result.get('mismatched_bucket_count')}/{result.get('bucket_count')}\n"
                f"- Details: {result.get('message') or 'N/A'}"
            )
            send_discord_alert(message, settings.discord_webhook)

        step1 = sync_data()
        result = validate_sync()
        step1 >> result
        alerting(result)

    return sync_dag()


# ------------------------ Generate all DAGs from catalog ------------------------
configure_logging(_settings().log_level)
_catalog = _load_catalog()
_created = 0
for _job, _rules in iter_catalog_jobs(_catalog, _settings()):
    dag_obj = _build_single_job_dag(_job, _rules)
    # Ensure Airflow UI shows this file as the DAG source
    dag_obj.fileloc = __file__
    globals()[dag_obj.dag_id] = dag_obj
    _created += 1
log.info("Created %d sync DAG(s)", _created)
