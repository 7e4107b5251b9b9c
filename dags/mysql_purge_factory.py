"""
One purge DAG per table listed in the purge catalog.

Catalog (path in Airflow Variable 'PURGE_CATALOG_PATH'):
  {
    "chunk_size": 500,                       # root-level defaults ...
    "sources": [
      {
        "conn_id": "mysql_main",             # ... overridable per source ...
        "max_history": 1000000,
        "tables": [
          {"table": "comments", "index": "comments_on_timestamp",
           "where": "timestamp < NOW() - INTERVAL 90 DAY"},       # ... and per table
          {"table": "books", "dest_table": "book_vault", "copy_columns": ["publisher"],
           "dest_columns": {"publisher": "published_by", "id": "book_id"}}
        ]
      }
    ]
  }
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict

import pendulum
from airflow.decorators import dag, task
from airflow.exceptions import AirflowFailException
from airflow.models import Variable

from mysql_purge.PurgeConfig import PurgeConfig, optional_int
from mysql_purge.alerts import purge_alert_message, send_discord_alert
from mysql_purge.connections import mysql_conn
from mysql_purge.engine import PurgeRunner
from mysql_purge.errors import PurgeConfigError, PurgeStopped

log = logging.getLogger(__name__)

# Options that may be set at root/source level and inherited by every table
_INHERITED = (
    "conn_id", "chunk_size", "sleep", "report_interval", "check_period",
    "max_history", "max_repl_lag", "max_reconnects", "reconnect_backoff", "dry_run",
)

# ------------------------ Catalog helpers (DAG-layer) ------------------------
def _load_catalog() -> Dict[str, Any]:
    json_config_path = Variable.get("PURGE_CATALOG_PATH", default_var="/opt/airflow/dags/purge_catalog.json").strip()
    path = Path(json_config_path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise ValueError(f"Catalog file {path} is empty")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in catalog file {path}: {e}") from e

# ------------------------ Configuration helpers ------------------------
def _cfg_get(root: Dict[str, Any], src: Dict[str, Any], tbl: Dict[str, Any], key: str, default=None):
    return tbl.get(key, src.get(key, root.get(key, default)))

def _create_purge_config(root: Dict[str, Any], src: Dict[str, Any], tbl: Dict[str, Any]) -> PurgeConfig:
    raw = dict(tbl)
    for key in _INHERITED:
        value = _cfg_get(root, src, tbl, key)
        if value is not None:
            raw[key] = value
    for key in ("stop_after", "max_history", "max_repl_lag"):
        if key in raw:
            raw[key] = optional_int(raw[key])
    cfg = PurgeConfig.from_dict(raw)
    cfg.validate()
    return cfg

# ------------------------ DAG creation helpers ------------------------
def _build_single_table_dag(cfg: PurgeConfig):
    mode = "copy" if cfg.copy_mode else "purge"
    dag_id = f"mysql_{mode}_{cfg.table}"

    # Freeze a JSON-safe config dict at parse time (avoid capturing the object itself)
    pcfg: Dict[str, Any] = json.loads(json.dumps(asdict(cfg), default=str))

    @dag(
        dag_id=dag_id,
        schedule="0 3 * * *",
        start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
        catchup=False,
        max_active_runs=1,
        tags=["mysql_purge", mode, cfg.conn_id or "default", cfg.table],
        description=(
            f"Copy {cfg.table} → {cfg.dest_table} in chunks" if cfg.copy_mode
            else f"Purge {cfg.table} in chunks of {cfg.chunk_size}"
        ),
    )
    def purge_dag():

        @task(do_xcom_push=False)
        def dry_run() -> None:
            cfg_obj = PurgeConfig.from_dict(pcfg)
            with mysql_conn(cfg_obj.conn_id or "mysql_default") as conn:
                try:
                    runner = PurgeRunner(cfg_obj, conn, logger=log)
                except PurgeConfigError as e:
                    raise AirflowFailException(str(e)) from e
                log.info("Queries for %s:\n%s", cfg_obj.table, runner.print_queries())

        @task(do_xcom_push=False)
        def purge() -> None:
            cfg_obj = PurgeConfig.from_dict(pcfg)
            if cfg_obj.dry_run:
                log.info("dry_run set for %s; nothing executed.", cfg_obj.table)
                return
            with mysql_conn(cfg_obj.conn_id or "mysql_default") as conn:
                try:
                    runner = PurgeRunner(cfg_obj, conn, logger=log)
                except PurgeConfigError as e:
                    raise AirflowFailException(str(e)) from e
                try:
                    total = runner.execute()
                except PurgeStopped as stop:
                    log.info("Purge of %s stopped at %d rows", cfg_obj.table, stop.stopped_at)
                    send_discord_alert(purge_alert_message(cfg_obj.table, runner.action, stop.stopped_at, "stopped"))
                    return
                except Exception as e:
                    log.error("Purge of %s failed after %d rows", cfg_obj.table, runner.total_processed, exc_info=True)
                    send_discord_alert(
                        purge_alert_message(cfg_obj.table, runner.action, runner.total_processed, "failed", str(e))
                    )
                    raise
                log.info("Purge of %s completed: %d rows %s", cfg_obj.table, total, runner.action)
                send_discord_alert(purge_alert_message(cfg_obj.table, runner.action, total, "completed"))

        dry_run() >> purge()

    return purge_dag()

# ------------------------ Generate all DAGs from catalog ------------------------
_catalog = _load_catalog()
for _src in _catalog.get("sources", []):
    for _tbl in _src.get("tables", []):
        try:
            _cfg = _create_purge_config(_catalog, _src, _tbl)
        except (PurgeConfigError, TypeError, ValueError):
            log.exception("Skipping catalog entry %s", _tbl.get("table"))
            continue
        dag_obj = _build_single_table_dag(_cfg)
        globals()[dag_obj.dag_id] = dag_obj
