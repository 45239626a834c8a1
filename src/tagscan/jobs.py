"""Job functions executed by rq workers.

run_scan, on_scan_failure, and the log handler that mirrors job logging
into the ``scan_logs`` table.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3

from tagscan.db import add_scan_log, connect, get_project_by_id
from tagscan.queue import publish_event
from tagscan.scanning import initiate_scan

log = logging.getLogger(__name__)


class ScanDBHandler(logging.Handler):
    """Logging handler that persists log records to the scan_logs table."""

    def __init__(self, conn: sqlite3.Connection, project_id: str, *, source: str = "scan"):
        super().__init__()
        self.conn = conn
        self.project_id = project_id
        self.source = source

    def emit(self, record: logging.LogRecord) -> None:
        try:
            add_scan_log(
                self.conn,
                project_id=self.project_id,
                level=record.levelname,
                message=self.format(record),
                source=self.source,
            )
        except Exception:
            self.handleError(record)


async def _drain_scan(
    conn: sqlite3.Connection, project_id: str, user_id: str, access_token: str, project_name: str
) -> str:
    last = ""
    async for message in initiate_scan(conn, project_id, user_id, access_token):
        last = message.strip()
        log.info("scan %s: %s", project_id, last)
        publish_event("scan:progress", project_id, last, project=project_name)
    return last


def run_scan(project_id: str, user_id: str) -> str:
    """Run a scan to completion and return its final progress message.

    Called by an rq worker on the tagscan:scans queue. The GitHub token is
    read from ``GITHUB_TOKEN`` in the worker environment.
    """
    with connect() as conn:
        project = get_project_by_id(conn, project_id)
        if not project:
            log.warning("Project %s not found (deleted?), skipping", project_id)
            return "skipped:entity_missing"

        access_token = os.environ.get("GITHUB_TOKEN", "")
        if not access_token:
            log.warning("GITHUB_TOKEN is not set; scanning %s unauthenticated", project_id)

        # Capture the whole package so parser, fetch and store logs land in scan_logs.
        pkg_log = logging.getLogger("tagscan")
        db_handler = ScanDBHandler(conn, project_id)
        db_handler.setLevel(logging.INFO)
        pkg_log.addHandler(db_handler)
        prev_log_level = pkg_log.level
        if pkg_log.level > logging.INFO or pkg_log.level == logging.NOTSET:
            pkg_log.setLevel(logging.INFO)

        try:
            last = asyncio.run(
                _drain_scan(conn, project_id, user_id, access_token, project["name"])
            )
            status = "done" if last == "done" else "failed"
            publish_event("scan:status", project_id, status, project=project["name"])
            return last
        finally:
            pkg_log.removeHandler(db_handler)
            pkg_log.setLevel(prev_log_level)


def on_scan_failure(job, _connection, _exc_type, exc_value, _traceback):
    """Callback when a scan job raises. Records the failure and emits an event."""
    project_id = job.args[0] if job.args else None
    if not project_id:
        return
    with connect() as conn:
        project = get_project_by_id(conn, project_id)
        if not project:
            log.warning("Scan %s failed callback skipped: project not found", project_id)
            return
        add_scan_log(
            conn,
            project_id=project_id,
            level="ERROR",
            message=f"Scan failed: {exc_value}",
        )
        publish_event(
            "scan:failed",
            project_id,
            "failed",
            project=project["name"],
            extra={"error": str(exc_value)},
        )
