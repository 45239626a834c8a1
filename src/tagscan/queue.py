"""rq-based job queue for background scans.

``tagscan scan --background`` enqueues a scan here; progress is published
to a Redis Stream so other processes can follow it.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import uuid
from datetime import UTC, datetime

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError
from rq import Callback, Queue
from rq.job import Job

from tagscan.paths import LOG_DIR

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("TAGSCAN_REDIS_URL", "redis://localhost:6379/0")

QUEUE_SCANS = "tagscan:scans"

FAILURE_TTL = 7 * 24 * 3600  # 7 days

EVENTS_STREAM = "tagscan:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("TAGSCAN_EVENTS_STREAM_MAXLEN", "1000"))

EVENT_VERSION = 1  # Bump when payload shape changes


_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_SCANS) -> Queue:
    # No rq-level timeout; the GitHub client owns its own timeouts.
    return Queue(name, connection=get_redis(), default_timeout=-1)


def publish_event(
    event_type: str,
    entity_id: str,
    status: str,
    *,
    project: str,
    source: str = "worker",
    extra: dict | None = None,
) -> None:
    """Publish a scan event to the Redis Stream. Best-effort, never raises.

    *source* is ``"worker"`` for rq jobs and ``"cli"`` for foreground scans.
    """
    event: dict = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "project": project,
        "status": status,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    payload = json.dumps(event)
    try:
        r = get_redis()
        r.xadd(EVENTS_STREAM, {"data": payload}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True)
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, entity_id)


def _spawn_worker(queue_name: str = QUEUE_SCANS, *, job_id: str | None = None) -> None:
    """Spawn a burst rq worker for *queue_name*.

    The worker exits once the queue is empty. With *job_id*, worker output
    goes to ``~/.config/tagscan/logs/{job_id}.log``.
    """
    cmd = [
        sys.executable,
        "-m",
        "rq.cli",
        "worker",
        "--burst",
        "--url",
        REDIS_URL,
        queue_name,
    ]

    log_fh = None
    try:
        if job_id:
            LOG_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
            log_fh = open(LOG_DIR / f"{job_id}.log", "w")  # noqa: SIM115
            stdout_target = log_fh
            stderr_target = subprocess.STDOUT
        else:
            stdout_target = subprocess.DEVNULL
            stderr_target = subprocess.DEVNULL

        proc = subprocess.Popen(
            cmd,
            stdout=stdout_target,
            stderr=stderr_target,
            start_new_session=True,
        )
    except Exception:
        if log_fh is not None:
            log_fh.close()
        raise

    if log_fh is not None:
        log_fh.close()  # child keeps its own descriptor

    log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)


def enqueue_scan(project_id: str, user_id: str) -> Job:
    """Queue a scan of *project_id* on behalf of *user_id* and start a worker."""
    from tagscan.jobs import run_scan

    q = get_queue(QUEUE_SCANS)
    job_id = f"scan-{project_id}-{uuid.uuid4().hex[:8]}"
    job = q.enqueue(
        run_scan,
        project_id,
        user_id,
        job_id=job_id,
        on_failure=Callback("tagscan.jobs.on_scan_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"Scan {project_id}",
    )
    _spawn_worker(QUEUE_SCANS, job_id=job_id)
    return job


def get_job(job_id: str) -> Job | None:
    """Fetch a job by ID."""
    try:
        return Job.fetch(job_id, connection=get_redis())
    except Exception:
        return None
