# backend/showmover/worker.py
import logging
import os
import shutil
import threading
import time
from typing import Optional

from sqlalchemy import case
from sqlalchemy.engine import Engine
from sqlmodel import Session, select, col

from .config import Config, ConfigHolder
from .errors import JobInterrupted
from .models import ACTIVE_STATUSES, Job, JobStatus, Show, utcnow
from .tiers import resolve_location

logger = logging.getLogger(__name__)

FAILURE_COOLDOWN = 0.2        # seconds between two jobs
IDLE_INTERVAL = 2.0           # seconds to sleep when the queue is empty
FETCH_FAILURE_BACKOFF = 5.0   # seconds to back off when the store can't be read


def select_next_job(session: Session) -> Optional[Job]:
    """Oldest eligible job, a ``running`` one (interrupted earlier) always first."""
    statement = (
        select(Job)
        .where(col(Job.status).in_(ACTIVE_STATUSES))
        .order_by(
            case((col(Job.status) == JobStatus.RUNNING.value, 0), else_=1),
            col(Job.created_at),
            col(Job.id),
        )
        .limit(1)
    )
    return session.exec(statement).first()


def claim_job(session: Session, job: Job) -> Job:
    job.status = JobStatus.RUNNING.value
    job.error_message = None
    job.updated_at = utcnow()
    session.add(job)
    session.commit()
    return job


def fetch_next_job(engine: Engine) -> Optional[Job]:
    # not atomic: two workers on one database could pick the same job
    with Session(engine, expire_on_commit=False) as session:
        job = select_next_job(session)
        if job is None:
            return None
        if job.status != JobStatus.RUNNING.value:
            claim_job(session, job)
        return job


def execute_job(engine: Engine, job: Job, config: Config, shutdown: Optional[threading.Event] = None):
    """
    Relocate one show. Stages, in order:
      prepare_destination  stale tree removal is best effort, mkdir must succeed
      copy_tree            any I/O error fails the job
      finalize             show + job rows updated in one transaction
      remove_source        best effort, only after the commit
    """
    logger.info(
        "Starting move job %s for show %s: %s -> %s",
        job.id, job.show_id, job.source_path, job.destination_path,
    )
    _prepare_destination(job.destination_path)
    copied = _copy_tree(engine, job, shutdown)
    _finalize(engine, job, config, copied)
    _remove_source(job)
    logger.info("Move job %s completed for show %s", job.id, job.show_id)


def _prepare_destination(destination: str):
    try:
        shutil.rmtree(destination)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to clean existing destination directory %s before move: %s", destination, e)
    os.makedirs(destination, exist_ok=True)


def _raise_walk_error(err: OSError):
    raise err


def _copy_link(src: str, dst: str):
    if os.path.lexists(dst):
        os.remove(dst)
    os.symlink(os.readlink(src), dst)


def _copy_tree(engine: Engine, job: Job, shutdown: Optional[threading.Event]) -> int:
    source = job.source_path
    destination = job.destination_path
    total = max(job.total_bytes or 0, 0)
    # a resumed job keeps counting from its persisted progress
    copied = job.progress_bytes or 0
    start = time.monotonic()

    for dirpath, dirnames, filenames in os.walk(source, onerror=_raise_walk_error):
        rel_dir = os.path.relpath(dirpath, source)
        target_dir = destination if rel_dir == os.curdir else os.path.join(destination, rel_dir)
        os.makedirs(target_dir, exist_ok=True)

        # symlinked directories are recreated as links, not descended into
        subdirs = []
        for name in sorted(dirnames):
            src = os.path.join(dirpath, name)
            if os.path.islink(src):
                _copy_link(src, os.path.join(target_dir, name))
            else:
                subdirs.append(name)
        dirnames[:] = subdirs

        for name in sorted(filenames):
            src = os.path.join(dirpath, name)
            dst = os.path.join(target_dir, name)
            if os.path.islink(src):
                _copy_link(src, dst)
                continue
            shutil.copy(src, dst)
            copied += os.stat(src).st_size

            progress = min(copied, total)
            elapsed = time.monotonic() - start
            speed = int(copied / elapsed) if elapsed > 0 else 0
            remaining = max(total - progress, 0)
            eta = int(round(remaining / speed)) if speed > 0 else 0
            update_job_progress(engine, job.id, progress, speed, eta)

            if shutdown is not None and shutdown.is_set():
                raise JobInterrupted(f"job {job.id} interrupted after copying {src}")

    return copied


def update_job_progress(engine: Engine, job_id: int, progress: int, speed: int, eta: int):
    with Session(engine) as session:
        job = session.get(Job, job_id)
        if job is None:
            return
        job.progress_bytes = progress
        job.speed_bytes_per_sec = speed
        job.eta_seconds = eta
        job.updated_at = utcnow()
        session.add(job)
        session.commit()


def _finalize(engine: Engine, job: Job, config: Config, copied: int):
    new_location = resolve_location(job.destination_path, config)
    final_progress = min(copied, max(job.total_bytes or 0, 0))

    try:
        with Session(engine) as session:
            show = session.get(Show, job.show_id)
            if show is not None:
                show.path = job.destination_path
                show.location = new_location.value
                session.add(show)

            row = session.get(Job, job.id)
            row.status = JobStatus.SUCCESS.value
            row.error_message = None
            row.progress_bytes = final_progress
            row.speed_bytes_per_sec = 0
            row.eta_seconds = 0
            row.updated_at = utcnow()
            session.add(row)
            session.commit()
    except Exception:
        logger.error(
            "Failed to finalize move job %s (show %s); %s was copied but the index still points at %s",
            job.id, job.show_id, job.destination_path, job.source_path,
        )
        raise


def _remove_source(job: Job):
    try:
        shutil.rmtree(job.source_path)
    except OSError as e:
        logger.warning("Failed to delete source directory %s after move job %s: %s", job.source_path, job.id, e)


def mark_job_failed(engine: Engine, job_id: int, message: str):
    with Session(engine) as session:
        job = session.get(Job, job_id)
        if job is None:
            return
        job.status = JobStatus.FAILED.value
        job.error_message = message
        job.speed_bytes_per_sec = 0
        job.eta_seconds = 0
        job.updated_at = utcnow()
        session.add(job)
        session.commit()


def process_next_job(engine: Engine, config_holder: ConfigHolder, shutdown: Optional[threading.Event] = None) -> Optional[Job]:
    """
    Run the next eligible job to completion. Returns the job that was worked
    on, or None when the queue is empty. Store errors while fetching propagate;
    errors while executing mark the job failed. JobInterrupted propagates and
    leaves the job running.
    """
    job = fetch_next_job(engine)
    if job is None:
        return None

    # one snapshot per job, later config edits don't affect it
    config = config_holder.snapshot()
    try:
        execute_job(engine, job, config, shutdown)
    except JobInterrupted:
        raise
    except Exception as e:
        logger.exception("Move job %s failed", job.id)
        try:
            mark_job_failed(engine, job.id, str(e) or repr(e))
        except Exception:
            logger.exception("Failed to mark job %s as failed", job.id)
    return job


def run_worker(engine: Engine, config_holder: ConfigHolder, shutdown: threading.Event):
    logger.info("Job worker started")
    while not shutdown.is_set():
        try:
            job = process_next_job(engine, config_holder, shutdown)
        except JobInterrupted as e:
            logger.info("Shutdown requested; %s, will resume on next start", e)
            break
        except Exception:
            logger.exception("Job worker failed to fetch job")
            if shutdown.wait(FETCH_FAILURE_BACKOFF):
                break
            continue

        wait = IDLE_INTERVAL if job is None else FAILURE_COOLDOWN
        if shutdown.wait(wait):
            break
    logger.info("Job worker exited")


def start_worker(engine: Engine, config_holder: ConfigHolder, shutdown: threading.Event) -> threading.Thread:
    thread = threading.Thread(
        target=run_worker,
        args=(engine, config_holder, shutdown),
        name="move-worker",
        daemon=True,
    )
    thread.start()
    return thread
