# backend/showmover/jobs.py
import logging
import os
from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, select, col

from .config import Config
from .errors import AlreadyInLocation, InvalidTarget, PathMismatch, ShowNotFound
from .models import ACTIVE_STATUSES, Job, JobStatus, Show, Tier, utcnow
from .tiers import detect_location, normalize_target, require_roots

logger = logging.getLogger(__name__)


def create_move_job(session: Session, config: Config, show_id: int, target: str) -> Job:
    """Queue a relocation of one show to the other tier.

    Only validates and inserts a ``queued`` row; the worker does the actual
    copy. Raises one of the JobError subclasses when the request is rejected.
    """
    tier = normalize_target(target)
    if tier is None:
        raise InvalidTarget()

    show = session.get(Show, show_id)
    if show is None:
        raise ShowNotFound()

    hot_root, cold_root = require_roots(config)
    current_tier, current_root = detect_location(show.path, hot_root, cold_root)
    if current_tier == tier:
        raise AlreadyInLocation()

    destination_root = hot_root if tier == Tier.HOT else cold_root
    relative = os.path.relpath(os.path.normpath(show.path), os.path.normpath(current_root))
    if relative == os.curdir:
        # the show must sit inside a pool, never be the pool itself
        raise PathMismatch()
    destination_path = os.path.normpath(os.path.join(destination_root, relative))

    now = utcnow()
    job = Job(
        show_id=show.id,
        source_path=show.path,
        destination_path=destination_path,
        status=JobStatus.QUEUED.value,
        progress_bytes=0,
        total_bytes=max(show.size_bytes or 0, 0),
        speed_bytes_per_sec=0,
        eta_seconds=0,
        error_message=None,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    session.commit()
    session.refresh(job)

    logger.info(
        "Queued move job %s for show %s: %s -> %s (target=%s)",
        job.id, show.id, job.source_path, job.destination_path, tier.value,
    )
    return job


def list_jobs(session: Session, limit: int = 50, offset: int = 0) -> List[Job]:
    statement = (
        select(Job)
        .order_by(col(Job.created_at).desc(), col(Job.id).desc())
        .offset(offset)
        .limit(limit)
    )
    return list(session.exec(statement).all())


def get_job(session: Session, job_id: int) -> Optional[Job]:
    return session.get(Job, job_id)


def has_active_jobs(session: Session) -> bool:
    count = session.exec(
        select(func.count()).select_from(Job).where(col(Job.status).in_(ACTIVE_STATUSES))
    ).one()
    return count > 0
