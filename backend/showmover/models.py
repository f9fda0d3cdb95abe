# backend/showmover/models.py
from enum import Enum
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone


def utcnow() -> datetime:
    # timestamps are always timezone-aware UTC
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    HOT = "hot"
    COLD = "cold"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ShowSource(str, Enum):
    FS_SCAN = "fs_scan"
    FS_SCAN_NFO = "fs_scan_nfo"


ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class Show(SQLModel, table=True):
    __tablename__ = "shows"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: Optional[str] = Field(default=None, index=True)
    path: str = Field(nullable=False, unique=True)
    location: Optional[str] = Field(default=None, index=True)      # hot | cold | None
    size_bytes: Optional[int] = Field(default=0, index=True)
    season_count: Optional[int] = Field(default=0)
    episode_count: Optional[int] = Field(default=0)
    thumbnail_path: Optional[str] = Field(default=None)
    source: Optional[str] = Field(default=None)                    # fs_scan | fs_scan_nfo
    last_scan: Optional[datetime] = Field(default=None, index=True)


class Job(SQLModel, table=True):
    __tablename__ = "jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    show_id: int = Field(foreign_key="shows.id", nullable=False, index=True)
    source_path: str = Field(nullable=False)
    destination_path: str = Field(nullable=False)
    status: str = Field(default=JobStatus.QUEUED.value, nullable=False, index=True)  # queued | running | success | failed
    progress_bytes: int = Field(default=0, nullable=False)
    total_bytes: int = Field(default=0, nullable=False)
    speed_bytes_per_sec: int = Field(default=0, nullable=False)
    eta_seconds: int = Field(default=0, nullable=False)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
