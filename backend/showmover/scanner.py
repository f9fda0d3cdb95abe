# backend/showmover/scanner.py
"""Library scanner.

Walks every configured library root, turns each immediate subdirectory into a
show candidate (title, size, season/episode counts, thumbnail, tier) and
upserts it into the ``shows`` table keyed by its path.
"""
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .config import Config
from .errors import ScanError
from .models import Show, ShowSource, utcnow
from .tiers import location_for_path, trimmed_root

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mkv", ".mp4", ".avi", ".mov", ".m4v", ".wmv"}
THUMBNAIL_NAMES = ("folder.jpg", "poster.jpg", "cover.jpg", "thumb.jpg")
SHOW_NFO = "tvshow.nfo"


@dataclass
class ScanSummary:
    scanned_libraries: int = 0
    shows_processed: int = 0
    inserted: int = 0
    updated: int = 0


@dataclass
class ShowCandidate:
    title: str
    path: str
    location: Optional[str]
    size_bytes: int
    season_count: int
    episode_count: int
    thumbnail_path: Optional[str]
    source: str


def run_scan(engine: Engine, config: Config) -> ScanSummary:
    summary = ScanSummary()
    hot_root = trimmed_root(config.hot_root)
    cold_root = trimmed_root(config.cold_root)

    for library_path in resolve_library_paths(config):
        if not os.path.isdir(library_path):
            logger.warning("Skipping library path that does not exist or is not a directory: %s", library_path)
            continue

        logger.info("Scanning library path %s", library_path)
        summary.scanned_libraries += 1

        try:
            candidates = scan_library(library_path, hot_root, cold_root)
        except OSError as e:
            logger.warning("Failed to scan library path %s: %s", library_path, e)
            continue

        for candidate in candidates:
            summary.shows_processed += 1
            try:
                inserted = upsert_show(engine, candidate)
            except SQLAlchemyError as e:
                logger.error("Failed to store show %s: %s", candidate.path, e)
                raise ScanError(f"Database error while storing {candidate.path}: {e}") from e
            if inserted:
                summary.inserted += 1
            else:
                summary.updated += 1

    logger.info(
        "Filesystem scan complete: scanned=%d processed=%d inserted=%d updated=%d",
        summary.scanned_libraries, summary.shows_processed, summary.inserted, summary.updated,
    )
    return summary


def resolve_library_paths(config: Config) -> List[str]:
    explicit = [p.strip() for p in config.library_paths if p.strip()]
    if not explicit:
        explicit = [root for root in (trimmed_root(config.hot_root), trimmed_root(config.cold_root)) if root]

    seen = set()
    libraries = []
    for path in explicit:
        if path not in seen:
            seen.add(path)
            libraries.append(path)
    return libraries


def scan_library(library_path: str, hot_root: Optional[str], cold_root: Optional[str]) -> List[ShowCandidate]:
    """One candidate per subdirectory. Raises OSError if the root can't be listed."""
    with os.scandir(library_path) as it:
        entries = sorted(it, key=lambda e: e.name)

    shows = []
    for entry in entries:
        try:
            if not entry.is_dir():
                continue
            candidate = build_show_candidate(entry.path, hot_root, cold_root)
        except OSError as e:
            logger.warning("Failed to inspect %s: %s", entry.path, e)
            continue
        logger.debug("Discovered show candidate %s", candidate.path)
        shows.append(candidate)
    return shows


def build_show_candidate(show_path: str, hot_root: Optional[str], cold_root: Optional[str]) -> ShowCandidate:
    nfo_title = read_tvshow_title(show_path)
    if nfo_title is not None:
        title, source = nfo_title, ShowSource.FS_SCAN_NFO
    else:
        title, source = os.path.basename(os.path.normpath(show_path)), ShowSource.FS_SCAN

    stats = gather_stats(show_path)
    episode_count = stats.episode_nfo_count if stats.episode_nfo_count > 0 else stats.video_count
    location = location_for_path(show_path, hot_root, cold_root)

    return ShowCandidate(
        title=title,
        path=show_path,
        location=location.value if location else None,
        size_bytes=stats.total_bytes,
        season_count=stats.season_count,
        episode_count=episode_count,
        thumbnail_path=find_thumbnail(show_path),
        source=source.value,
    )


@dataclass
class ShowStats:
    total_bytes: int
    video_count: int
    episode_nfo_count: int
    season_count: int


def gather_stats(show_path: str) -> ShowStats:
    total_bytes = 0
    video_count = 0
    episode_nfo_count = 0
    season_dirs = set()

    for dirpath, _dirnames, filenames in os.walk(show_path):
        rel_dir = os.path.relpath(dirpath, show_path)
        for name in filenames:
            full = os.path.join(dirpath, name)
            try:
                total_bytes += os.stat(full).st_size
            except OSError:
                pass

            if is_video_file(name):
                video_count += 1
                if rel_dir != os.curdir:
                    season_dirs.add(rel_dir.split(os.sep)[0])
            elif is_episode_nfo(name):
                episode_nfo_count += 1

    if season_dirs:
        season_count = len(season_dirs)
    else:
        season_count = 1 if video_count > 0 else 0

    return ShowStats(
        total_bytes=total_bytes,
        video_count=video_count,
        episode_nfo_count=episode_nfo_count,
        season_count=season_count,
    )


def is_video_file(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in VIDEO_EXTENSIONS


def is_episode_nfo(name: str) -> bool:
    return os.path.splitext(name)[1].lower() == ".nfo" and name.lower() != SHOW_NFO


def find_thumbnail(show_path: str) -> Optional[str]:
    for name in THUMBNAIL_NAMES:
        candidate = os.path.join(show_path, name)
        if os.path.isfile(candidate):
            return candidate
    return None


def read_tvshow_title(show_path: str) -> Optional[str]:
    nfo_path = os.path.join(show_path, SHOW_NFO)
    if not os.path.isfile(nfo_path):
        return None
    try:
        root = ET.parse(nfo_path).getroot()
    except (ET.ParseError, OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to parse %s: %s", nfo_path, e)
        return None
    return extract_title(root)


def extract_title(root: ET.Element) -> Optional[str]:
    for node in root.iter():
        if not isinstance(node.tag, str):
            continue
        if node.tag.split("}")[-1].lower() != "title":
            continue
        value = "".join(node.itertext()).strip()
        if value:
            return value
    return None


def upsert_show(engine: Engine, candidate: ShowCandidate) -> bool:
    """Insert or refresh one show in its own transaction. Returns True when inserted."""
    with Session(engine) as session:
        show = session.exec(select(Show).where(Show.path == candidate.path)).first()
        inserted = show is None
        if inserted:
            show = Show(path=candidate.path)

        show.title = candidate.title
        show.location = candidate.location
        show.size_bytes = candidate.size_bytes
        show.season_count = candidate.season_count
        show.episode_count = candidate.episode_count
        show.thumbnail_path = candidate.thumbnail_path
        show.source = candidate.source
        show.last_scan = utcnow()

        session.add(show)
        session.commit()
    return inserted
