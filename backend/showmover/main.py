# backend/showmover/main.py
from fastapi import FastAPI, Depends, HTTPException, WebSocket, WebSocketDisconnect, BackgroundTasks, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import func, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select, col
from typing import Optional
import os, aiofiles, asyncio, logging, threading

from .config import (
    Config, ConfigHolder, ConfigStore, Settings,
    config_is_ready, load_initial_config, validate_config,
)
from .db import get_session, init_db, make_engine
from .errors import (
    AdmissionRejected, AlreadyInLocation, ConfigError, ConfigValidationError, InvalidTarget,
    JobError, MissingRoot, PathMismatch, ShowNotFound,
)
from .guard import AdmissionGuard
from .jobs import create_move_job, get_job, list_jobs
from .models import Job, JobStatus, Show
from .worker import start_worker
from .tiers import is_under, trimmed_root

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 50
MAX_SEARCH_LENGTH = 100

SHOW_SORT_COLUMNS = {
    "title": col(Show.title).collate("NOCASE"),
    "size": col(Show.size_bytes),
    "date": col(Show.last_scan),
    "seasons": col(Show.season_count),
    "episodes": col(Show.episode_count),
}

THUMBNAIL_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

JOB_ERROR_STATUS = {
    ShowNotFound: 404,
    InvalidTarget: 400,
    AlreadyInLocation: 400,
    MissingRoot: 500,
    PathMismatch: 400,
}


class MoveRequest(BaseModel):
    target: str


def _page(limit: Optional[int], offset: Optional[int]):
    limit = DEFAULT_PAGE_SIZE if limit is None else max(0, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset or 0)
    return limit, offset


def _iso(value):
    return value.isoformat() if value else None


def _load_row(engine, model, ident):
    # short session per read so polling sees fresh rows
    with Session(engine) as session:
        return session.get(model, ident)


def create_app(settings: Optional[Settings] = None, run_worker_thread: bool = True) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Show Mover")

    # --- CORS for development ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # open for dev; lock down in prod
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def startup():
        store = ConfigStore(settings.config_path)
        config = load_initial_config(store, settings)
        logger.info("Configuration loaded from %s", store.path)
        try:
            validate_config(config)
        except ConfigValidationError as e:
            logger.error("Configuration validation failed at startup: %s", e)

        engine = make_engine(settings.db_path)
        init_db(engine)

        app.state.settings = settings
        app.state.engine = engine
        app.state.config_store = store
        app.state.config_holder = ConfigHolder(config)
        app.state.guard = AdmissionGuard()
        app.state.shutdown = threading.Event()
        app.state.worker = None
        if run_worker_thread:
            app.state.worker = start_worker(engine, app.state.config_holder, app.state.shutdown)

    @app.on_event("shutdown")
    def shutdown():
        app.state.shutdown.set()
        if app.state.worker is not None:
            # the worker finishes its current file copy first
            app.state.worker.join()
        app.state.engine.dispose()

    @app.get("/health")
    def health(db: Session = Depends(get_session)):
        try:
            db.connection().execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Health check database query failed")
            return {"status": "degraded", "db": "error"}
        return {"status": "ok", "db": "ok"}

    @app.get("/api/config")
    def get_config(request: Request):
        return request.app.state.config_holder.snapshot().model_dump(mode="json")

    @app.put("/api/config")
    def update_config(payload: Config, request: Request):
        try:
            validate_config(payload)
        except ConfigValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            request.app.state.config_store.save(payload)
        except ConfigError as e:
            logger.error("Failed to persist configuration: %s", e)
            raise HTTPException(status_code=500, detail="Failed to persist configuration")

        request.app.state.config_holder.replace(payload)
        logger.info("Configuration updated")
        return payload.model_dump(mode="json")

    @app.post("/api/scan")
    def trigger_scan(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_session)):
        state = request.app.state
        config = state.config_holder.snapshot()
        if not config_is_ready(config):
            raise HTTPException(status_code=400, detail="Configuration incomplete. Please finish setup before scanning.")

        try:
            state.guard.begin_scan(db)
        except AdmissionRejected as e:
            raise HTTPException(status_code=409, detail=str(e))
        except SQLAlchemyError:
            logger.exception("Failed to check job activity before starting scan")
            raise HTTPException(status_code=500, detail="Failed to verify job activity state")

        # runs on the threadpool after the response is sent
        background_tasks.add_task(state.guard.run_scan, state.engine, config)
        return {"status": "started"}

    @app.get("/api/scan/status")
    def get_scan_status(request: Request):
        status = request.app.state.guard.status()
        return {
            "state": status.state.value,
            "last_started": _iso(status.last_started),
            "last_finished": _iso(status.last_finished),
            "last_error": status.last_error,
        }

    @app.get("/api/shows")
    def list_shows(
        location: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_dir: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        db: Session = Depends(get_session),
    ):
        limit, offset = _page(limit, offset)
        statement = select(Show)

        location = (location or "").strip()
        if location:
            statement = statement.where(func.lower(col(Show.location)) == location.lower())

        search = (search or "").strip()
        if search and len(search) <= MAX_SEARCH_LENGTH:
            pattern = f"%{search}%"
            statement = statement.where(or_(col(Show.title).like(pattern), col(Show.path).like(pattern)))

        column = SHOW_SORT_COLUMNS.get(sort_by or "title", SHOW_SORT_COLUMNS["title"])
        order = column.desc() if (sort_dir or "").lower() == "desc" else column.asc()
        statement = statement.order_by(order, col(Show.id)).offset(offset).limit(limit)

        try:
            return list(db.exec(statement).all())
        except SQLAlchemyError:
            logger.exception("Failed to fetch shows")
            raise HTTPException(status_code=500, detail="Failed to fetch shows")

    @app.get("/api/shows/{show_id}/thumbnail")
    async def get_show_thumbnail(show_id: int, request: Request):
        show = await run_in_threadpool(_load_row, request.app.state.engine, Show, show_id)
        if not show or not show.thumbnail_path:
            raise HTTPException(status_code=404, detail="Thumbnail not found")

        path = show.thumbnail_path
        config = request.app.state.config_holder.snapshot()
        allowed_roots = [r for r in (trimmed_root(config.hot_root), trimmed_root(config.cold_root)) if r]
        allowed_roots += [p.strip() for p in config.library_paths if p.strip()]
        if not any(is_under(path, root) for root in allowed_roots):
            logger.warning("Attempted access to thumbnail outside allowed directories: %s", path)
            raise HTTPException(status_code=403, detail="Access denied")

        if not os.path.isfile(path):
            raise HTTPException(status_code=404, detail="Thumbnail file not found")

        try:
            async with aiofiles.open(path, "rb") as fh:
                data = await fh.read()
        except OSError:
            logger.exception("Failed to read thumbnail file %s", path)
            raise HTTPException(status_code=500, detail="Failed to read thumbnail")

        content_type = THUMBNAIL_CONTENT_TYPES.get(os.path.splitext(path)[1].lower(), "image/jpeg")
        return Response(content=data, media_type=content_type, headers={"Cache-Control": "public, max-age=3600"})

    @app.post("/api/shows/{show_id}/move")
    def create_move_job_handler(show_id: int, payload: MoveRequest, request: Request, db: Session = Depends(get_session)):
        state = request.app.state
        try:
            state.guard.ensure_move_allowed()
        except AdmissionRejected as e:
            raise HTTPException(status_code=409, detail=str(e))

        config = state.config_holder.snapshot()
        if not config_is_ready(config):
            raise HTTPException(status_code=400, detail="Configuration incomplete. Please finish setup before moving shows.")

        try:
            return create_move_job(db, config, show_id, payload.target)
        except JobError as e:
            raise HTTPException(status_code=JOB_ERROR_STATUS.get(type(e), 400), detail=str(e))
        except SQLAlchemyError:
            logger.exception("Database error while processing job request")
            raise HTTPException(status_code=500, detail="Database error")

    @app.get("/api/jobs")
    def list_jobs_handler(limit: Optional[int] = None, offset: Optional[int] = None, db: Session = Depends(get_session)):
        limit, offset = _page(limit, offset)
        try:
            return list_jobs(db, limit, offset)
        except SQLAlchemyError:
            logger.exception("Failed to list jobs")
            raise HTTPException(status_code=500, detail="Failed to list jobs")

    @app.get("/api/jobs/{job_id}")
    def get_job_handler(job_id: int, db: Session = Depends(get_session)):
        try:
            job = get_job(db, job_id)
        except SQLAlchemyError:
            logger.exception("Failed to fetch job %s", job_id)
            raise HTTPException(status_code=500, detail="Failed to fetch job")
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @app.websocket("/job-progress")
    async def job_progress(websocket: WebSocket):
        await websocket.accept()
        raw_id = websocket.query_params.get("jobId") or websocket.query_params.get("job_id")
        try:
            job_id = int(raw_id)
        except (TypeError, ValueError):
            await websocket.send_json({"error": "missing jobId query param"})
            await websocket.close(code=1008)
            return

        engine = websocket.app.state.engine
        try:
            while True:
                job = await run_in_threadpool(_load_row, engine, Job, job_id)

                if not job:
                    await websocket.send_json({"error": "job_not_found"})
                    await websocket.close()
                    return

                await websocket.send_json({
                    "status": job.status,
                    "progress_bytes": job.progress_bytes,
                    "total_bytes": job.total_bytes,
                    "speed_bytes_per_sec": job.speed_bytes_per_sec,
                    "eta_seconds": job.eta_seconds,
                    "error_message": job.error_message,
                })

                if job.status in (JobStatus.SUCCESS.value, JobStatus.FAILED.value):
                    await websocket.close()
                    return

                await asyncio.sleep(1.0)
        except WebSocketDisconnect:
            logger.debug("Progress client for job %s disconnected", job_id)

    return app
