import os
import threading
import time
from datetime import timedelta

import pytest
from sqlalchemy import func
from sqlmodel import Session, select

from showmover import worker
from showmover.config import Config, ConfigHolder
from showmover.errors import JobInterrupted
from showmover.jobs import create_move_job
from showmover.models import Job, Show
from showmover.scanner import run_scan

from conftest import make_show_dir, write_file

SHOW_FILES = {
    "tvshow.nfo": "<tvshow><title>Alpha</title></tvshow>",
    "Season 1/E01.mkv": b"a" * 300,
    "Season 1/E02.mkv": b"b" * 200,
    "Season 2/E01.mkv": b"c" * 100,
}


def _scan_and_queue(engine, config, root, name, target, files=SHOW_FILES):
    show_dir = make_show_dir(root, name, files)
    run_scan(engine, config)
    with Session(engine, expire_on_commit=False) as session:
        show = session.exec(select(Show).where(Show.path == show_dir)).one()
        job = create_move_job(session, config, show.id, target)
    return show, job


def _get(engine, model, ident):
    with Session(engine) as session:
        return session.get(model, ident)


def _job_count(engine):
    with Session(engine) as session:
        return session.exec(select(func.count()).select_from(Job)).one()


def test_successful_move(engine, config, config_holder, roots):
    hot, cold = roots
    show, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")

    processed = worker.process_next_job(engine, config_holder)

    assert processed.id == job.id
    done = _get(engine, Job, job.id)
    moved = _get(engine, Show, show.id)
    assert done.status == "success"
    assert done.error_message is None
    assert done.progress_bytes == done.total_bytes == show.size_bytes
    assert (done.speed_bytes_per_sec, done.eta_seconds) == (0, 0)
    assert moved.path == os.path.join(cold, "Alpha")
    assert moved.path.startswith(cold)
    assert moved.location == "cold"
    assert not os.path.exists(os.path.join(hot, "Alpha"))
    with open(os.path.join(cold, "Alpha", "Season 1", "E02.mkv"), "rb") as fh:
        assert fh.read() == b"b" * 200


def test_progress_is_clamped_to_total(engine, config, roots, monkeypatch):
    hot, _ = roots
    show, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    with Session(engine) as session:
        row = session.get(Job, job.id)
        row.total_bytes = 250
        session.add(row)
        session.commit()

    seen = []
    real_update = worker.update_job_progress

    def recording_update(engine_, job_id, progress, speed, eta):
        seen.append(progress)
        real_update(engine_, job_id, progress, speed, eta)

    monkeypatch.setattr(worker, "update_job_progress", recording_update)
    worker.process_next_job(engine, ConfigHolder(config))

    assert seen and all(p <= 250 for p in seen)
    assert _get(engine, Job, job.id).progress_bytes == 250


def test_stale_destination_is_replaced(engine, config, config_holder, roots):
    hot, cold = roots
    _, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    write_file(os.path.join(cold, "Alpha", "leftover.partial"), b"junk")

    worker.process_next_job(engine, config_holder)

    assert _get(engine, Job, job.id).status == "success"
    assert not os.path.exists(os.path.join(cold, "Alpha", "leftover.partial"))


def test_symlinked_directories_are_moved_as_links(engine, config, config_holder, roots, tmp_path):
    hot, cold = roots
    extras = tmp_path / "extras"
    write_file(str(extras / "bonus.mkv"), b"e" * 5)
    show_dir = make_show_dir(hot, "Alpha", {"Season 1/E01.mkv": b"a" * 10})
    os.symlink(str(extras), os.path.join(show_dir, "Extras"))
    os.symlink("Season 1/E01.mkv", os.path.join(show_dir, "latest.mkv"))
    _, job = _scan_and_queue(engine, config, hot, "Alpha", "cold", files={})

    worker.process_next_job(engine, config_holder)

    assert _get(engine, Job, job.id).status == "success"
    moved = os.path.join(cold, "Alpha")
    assert os.path.islink(os.path.join(moved, "Extras"))
    assert os.readlink(os.path.join(moved, "Extras")) == str(extras)
    assert os.path.islink(os.path.join(moved, "latest.mkv"))
    assert os.readlink(os.path.join(moved, "latest.mkv")) == "Season 1/E01.mkv"
    assert os.path.getsize(os.path.join(moved, "Season 1", "E01.mkv")) == 10
    assert not os.path.exists(show_dir)
    # the link target outside the show is left alone
    assert os.path.getsize(str(extras / "bonus.mkv")) == 5


def test_copy_failure_marks_job_failed(engine, config, config_holder, roots):
    import shutil

    hot, cold = roots
    show, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    shutil.rmtree(os.path.join(hot, "Alpha"))

    worker.process_next_job(engine, config_holder)

    failed = _get(engine, Job, job.id)
    assert failed.status == "failed"
    assert failed.error_message
    assert _get(engine, Show, show.id).path == os.path.join(hot, "Alpha")


def test_finalize_failure_leaves_index_and_destination(engine, config, config_holder, roots, add_show):
    hot, cold = roots
    show, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    # another row already claims the destination path, so the UNIQUE constraint trips
    add_show(os.path.join(cold, "Alpha"), title="Squatter")

    worker.process_next_job(engine, config_holder)

    failed = _get(engine, Job, job.id)
    assert failed.status == "failed"
    assert "UNIQUE" in failed.error_message.upper()
    assert _get(engine, Show, show.id).path == os.path.join(hot, "Alpha")
    assert os.path.isdir(os.path.join(cold, "Alpha", "Season 1"))
    assert os.path.isdir(os.path.join(hot, "Alpha"))


def test_source_removal_failure_is_only_a_warning(engine, config, config_holder, roots, monkeypatch):
    hot, cold = roots
    show, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    real_rmtree = worker.shutil.rmtree

    def picky_rmtree(path, *args, **kwargs):
        if os.path.normpath(path) == os.path.join(hot, "Alpha"):
            raise PermissionError("read-only source")
        return real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(worker.shutil, "rmtree", picky_rmtree)
    worker.process_next_job(engine, config_holder)

    assert _get(engine, Job, job.id).status == "success"
    assert _get(engine, Show, show.id).location == "cold"
    assert os.path.isdir(os.path.join(hot, "Alpha"))


def test_running_job_is_preferred_over_older_queued(engine, config, roots):
    hot, _ = roots
    _, older = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    _, newer = _scan_and_queue(engine, config, hot, "Beta", "cold")
    with Session(engine) as session:
        row = session.get(Job, newer.id)
        row.status = "running"
        row.created_at = older.created_at + timedelta(seconds=10)
        session.add(row)
        session.commit()

    assert worker.fetch_next_job(engine).id == newer.id


def test_queued_jobs_run_oldest_first_and_are_claimed(engine, config, roots):
    hot, _ = roots
    _, first = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    _, second = _scan_and_queue(engine, config, hot, "Beta", "cold")
    with Session(engine) as session:
        row = session.get(Job, first.id)
        row.error_message = "stale"
        session.add(row)
        session.commit()

    claimed = worker.fetch_next_job(engine)

    assert claimed.id == first.id
    stored = _get(engine, Job, first.id)
    assert stored.status == "running"
    assert stored.error_message is None
    assert _get(engine, Job, second.id).status == "queued"


def test_unclaimed_selection_is_not_exclusive(engine, config, roots):
    # two workers on one database would both pick the same job
    hot, _ = roots
    _, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")

    with Session(engine) as a, Session(engine) as b:
        assert worker.select_next_job(a).id == worker.select_next_job(b).id == job.id


def test_interrupted_job_resumes_with_same_id(engine, config, config_holder, roots):
    hot, cold = roots
    show, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    shutdown = threading.Event()
    shutdown.set()

    with pytest.raises(JobInterrupted):
        worker.process_next_job(engine, config_holder, shutdown)

    interrupted = _get(engine, Job, job.id)
    assert interrupted.status == "running"
    assert 0 < interrupted.progress_bytes < show.size_bytes
    assert os.path.isdir(os.path.join(hot, "Alpha"))

    resumed = worker.process_next_job(engine, config_holder, threading.Event())

    assert resumed.id == job.id
    assert _job_count(engine) == 1
    done = _get(engine, Job, job.id)
    assert done.status == "success"
    assert done.progress_bytes == done.total_bytes
    assert _get(engine, Show, show.id).path == os.path.join(cold, "Alpha")


def test_resumed_progress_continues_from_persisted_value(engine, config, config_holder, roots, monkeypatch):
    hot, _ = roots
    files = {"Season 1/E01.mkv": b"a" * 300, "Season 1/E02.mkv": b"b" * 200}
    _, job = _scan_and_queue(engine, config, hot, "Alpha", "cold", files=files)
    assert job.total_bytes == 500
    with Session(engine) as session:
        row = session.get(Job, job.id)
        row.status = "running"
        row.progress_bytes = 400
        session.add(row)
        session.commit()

    seen = []
    monkeypatch.setattr(worker, "update_job_progress", lambda e, i, progress, s, t: seen.append(progress))
    worker.process_next_job(engine, config_holder)

    # the first file alone is 300 bytes, but counting restarts from 400
    assert seen == [500, 500]
    assert _get(engine, Job, job.id).status == "success"


def test_failed_job_does_not_stop_next_one(engine, config, config_holder, roots):
    import shutil

    hot, cold = roots
    _, broken = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    _, fine = _scan_and_queue(engine, config, hot, "Beta", "cold")
    shutil.rmtree(os.path.join(hot, "Alpha"))

    worker.process_next_job(engine, config_holder)
    worker.process_next_job(engine, config_holder)

    assert _get(engine, Job, broken.id).status == "failed"
    assert _get(engine, Job, fine.id).status == "success"
    assert worker.process_next_job(engine, config_holder) is None


def test_job_uses_config_snapshot(engine, config, roots, monkeypatch, tmp_path):
    hot, _ = roots
    _scan_and_queue(engine, config, hot, "Alpha", "cold")
    holder = ConfigHolder(config)
    used = []

    def fake_execute(engine_, job, job_config, shutdown):
        holder.replace(Config(hot_root=str(tmp_path / "x"), cold_root=str(tmp_path / "y")))
        used.append(job_config)

    monkeypatch.setattr(worker, "execute_job", fake_execute)
    worker.process_next_job(engine, holder)

    assert used == [config]
    assert holder.snapshot().hot_root == str(tmp_path / "x")


def test_worker_loop_processes_and_stops(engine, config, config_holder, roots, monkeypatch):
    hot, _ = roots
    _, job = _scan_and_queue(engine, config, hot, "Alpha", "cold")
    monkeypatch.setattr(worker, "IDLE_INTERVAL", 0.01)
    monkeypatch.setattr(worker, "FAILURE_COOLDOWN", 0.01)
    shutdown = threading.Event()

    thread = worker.start_worker(engine, config_holder, shutdown)
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline and _get(engine, Job, job.id).status != "success":
        time.sleep(0.02)
    shutdown.set()
    thread.join(timeout=5)

    assert _get(engine, Job, job.id).status == "success"
    assert not thread.is_alive()


def test_worker_loop_survives_fetch_failures(engine, config_holder, monkeypatch):
    monkeypatch.setattr(worker, "FETCH_FAILURE_BACKOFF", 0)
    shutdown = threading.Event()
    calls = []

    def broken_fetch(engine_):
        calls.append(1)
        if len(calls) >= 3:
            shutdown.set()
        raise RuntimeError("database is locked")

    monkeypatch.setattr(worker, "fetch_next_job", broken_fetch)
    worker.run_worker(engine, config_holder, shutdown)

    assert len(calls) == 3
