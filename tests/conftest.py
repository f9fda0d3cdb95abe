import os

import pytest
from sqlmodel import Session

from showmover.config import Config, ConfigHolder
from showmover.db import init_db, make_engine
from showmover.models import Show


def write_file(path, data=b"x"):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = "wb" if isinstance(data, bytes) else "w"
    with open(path, mode) as fh:
        fh.write(data)
    return path


def make_show_dir(root, name, files):
    """files: {relative_path: bytes_or_text}"""
    show_dir = os.path.join(str(root), name)
    os.makedirs(show_dir, exist_ok=True)
    for rel, data in files.items():
        write_file(os.path.join(show_dir, rel), data)
    return show_dir


@pytest.fixture
def roots(tmp_path):
    hot = tmp_path / "hot"
    cold = tmp_path / "cold"
    hot.mkdir()
    cold.mkdir()
    return str(hot), str(cold)


@pytest.fixture
def config(roots):
    hot, cold = roots
    return Config(hot_root=hot, cold_root=cold)


@pytest.fixture
def config_holder(config):
    return ConfigHolder(config)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(str(tmp_path / "db" / "test.db"))
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def add_show(engine):
    def _add(path, size_bytes=0, location=None, title="Show"):
        with Session(engine, expire_on_commit=False) as session:
            show = Show(title=title, path=path, location=location, size_bytes=size_bytes, source="fs_scan")
            session.add(show)
            session.commit()
            return show
    return _add
