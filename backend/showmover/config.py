# backend/showmover/config.py
import json
import os
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ConfigError, ConfigValidationError
from .tiers import is_under, trimmed_root

DOCKER_CONFIG_PATH = "/config/config.json"
DOCKER_DATABASE_PATH = "/config/jellymover.db"
LOCAL_CONFIG_PATH = os.path.join("data", "config.json")
LOCAL_DATABASE_PATH = os.path.join("data", "jellymover.db")
DEFAULT_PORT = 3000


class Config(BaseModel):
    """Tier roots and library paths. Instances are immutable snapshots."""

    model_config = ConfigDict(frozen=True)

    hot_root: str = ""
    cold_root: str = ""
    library_paths: Tuple[str, ...] = ()


class ConfigHolder:
    """Shared, read-mostly config. Readers only ever get a snapshot."""

    def __init__(self, config: Optional[Config] = None):
        self._lock = threading.Lock()
        self._config = config or Config()

    def snapshot(self) -> Config:
        with self._lock:
            return self._config

    def replace(self, config: Config) -> None:
        with self._lock:
            self._config = config


class ConfigStore:
    def __init__(self, path: str):
        self.path = path

    def load_or_init(self) -> Config:
        self._ensure_parent_dir()
        if not os.path.exists(self.path):
            config = Config()
            self.save(config)
            return config

        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = fh.read()
        except OSError as e:
            raise ConfigError(f"I/O error: {e}") from e

        if not raw.strip():
            config = Config()
            self.save(config)
            return config

        try:
            return Config.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            raise ConfigError(f"JSON error: {e}") from e

    def save(self, config: Config) -> None:
        self._ensure_parent_dir()
        try:
            with open(self.path, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(config.model_dump(mode="json"), indent=2))
                fh.write("\n")
        except OSError as e:
            raise ConfigError(f"I/O error: {e}") from e

    def _ensure_parent_dir(self):
        parent = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(parent, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"I/O error: {e}") from e


def config_is_ready(config: Config) -> bool:
    return trimmed_root(config.hot_root) is not None and trimmed_root(config.cold_root) is not None


def validate_config(config: Config) -> None:
    hot_root = _validate_root_path("hot_root", config.hot_root)
    cold_root = _validate_root_path("cold_root", config.cold_root)

    for value in config.library_paths:
        trimmed = value.strip()
        if not trimmed:
            raise ConfigValidationError("library_paths entries must be non-empty paths")
        _ensure_directory(trimmed, "library path")

    if hot_root and cold_root:
        hot = os.path.normpath(hot_root)
        cold = os.path.normpath(cold_root)
        if hot == cold:
            raise ConfigValidationError("hot_root and cold_root cannot be the same directory")
        if is_under(hot, cold) or is_under(cold, hot):
            raise ConfigValidationError("hot_root and cold_root cannot be nested inside each other")


def _validate_root_path(field: str, value: str) -> Optional[str]:
    trimmed = trimmed_root(value)
    if trimmed is None:
        return None
    _ensure_directory(trimmed, f"{field} path")
    return trimmed


def _ensure_directory(path: str, label: str) -> None:
    if not os.path.exists(path):
        raise ConfigValidationError(f"{label} '{path}' does not exist")
    if not os.path.isdir(path):
        raise ConfigValidationError(f"{label} '{path}' is not a directory")


# --- process settings (environment) ---

def _trim_env(name: str) -> Optional[str]:
    value = os.environ.get(name, "").strip()
    return value or None


def _env_bool(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def running_in_docker() -> bool:
    flag = _env_bool("JELLYMOVER_IN_DOCKER")
    if flag is None:
        flag = _env_bool("RUNNING_IN_DOCKER")
    if flag is None:
        flag = os.path.exists("/.dockerenv")
    return flag


@dataclass(frozen=True)
class Settings:
    port: int
    config_path: str
    db_path: str
    log_level: str
    seed_hot_root: Optional[str]
    seed_cold_root: Optional[str]

    @classmethod
    def from_env(cls) -> "Settings":
        in_docker = running_in_docker()
        try:
            port = int(_trim_env("JM_PORT") or DEFAULT_PORT)
        except ValueError:
            port = DEFAULT_PORT
        return cls(
            port=port,
            config_path=_trim_env("JM_CONFIG_PATH") or (DOCKER_CONFIG_PATH if in_docker else LOCAL_CONFIG_PATH),
            db_path=_trim_env("JM_DB_PATH") or (DOCKER_DATABASE_PATH if in_docker else LOCAL_DATABASE_PATH),
            log_level=_trim_env("JM_LOG_LEVEL") or "info",
            seed_hot_root=_trim_env("JM_HOT_ROOT"),
            seed_cold_root=_trim_env("JM_COLD_ROOT"),
        )


def load_initial_config(store: ConfigStore, settings: Settings) -> Config:
    """Load the config file; a freshly created file is seeded from JM_HOT_ROOT/JM_COLD_ROOT."""
    existed = os.path.exists(store.path)
    config = store.load_or_init()
    if existed:
        return config

    updates = {}
    if settings.seed_hot_root:
        updates["hot_root"] = settings.seed_hot_root
    if settings.seed_cold_root:
        updates["cold_root"] = settings.seed_cold_root
    if updates:
        config = config.model_copy(update=updates)
        store.save(config)
    return config
