# backend/showmover/tiers.py
import os
from typing import Optional, Tuple

from .errors import MissingRoot, PathMismatch
from .models import Tier


def normalize_target(target: Optional[str]) -> Optional[Tier]:
    value = (target or "").strip().lower()
    if value == Tier.HOT.value:
        return Tier.HOT
    if value == Tier.COLD.value:
        return Tier.COLD
    return None


def trimmed_root(value: Optional[str]) -> Optional[str]:
    trimmed = (value or "").strip()
    return trimmed or None


def is_under(path: str, root: str) -> bool:
    """Component-wise prefix test: /media/hot2 is not under /media/hot."""
    path = os.path.normpath(path)
    root = os.path.normpath(root)
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        # mixing absolute and relative paths, or different drives
        return False


def location_for_path(path: str, hot_root: Optional[str], cold_root: Optional[str]) -> Optional[Tier]:
    if hot_root and is_under(path, hot_root):
        return Tier.HOT
    if cold_root and is_under(path, cold_root):
        return Tier.COLD
    return None


def require_roots(config) -> Tuple[str, str]:
    hot_root = trimmed_root(config.hot_root)
    if hot_root is None:
        raise MissingRoot("hot_root")
    cold_root = trimmed_root(config.cold_root)
    if cold_root is None:
        raise MissingRoot("cold_root")
    return hot_root, cold_root


def detect_location(path: str, hot_root: str, cold_root: str) -> Tuple[Tier, str]:
    """Return (tier, tier_root) for a path, or raise PathMismatch."""
    if is_under(path, hot_root):
        return Tier.HOT, hot_root
    if is_under(path, cold_root):
        return Tier.COLD, cold_root
    raise PathMismatch()


def resolve_location(path: str, config) -> Tier:
    hot_root, cold_root = require_roots(config)
    tier, _ = detect_location(path, hot_root, cold_root)
    return tier
