from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


DEFAULT_IGNORE_PATTERNS: List[str] = [
    "**/.git/**",
    "**/@eaDir/**",
    "**/.thumbnails/**",
    "**/.DS_Store",
    "**/Thumbs.db",
]

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass
class ImageFindConfig:
    # Storage
    db_path: str = "imagefind.db"
    scan_dir: str = "."

    # Derivative caches
    thumbnail_cache: str = "cache/thumbnails"
    full_image_cache: str = "cache/full"
    video_preview_cache: str = "cache/video"

    log_level: str = "INFO"

    # Indexing behavior
    sidecar_suffix: str = ".xmp"
    ignore_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    max_sidecar_size_mb: int = 16
    index_workers: int = 8
    prune_missing: bool = True

    # Derivatives
    thumbnail_size: int = 200
    thumbnail_quality: int = 50
    preview_size: int = 1980
    preview_quality: int = 60
    ffmpeg_path: str = "ffmpeg"

    # Search
    max_query_length: int = 1000

    # Background cache warmup
    enable_warmup: bool = True
    warmup_delay_s: float = 0.1


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str = "imagefind.db"
    scan_dir: str = "."

    thumbnail_cache: str = "cache/thumbnails"
    full_image_cache: str = "cache/full"
    video_preview_cache: str = "cache/video"

    log_level: str = "INFO"

    sidecar_suffix: str = ".xmp"
    ignore_patterns: List[str] = list(DEFAULT_IGNORE_PATTERNS)
    max_sidecar_size_mb: int = 16
    index_workers: int = 8
    prune_missing: bool = True

    thumbnail_size: int = 200
    thumbnail_quality: int = 50
    preview_size: int = 1980
    preview_quality: int = 60
    ffmpeg_path: str = "ffmpeg"

    max_query_length: int = 1000

    enable_warmup: bool = True
    warmup_delay_s: float = 0.1

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = str(value).strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("sidecar_suffix")
    @classmethod
    def validate_suffix(cls, value: str) -> str:
        suffix = str(value).strip()
        if not suffix.startswith(".") or len(suffix) < 2:
            raise ValueError("sidecar_suffix must start with '.' and name an extension")
        return suffix

    @field_validator("thumbnail_quality", "preview_quality")
    @classmethod
    def validate_quality(cls, value: int) -> int:
        if not 1 <= int(value) <= 95:
            raise ValueError("JPEG quality must be between 1 and 95")
        return int(value)

    @field_validator("thumbnail_size", "preview_size", "index_workers", "max_sidecar_size_mb", "max_query_length")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if int(value) <= 0:
            raise ValueError("must be a positive integer")
        return int(value)


def default_config_path() -> str:
    env_path = os.environ.get("IMAGEFIND_CONFIG_PATH")
    if env_path:
        return env_path
    return os.path.join(os.path.expanduser("~"), ".config", "imagefind", "imagefind.yaml")


def load_config(path: Optional[str] = None) -> ImageFindConfig:
    """Load config from YAML.

    Default path: ``$IMAGEFIND_CONFIG_PATH`` or ``~/.config/imagefind/imagefind.yaml``.

    Example:

        scan_dir: /srv/photos
        db_path: /var/lib/imagefind/db.sqlite
        thumbnail_cache: /var/cache/imagefind/thumbnails
        full_image_cache: /var/cache/imagefind/full
        video_preview_cache: /var/cache/imagefind/video
    """

    if path is None:
        path = default_config_path()

    if not os.path.isfile(path):
        logging.info("No config file at %s; using defaults.", path)
        return _normalize(ImageFindConfig())
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid configuration: {path} must contain a mapping")

    try:
        validated = AllowedConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    return _normalize(ImageFindConfig(**validated.model_dump()))


def _normalize(cfg: ImageFindConfig) -> ImageFindConfig:
    # Roots are realpath'd so containment checks compare canonical paths.
    cfg.scan_dir = os.path.realpath(os.path.expanduser(cfg.scan_dir))
    cfg.db_path = os.path.abspath(os.path.expanduser(cfg.db_path))
    cfg.thumbnail_cache = os.path.realpath(os.path.expanduser(cfg.thumbnail_cache))
    cfg.full_image_cache = os.path.realpath(os.path.expanduser(cfg.full_image_cache))
    cfg.video_preview_cache = os.path.realpath(os.path.expanduser(cfg.video_preview_cache))
    if cfg.index_workers > 64:
        logging.warning("index_workers (%s) is very high; capping at 64.", cfg.index_workers)
        cfg.index_workers = 64
    return cfg
