from __future__ import annotations

import asyncio
import base64
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import db as dbmod
from .cache import (
    VIDEO_CONTENT_TYPE,
    Artifact,
    DerivativeCache,
    GenerationError,
    Variant,
)
from .config import ImageFindConfig
from .imaging import jpeg_generator
from .indexing import ScanReport, SidecarIndexer
from .search import SearchEngine
from .security import PathContext, PathTraversal
from .warmup import ActivityTracker, CacheWarmer


def encode_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class ImageFindService:
    """Request handlers behind the MCP tools.

    Every path arriving from a client is confined to the scan root before
    anything is read; cache writes are confined to the cache roots.
    """

    def __init__(self, cfg: ImageFindConfig) -> None:
        self.cfg = cfg
        self.source_context = PathContext([cfg.scan_dir])
        self.cache_context = PathContext(
            [cfg.thumbnail_cache, cfg.full_image_cache, cfg.video_preview_cache]
        )
        self.thumbnail_variant = Variant(
            "thumbnail",
            cfg.thumbnail_cache,
            jpeg_generator(
                max_dim=cfg.thumbnail_size,
                quality=cfg.thumbnail_quality,
                ffmpeg_path=cfg.ffmpeg_path,
            ),
        )
        self.preview_variant = Variant(
            "preview",
            cfg.full_image_cache,
            jpeg_generator(
                max_dim=cfg.preview_size,
                quality=cfg.preview_quality,
                ffmpeg_path=cfg.ffmpeg_path,
            ),
        )
        self.video_variant = Variant(
            "video",
            cfg.video_preview_cache,
            None,
            content_type=VIDEO_CONTENT_TYPE,
            suffix=".mp4",
        )
        self.cache = DerivativeCache(self.cache_context)
        self.indexer = SidecarIndexer(cfg, self.source_context)
        self.engine = SearchEngine(cfg.db_path, max_query_length=cfg.max_query_length)
        self.activity = ActivityTracker()
        self.warmer = CacheWarmer(
            cfg.db_path,
            self.cache,
            [self.thumbnail_variant, self.preview_variant],
            self.source_context,
            activity=self.activity,
            delay_s=cfg.warmup_delay_s,
        )

    async def startup(self, *, scan: bool = True, warm: Optional[bool] = None) -> Optional[ScanReport]:
        dbmod.ensure_db_permissions(self.cfg.db_path)
        await dbmod.init_db(self.cfg.db_path)
        for root in (self.cfg.thumbnail_cache, self.cfg.full_image_cache, self.cfg.video_preview_cache):
            await asyncio.to_thread(self.cache_context.makedirs, root)
        logging.info(
            "Storage: db=%s scan_dir=%s thumbnails=%s previews=%s videos=%s",
            self.cfg.db_path,
            self.cfg.scan_dir,
            self.cfg.thumbnail_cache,
            self.cfg.full_image_cache,
            self.cfg.video_preview_cache,
        )
        report = await self.indexer.scan() if scan else None
        if self.cfg.enable_warmup if warm is None else warm:
            self.warmer.start()
        return report

    async def shutdown(self) -> None:
        await self.warmer.stop()
        await dbmod.close_db_pool(self.cfg.db_path)

    async def search(self, query: str = "", include_thumbnails: bool = False) -> Dict[str, Any]:
        with self.activity.track():
            hits = await self.engine.search(query)
            results: List[Dict[str, Any]] = []
            for hit in hits:
                item: Dict[str, Any] = {"file_path": hit.file_path, "value": hit.value}
                if include_thumbnails:
                    item["thumbnail"] = await self._thumbnail_b64(hit.file_path)
                results.append(item)
        return {"query": query, "count": len(results), "results": results}

    async def thumbnail(self, path: str) -> Dict[str, Any]:
        """Inline thumbnail for *path*, or ``None`` when it cannot be produced.

        Raises :class:`PathTraversal` when *path* escapes the scan root.
        """
        resolved = self.source_context.resolve_path(path)
        with self.activity.track():
            data = await self._thumbnail_b64(resolved)
        return {"thumbnail": data, "file_path": str(resolved)}

    async def _thumbnail_b64(self, path: str | Path) -> Optional[str]:
        try:
            source = self.source_context.resolve_file(path)
        except PathTraversal:
            logging.debug("No servable source for thumbnail: %s", path)
            return None
        try:
            artifact = await self.cache.get_or_create(source, self.thumbnail_variant)
        except GenerationError as exc:
            logging.warning("Thumbnail unavailable for %s: %s", source, exc)
            return None
        return encode_b64(artifact.data)

    async def preview(self, path: str, cache_bust: Optional[str] = None) -> Artifact:
        """Resized full preview. Raises PathTraversal or GenerationError."""
        source = self.source_context.resolve_file(path)
        with self.activity.track():
            start = time.time()
            artifact = await self.cache.get_or_create(source, self.preview_variant, cache_bust=cache_bust)
        logging.info(
            "preview",
            extra={
                "operation": "preview",
                "generated": artifact.generated,
                "duration_ms": int((time.time() - start) * 1000),
            },
        )
        return artifact

    async def video_preview(self, path: str) -> Artifact:
        """Pre-transcoded companion clip. Raises PathTraversal or ArtifactNotFound."""
        source = self.source_context.resolve_path(path)
        with self.activity.track():
            return await self.cache.get_or_create(source, self.video_variant)

    async def rescan(self) -> Dict[str, Any]:
        report = await self.indexer.scan()
        return report.as_dict()

    async def index_stats(self) -> Dict[str, Any]:
        await dbmod.init_db(self.cfg.db_path)
        return {"files": await dbmod.count_files(self.cfg.db_path), "scan_dir": self.cfg.scan_dir}

