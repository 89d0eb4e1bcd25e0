from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from . import db as dbmod
from .cache import DerivativeCache, GenerationError, Variant
from .security import PathContext, PathTraversal


class ActivityTracker:
    """Counts requests in flight so background work can step aside."""

    def __init__(self) -> None:
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    @contextmanager
    def track(self) -> Iterator[None]:
        self._active += 1
        try:
            yield
        finally:
            self._active -= 1


class CacheWarmer:
    """Pre-generates cached artifacts for every indexed file.

    Runs as a single background task. Artifacts already on disk are skipped;
    while any request is being served the warmer waits.
    """

    def __init__(
        self,
        db_path: str,
        cache: DerivativeCache,
        variants: Sequence[Variant],
        source_context: PathContext,
        *,
        activity: Optional[ActivityTracker] = None,
        delay_s: float = 0.1,
    ) -> None:
        self._db_path = db_path
        self._cache = cache
        self._variants: List[Variant] = [v for v in variants if v.generator is not None]
        self._source_context = source_context
        self._activity = activity or ActivityTracker()
        self._delay_s = max(0.0, float(delay_s))
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stopping = True
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout=timeout_s)
        except asyncio.TimeoutError:
            logging.warning("Cache warmer did not stop within %.1fs", timeout_s)

    async def _wait_idle(self) -> None:
        while self._activity.active > 0 and not self._stopping:
            await asyncio.sleep(max(self._delay_s, 0.05))

    async def _run(self) -> None:
        try:
            generated = await self.run_once()
        except asyncio.CancelledError:
            raise
        except Exception:
            logging.error("Cache warmer aborted", exc_info=True)
            return
        logging.info("Cache warmer finished, %d artifacts generated", generated)

    async def run_once(self) -> int:
        """Walk all indexed files once and fill missing artifacts. Returns how many were generated."""
        paths = await dbmod.list_file_paths(self._db_path)
        generated = 0
        for variant in self._variants:
            logging.info("Warming %s cache for %d files", variant.name, len(paths))
            for path in paths:
                if self._stopping:
                    return generated
                try:
                    source = self._source_context.resolve_file(path)
                except PathTraversal:
                    logging.debug("Skipping %s for %s: source not servable", variant.name, path)
                    continue
                if self._cache.exists(source, variant):
                    continue
                await self._wait_idle()
                if await self._warm_one(source, variant):
                    generated += 1
                if self._delay_s:
                    await asyncio.sleep(self._delay_s)
        return generated

    async def _warm_one(self, source: Path, variant: Variant) -> bool:
        try:
            artifact = await self._cache.get_or_create(source, variant)
        except GenerationError as exc:
            logging.warning("Cache warmer could not build %s for %s: %s", variant.name, source, exc)
            return False
        return artifact.generated
