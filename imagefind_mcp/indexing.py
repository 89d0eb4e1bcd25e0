from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .config import ImageFindConfig
from .locks import get_scan_lock
from .parsing import (
    ParsedSidecar,
    SidecarParseError,
    extract_metadata,
    fingerprint_bytes,
    iter_sidecars,
    media_path_for,
    read_sidecar,
)
from .security import PathContext, is_within_root
from . import db as dbmod

_PROGRESS_EVERY = 100


@dataclass
class ScanReport:
    discovered: int = 0
    indexed: int = 0
    unchanged: int = 0
    failed: int = 0
    pruned: int = 0
    duration_s: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def _bounded_gather(
    items: Iterable[Any],
    worker: Callable[[Any], Awaitable[Any]],
    concurrency: int,
) -> AsyncIterator[Any]:
    queue_maxsize = max(1, int(concurrency) * 2)
    output: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_maxsize)
    sentinel = object()
    sem = asyncio.Semaphore(max(1, int(concurrency)))

    async def _run(item: Any) -> None:
        async with sem:
            res = await worker(item)
            await output.put(res)

    async def _producer() -> None:
        try:
            async with asyncio.TaskGroup() as tg:
                for item in items:
                    tg.create_task(_run(item))
        except BaseException as exc:
            await output.put(exc)
        finally:
            await output.put(sentinel)

    producer = asyncio.create_task(_producer())
    try:
        while True:
            res = await output.get()
            if isinstance(res, BaseException):
                raise res
            if res is sentinel:
                break
            yield res
    finally:
        if not producer.done():
            producer.cancel()
        await producer


class SidecarIndexer:
    """Walks the scan root and keeps the metadata index in sync with sidecars.

    Hashing and parsing run in worker threads; index writes go through one
    writer at a time, each file in its own transaction.
    """

    def __init__(self, cfg: ImageFindConfig, path_context: Optional[PathContext] = None) -> None:
        self.cfg = cfg
        self.path_context = path_context or PathContext([cfg.scan_dir])
        self._write_lock = asyncio.Lock()

    def _discover(self) -> Tuple[List[Path], List[str]]:
        walk_errors: List[str] = []
        sidecars = list(
            iter_sidecars(
                self.path_context,
                self.cfg.scan_dir,
                suffix=self.cfg.sidecar_suffix,
                ignore_patterns=self.cfg.ignore_patterns,
                on_error=walk_errors.append,
            )
        )
        return sidecars, walk_errors

    def _load(self, sidecar: Path, stored: Optional[str]) -> ParsedSidecar:
        """Read, fingerprint and (when changed) parse one sidecar. Runs in a worker thread."""
        max_bytes = int(self.cfg.max_sidecar_size_mb) * 1024 * 1024
        data = read_sidecar(sidecar, max_bytes)
        fingerprint = fingerprint_bytes(data)
        media_path = media_path_for(sidecar, self.cfg.sidecar_suffix)
        if stored == fingerprint:
            return ParsedSidecar(str(sidecar), media_path, fingerprint, None)
        return ParsedSidecar(str(sidecar), media_path, fingerprint, extract_metadata(data))

    async def index_one(self, sidecar: Path, stored: Optional[str] = None) -> str:
        """Index a single sidecar. Returns ``"indexed"``, ``"unchanged"`` or ``"failed"``."""
        try:
            parsed = await asyncio.to_thread(self._load, sidecar, stored)
        except SidecarParseError as exc:
            logging.warning("Skipping malformed sidecar %s: %s", sidecar, exc)
            return "failed"
        except (OSError, ValueError):
            logging.warning("Failed to read sidecar %s", sidecar, exc_info=True)
            return "failed"

        if parsed.entries is None:
            logging.debug("Sidecar %s is up to date (%s)", sidecar, parsed.fingerprint)
            return "unchanged"

        async with self._write_lock:
            try:
                await dbmod.upsert_file(self.cfg.db_path, parsed.media_path, parsed.fingerprint, parsed.entries)
            except dbmod.StoreError:
                logging.error("Index transaction failed for %s; rolled back", sidecar, exc_info=True)
                return "failed"
        logging.info(
            "Indexed %s [%s] with %d entries",
            parsed.media_path,
            parsed.fingerprint,
            len(parsed.entries),
        )
        return "indexed"

    async def scan(self) -> ScanReport:
        """Run one full scan of the configured root.

        Unchanged sidecars are skipped by fingerprint. Per-file read, parse and
        store failures are logged and counted; the scan always completes.
        """
        async with get_scan_lock():
            return await self._scan()

    async def _scan(self) -> ScanReport:
        start = time.time()
        report = ScanReport()
        await dbmod.init_db(self.cfg.db_path)
        logging.info("Starting sidecar scan - directory: %s, database: %s", self.cfg.scan_dir, self.cfg.db_path)

        sidecars, walk_errors = await asyncio.to_thread(self._discover)
        report.discovered = len(sidecars)
        if not sidecars:
            logging.warning("No sidecar files found in %s", self.cfg.scan_dir)

        stored = await dbmod.fetch_fingerprints(self.cfg.db_path)
        seen_media: set[str] = set()

        async def _worker(sidecar: Path) -> str:
            media_path = media_path_for(sidecar, self.cfg.sidecar_suffix)
            seen_media.add(media_path)
            return await self.index_one(sidecar, stored.get(media_path))

        processed = 0
        async for outcome in _bounded_gather(sidecars, _worker, self.cfg.index_workers):
            if outcome == "indexed":
                report.indexed += 1
            elif outcome == "unchanged":
                report.unchanged += 1
            else:
                report.failed += 1
            processed += 1
            if processed % _PROGRESS_EVERY == 0:
                logging.info("Processed %d of %d sidecars", processed, report.discovered)

        if walk_errors:
            logging.warning("Skipping index pruning: %d directories could not be read", len(walk_errors))
        elif self.cfg.prune_missing:
            report.pruned = await self._prune(stored.keys(), seen_media)

        report.duration_s = round(time.time() - start, 3)
        logging.info(
            "Sidecar scan completed - discovered: %d, indexed: %d, unchanged: %d, failed: %d, pruned: %d",
            report.discovered,
            report.indexed,
            report.unchanged,
            report.failed,
            report.pruned,
        )
        if report.failed:
            logging.warning("Scan completed with %d errors", report.failed)
        return report

    async def _prune(self, indexed_paths: Iterable[str], seen_media: set[str]) -> int:
        """Drop index rows under the scan root whose sidecar no longer exists."""
        stale = [
            p
            for p in indexed_paths
            if p not in seen_media
            and is_within_root(os.path.dirname(p), self.cfg.scan_dir)
            and not os.path.exists(p + self.cfg.sidecar_suffix)
        ]
        if not stale:
            return 0
        async with self._write_lock:
            try:
                removed = await dbmod.delete_files(self.cfg.db_path, stale)
            except dbmod.StoreError:
                logging.error("Failed to prune %d stale index rows", len(stale), exc_info=True)
                return 0
        logging.info("Pruned %d index rows for removed sidecars", removed)
        return removed
