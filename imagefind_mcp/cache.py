"""On-demand derivative cache.

One routine, :meth:`DerivativeCache.get_or_create`, serves every derivative
kind. A variant with a generator produces its artifact on a miss and writes
it with temp-file + rename; a variant without one (pre-transcoded video) only
looks up an existing companion file.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .imaging import GeneratedArtifact
from .locks import KeyedLocks
from .security import PathContext, PathTraversal


VIDEO_PREVIEW_SUFFIX = "_480p.mp4"
VIDEO_CONTENT_TYPE = "video/mp4"


class ArtifactNotFound(FileNotFoundError):
    """Raised when a lookup-only variant has no pre-built artifact."""


class GenerationError(RuntimeError):
    """Raised when a generator fails to produce an artifact."""


@dataclass(frozen=True)
class Variant:
    name: str
    cache_root: str
    generator: Optional[Callable[[Path], GeneratedArtifact]] = None
    content_type: str = "image/jpeg"
    suffix: str = ".jpg"


@dataclass(frozen=True)
class Artifact:
    data: bytes
    content_type: str
    path: Path
    generated: bool


def cache_key(source: str | Path, variant_name: str) -> str:
    """Deterministic key: same (source, variant) always maps to the same file."""
    h = hashlib.sha256()
    h.update(variant_name.encode("utf-8"))
    h.update(b"\x00")
    h.update(os.fspath(source).encode("utf-8", errors="surrogateescape"))
    return h.hexdigest()


def video_preview_name(source: str | Path) -> str:
    return f"{Path(source).stem}{VIDEO_PREVIEW_SUFFIX}"


class DerivativeCache:
    def __init__(self, path_context: Optional[PathContext] = None) -> None:
        self._path_context = path_context
        self._locks = KeyedLocks()

    def _context_for(self, variant: Variant) -> PathContext:
        if self._path_context is not None:
            return self._path_context
        return PathContext([variant.cache_root])

    def cache_path(self, source: str | Path, variant: Variant) -> Path:
        root = Path(os.path.abspath(variant.cache_root))
        if variant.generator is None:
            return root / video_preview_name(source)
        return root / f"{cache_key(source, variant.name)}{variant.suffix}"

    def exists(self, source: str | Path, variant: Variant) -> bool:
        return self.cache_path(source, variant).is_file()

    async def get_or_create(
        self,
        source: str | Path,
        variant: Variant,
        *,
        cache_bust: Optional[str] = None,
    ) -> Artifact:
        """Return the cached artifact for (*source*, *variant*), generating it on a miss.

        Any ``cache_bust`` value, even an empty one, skips the hit check and
        overwrites the stored artifact.
        Raises :class:`ArtifactNotFound` for lookup-only variants without a
        companion file and :class:`GenerationError` when generation fails.
        """
        source_path = Path(source)
        target = self.cache_path(source_path, variant)
        context = self._context_for(variant)

        if variant.generator is None:
            return await self._lookup(context, target, variant)

        if cache_bust is None:
            cached = await _read_if_present(context, target)
            if cached is not None:
                logging.debug("Cache hit (%s) for %s", variant.name, source_path)
                return Artifact(cached, variant.content_type, target, generated=False)

        key = f"{variant.name}:{target.name}"
        async with self._locks.hold(key):
            if cache_bust is None:
                # Another request may have finished generating while we waited.
                cached = await _read_if_present(context, target)
                if cached is not None:
                    return Artifact(cached, variant.content_type, target, generated=False)
            return await self._generate(context, source_path, target, variant)

    async def _lookup(self, context: PathContext, target: Path, variant: Variant) -> Artifact:
        data = await _read_if_present(context, target)
        if data is None:
            logging.info("No pre-built %s artifact at %s", variant.name, target)
            raise ArtifactNotFound(f"Transcoded video file not found: {target.name}")
        return Artifact(data, variant.content_type, target, generated=False)

    async def _generate(self, context: PathContext, source: Path, target: Path, variant: Variant) -> Artifact:
        assert variant.generator is not None
        logging.info("Generating %s for %s", variant.name, source)
        try:
            produced = await asyncio.to_thread(variant.generator, source)
        except Exception as exc:
            logging.warning("Failed to generate %s for %s: %s", variant.name, source, exc)
            raise GenerationError(f"Failed to generate {variant.name} for {source}") from exc

        try:
            await asyncio.to_thread(context.write_bytes_atomic, target, produced.data)
        except OSError as exc:
            logging.warning("Failed to store %s in cache at %s", variant.name, target, exc_info=True)
            raise GenerationError(f"Cache directory for {variant.name} is not writable") from exc
        return Artifact(produced.data, produced.content_type, target, generated=True)


async def _read_if_present(context: PathContext, path: Path) -> Optional[bytes]:
    def _read() -> Optional[bytes]:
        try:
            return context.read_bytes(path)
        except PathTraversal:
            # Missing, not a regular file, or swapped for a symlink.
            return None

    return await asyncio.to_thread(_read)
