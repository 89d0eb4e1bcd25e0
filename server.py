from __future__ import annotations

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.utilities.types import Image

from imagefind_mcp.cache import ArtifactNotFound, GenerationError
from imagefind_mcp.config import load_config
from imagefind_mcp.security import PathTraversal
from imagefind_mcp.service import ImageFindService, encode_b64


cfg = load_config()
service = ImageFindService(cfg)


@asynccontextmanager
async def _lifespan(_server: FastMCP) -> AsyncIterator[None]:
    try:
        report = await service.startup()
    except Exception:
        logging.critical("Startup tasks failed; the server cannot serve requests.", exc_info=True)
        raise
    if report is not None:
        logging.info("Startup scan: %s", report.as_dict())
    try:
        yield
    finally:
        logging.info("Shutdown initiated")
        try:
            await service.shutdown()
        except Exception:
            logging.warning("Shutdown cleanup failed", exc_info=True)


mcp = FastMCP(name="ImageFind MCP", lifespan=_lifespan)


@mcp.tool
async def search(query: str = "", include_thumbnails: bool = False) -> Dict[str, Any]:
    """Find indexed media whose metadata contains every term.

    Terms are separated by the literal " AND " (uppercase). Matching is a
    case-insensitive substring match against tags, titles and dates. An empty
    query lists every indexed file. Results are ordered by path.
    """
    start = time.time()
    try:
        result = await service.search(query, include_thumbnails=include_thumbnails)
    except ValueError as exc:
        return {"error": str(exc)}
    logging.info(
        "search_tool",
        extra={
            "operation": "search",
            "result_count": result["count"],
            "duration_ms": int((time.time() - start) * 1000),
        },
    )
    return result


@mcp.tool
async def thumbnail(path: str) -> Dict[str, Any]:
    """Return a small JPEG thumbnail (base64) for a media file, or null if unavailable."""
    try:
        return await service.thumbnail(path)
    except PathTraversal as exc:
        return {"error": str(exc)}


@mcp.tool
async def preview(path: str, cache_bust: Optional[str] = None) -> Image:
    """Return a resized full-size JPEG preview. Pass cache_bust to regenerate it."""
    try:
        artifact = await service.preview(path, cache_bust=cache_bust)
    except PathTraversal as exc:
        raise ToolError(str(exc)) from exc
    except GenerationError as exc:
        raise ToolError(f"Preview unavailable: {exc}") from exc
    return Image(data=artifact.data, format="jpeg")


@mcp.tool
async def video_preview(path: str) -> Dict[str, Any]:
    """Return the pre-transcoded 480p clip for a video. Never transcodes on demand."""
    try:
        artifact = await service.video_preview(path)
    except PathTraversal as exc:
        raise ToolError(str(exc)) from exc
    except ArtifactNotFound as exc:
        raise ToolError("Transcoded video file not found") from exc
    return {
        "file_path": path,
        "content_type": artifact.content_type,
        "data": encode_b64(artifact.data),
    }


@mcp.tool
async def health_check() -> str:
    """Liveness probe."""
    return "Healthy"


@mcp.tool
async def rescan() -> Dict[str, Any]:
    """Re-scan the media root for new, changed and removed sidecars."""
    return await service.rescan()


@mcp.tool
async def index_stats() -> Dict[str, Any]:
    """Number of indexed files and the configured scan root."""
    return await service.index_stats()


def main() -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()


if __name__ == "__main__":
    # Stdio transport by default
    main()
