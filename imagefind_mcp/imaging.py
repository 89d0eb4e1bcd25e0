from __future__ import annotations

import functools
import io
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError


VIDEO_EXTS = {".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv", ".m4v", ".3gp", ".ogv"}
RAW_EXTS = {".nef", ".cr2", ".cr3", ".arw", ".orf", ".rw2", ".raf", ".dng"}

JPEG_CONTENT_TYPE = "image/jpeg"
FFMPEG_TIMEOUT_S = 60

_JPEG_SOI = b"\xff\xd8"
_JPEG_EOI = b"\xff\xd9"
# Embedded previews below this size are the tiny EXIF thumbnails.
RAW_MIN_PREVIEW_BYTES = 50_000


@dataclass(frozen=True)
class GeneratedArtifact:
    data: bytes
    content_type: str


def is_video(path: str | Path) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTS


def extract_video_frame(path: Path, *, ffmpeg_path: str = "ffmpeg") -> bytes:
    """Return the first frame of *path* as JPEG bytes using ffmpeg."""
    ffmpeg = shutil.which(ffmpeg_path)
    if not ffmpeg:
        raise FileNotFoundError(f"ffmpeg not available ({ffmpeg_path}); cannot render video frame")
    cmd = [
        ffmpeg,
        "-hide_banner",
        "-loglevel", "error",
        "-i", str(path),
        "-frames:v", "1",
        "-f", "image2pipe",
        "-vcodec", "mjpeg",
        "-q:v", "2",
        "-",
    ]
    t0 = time.time()
    proc = subprocess.run(cmd, capture_output=True, timeout=FFMPEG_TIMEOUT_S, check=False)
    elapsed = time.time() - t0
    if proc.returncode != 0 or not proc.stdout:
        err = proc.stderr.decode("utf-8", errors="replace").strip()
        if len(err) > 1200:
            err = err[:1200] + "..."
        logging.warning("ffmpeg frame extraction failed for %s (code=%s, %.2fs): %s", path, proc.returncode, elapsed, err)
        raise RuntimeError(err or "ffmpeg frame extraction failed")
    logging.debug("Extracted video frame for %s in %.2fs", path, elapsed)
    return proc.stdout


def is_raw(path: str | Path) -> bool:
    return Path(path).suffix.lower() in RAW_EXTS


def find_embedded_jpegs(data: bytes, *, min_size: int = RAW_MIN_PREVIEW_BYTES) -> List[Tuple[int, int]]:
    """Return ``(start, end)`` spans of SOI..EOI runs larger than *min_size*, largest first."""
    spans: List[Tuple[int, int]] = []
    start = data.find(_JPEG_SOI)
    while start != -1:
        end = data.find(_JPEG_EOI, start + 2)
        if end == -1:
            break
        end += 2
        if end - start > min_size:
            spans.append((start, end))
        start = data.find(_JPEG_SOI, end)
    spans.sort(key=lambda span: span[1] - span[0], reverse=True)
    return spans


def open_raw_preview(path: Path) -> Image.Image:
    """Decode the largest embedded JPEG preview of a camera RAW file."""
    data = path.read_bytes()
    spans = find_embedded_jpegs(data)
    logging.debug("Found %d embedded JPEG candidates in %s", len(spans), path)
    for start, end in spans:
        try:
            img = Image.open(io.BytesIO(data[start:end]))
            img.load()
        except (OSError, ValueError):
            logging.debug("Embedded JPEG at offset %d in %s did not decode", start, path)
            continue
        return img
    raise UnidentifiedImageError(f"No decodable embedded JPEG in RAW file {path}")


def _open_source(path: Path, ffmpeg_path: str) -> Image.Image:
    if is_video(path):
        return Image.open(io.BytesIO(extract_video_frame(path, ffmpeg_path=ffmpeg_path)))
    if is_raw(path):
        return open_raw_preview(path)
    return Image.open(path)


def _to_8bit(img: Image.Image) -> Image.Image:
    if img.mode.startswith("I;16"):
        img = img.convert("I")
    if img.mode == "I":
        # Keep the high byte of each 16-bit sample.
        img = img.point(lambda v: v * (1 / 256)).convert("L")
    return img


def render_jpeg(img: Image.Image, *, max_dim: int, quality: int) -> bytes:
    # draft() lets the JPEG decoder downscale while decoding; no-op for other formats.
    img.draft("RGB", (max_dim, max_dim))
    img = ImageOps.exif_transpose(img)
    img = _to_8bit(img)
    if img.mode != "RGB":
        img = img.convert("RGB")
    img.thumbnail((max_dim, max_dim), Image.Resampling.LANCZOS)
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=int(quality), optimize=True)
    return out.getvalue()


def resize_to_jpeg(path: Path, *, max_dim: int, quality: int, ffmpeg_path: str = "ffmpeg") -> GeneratedArtifact:
    """Decode *path* (image, RAW preview, or first video frame) and re-encode it bounded to *max_dim*."""
    with _open_source(path, ffmpeg_path) as img:
        data = render_jpeg(img, max_dim=max_dim, quality=quality)
    return GeneratedArtifact(data=data, content_type=JPEG_CONTENT_TYPE)


def jpeg_generator(*, max_dim: int, quality: int, ffmpeg_path: str = "ffmpeg") -> Callable[[Path], GeneratedArtifact]:
    return functools.partial(resize_to_jpeg, max_dim=max_dim, quality=quality, ffmpeg_path=ffmpeg_path)
