from __future__ import annotations

import fnmatch
import hashlib
import io
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .security import PathContext


RDF_NS = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
XMP_NS = "http://ns.adobe.com/xap/1.0/"
DIGIKAM_NS = "http://www.digikam.org/ns/1.0/"
DC_NS = "http://purl.org/dc/elements/1.1/"

_RDF_LI = f"{{{RDF_NS}}}li"
_RDF_SEQ = f"{{{RDF_NS}}}Seq"
_RDF_BAG = f"{{{RDF_NS}}}Bag"
_RDF_ALT = f"{{{RDF_NS}}}Alt"
_XMP_MODIFY_DATE = f"{{{XMP_NS}}}ModifyDate"
_DIGIKAM_TAGS_LIST = f"{{{DIGIKAM_NS}}}TagsList"
_DC_TITLE = f"{{{DC_NS}}}title"

# Keys written to the index. Tags share one key, one entry per tag.
KEY_MODIFY_DATE = "xmp:ModifyDate"
KEY_TAGS = "digiKam:TagsList"
KEY_TITLE = "dc:title"

TITLE_SEPARATOR = ";"


class SidecarParseError(ValueError):
    """Raised when sidecar content is not a well-formed metadata document."""


@dataclass(frozen=True)
class MetadataEntry:
    key: str
    value: str


def fingerprint_bytes(data: bytes) -> str:
    """Fast content fingerprint for change detection. Not a security hash."""
    return hashlib.blake2b(data, digest_size=8).hexdigest()


def extract_metadata(data: bytes) -> List[MetadataEntry]:
    """Extract the recognized XMP fields from sidecar bytes.

    Output order: modification date, one entry per tag in document order,
    then the title (alternatives joined with ``;``). Unrecognized fields are
    dropped. Raises :class:`SidecarParseError` for malformed input.
    """
    upper = data.upper()
    if b"<!DOCTYPE" in upper or b"<!ENTITY" in upper:
        raise SidecarParseError("DTDs and entity declarations are not allowed in sidecars")

    modify_date: Optional[str] = None
    tags: List[str] = []
    titles: List[str] = []
    stack: List[str] = []

    try:
        for event, elem in ET.iterparse(io.BytesIO(data), events=("start", "end")):
            if event == "start":
                stack.append(elem.tag)
                if modify_date is None:
                    attr = elem.attrib.get(_XMP_MODIFY_DATE)
                    if attr is not None and attr.strip():
                        modify_date = attr.strip()
                continue

            text = (elem.text or "").strip()
            if elem.tag == _XMP_MODIFY_DATE and modify_date is None and text:
                modify_date = text
            elif elem.tag == _RDF_LI and text and len(stack) >= 3:
                container, owner = stack[-2], stack[-3]
                if owner == _DIGIKAM_TAGS_LIST and container in (_RDF_SEQ, _RDF_BAG):
                    tags.append(text)
                elif owner == _DC_TITLE and container == _RDF_ALT:
                    titles.append(text)
            stack.pop()
    except ET.ParseError as exc:
        raise SidecarParseError(f"Malformed sidecar XML: {exc}") from exc

    entries: List[MetadataEntry] = []
    if modify_date is not None:
        entries.append(MetadataEntry(KEY_MODIFY_DATE, modify_date))
    entries.extend(MetadataEntry(KEY_TAGS, tag) for tag in tags)
    if titles:
        entries.append(MetadataEntry(KEY_TITLE, TITLE_SEPARATOR.join(titles)))
    return entries


def is_sidecar(path: str | Path, suffix: str) -> bool:
    name = os.path.basename(os.fspath(path))
    return len(name) > len(suffix) and name.lower().endswith(suffix.lower())


def media_path_for(sidecar: str | Path, suffix: str) -> str:
    """``/photos/a.jpg.xmp`` -> ``/photos/a.jpg``."""
    raw = os.fspath(sidecar)
    if not raw.lower().endswith(suffix.lower()):
        raise ValueError(f"Not a sidecar path: {raw}")
    return raw[: -len(suffix)]


def _is_ignored(path: str, ignore_patterns: List[str]) -> bool:
    basename = os.path.basename(path)
    for pat in ignore_patterns:
        if fnmatch.fnmatch(path, pat) or fnmatch.fnmatch(basename, pat):
            return True
        # "**/x" must also match "x" at the scan root.
        stripped = pat
        while stripped.startswith("**/"):
            stripped = stripped[3:]
        if stripped != pat and (fnmatch.fnmatch(path, stripped) or fnmatch.fnmatch(basename, stripped)):
            return True
    return False


def iter_sidecars(
    path_context: PathContext,
    root: str,
    *,
    suffix: str,
    ignore_patterns: List[str],
    on_error: Optional[Callable[[str], None]] = None,
) -> Iterator[Path]:
    root_path = path_context.resolve_path(root)
    for p in path_context.iter_files(root_path, on_error=on_error):
        if not is_sidecar(p, suffix):
            continue
        rel = str(p.relative_to(root_path))
        if _is_ignored(rel, ignore_patterns):
            continue
        yield p


def read_sidecar(path: Path, max_bytes: int) -> bytes:
    """Read a sidecar, rejecting files over *max_bytes* or changed mid-read."""
    flags = os.O_RDONLY
    if hasattr(os, "O_CLOEXEC"):
        flags |= os.O_CLOEXEC
    fd = os.open(path, flags)
    try:
        st_before = os.fstat(fd)
        if st_before.st_size > max_bytes:
            raise ValueError(f"Sidecar too large: {path} ({st_before.st_size} bytes)")
        with os.fdopen(fd, "rb", closefd=False) as handle:
            data = handle.read()
        st_after = os.fstat(fd)
        if st_after.st_mtime_ns != st_before.st_mtime_ns or st_after.st_size != st_before.st_size:
            raise OSError(f"Sidecar changed while reading: {path}")
        return data
    finally:
        os.close(fd)


@dataclass(frozen=True)
class ParsedSidecar:
    sidecar_path: str
    media_path: str
    fingerprint: str
    entries: Optional[List[MetadataEntry]]
