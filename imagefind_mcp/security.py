from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional


class PathTraversal(PermissionError):
    """Raised when a requested path escapes the allowed roots or is not a servable file."""


class PathContext:
    """Canonicalizes request paths and confines them to a set of roots.

    Every file-serving operation goes through :meth:`resolve_file`; cache
    writes go through :meth:`write_bytes_atomic`.
    """

    def __init__(self, allowed_roots: Iterable[str | Path]) -> None:
        roots = [self._normalize_root(p) for p in allowed_roots]
        self._allowed_roots = [r for r in roots if r]

    @property
    def allowed_roots(self) -> List[str]:
        return list(self._allowed_roots)

    def _normalize_root(self, root: str | Path) -> Optional[str]:
        if not root:
            return None
        return os.path.realpath(os.path.abspath(str(root)))

    def _normalize_case(self, path: str) -> str:
        if os.name == "nt":
            return os.path.normcase(path)
        return path

    def _canonicalize(self, path: str | Path) -> str:
        raw = os.fspath(path)
        if not raw or "\x00" in raw:
            raise PathTraversal(f"Invalid path: {raw!r}")
        if not os.path.isabs(raw) and self._allowed_roots:
            raw = os.path.join(self._allowed_roots[0], raw)
        try:
            return os.path.realpath(os.path.abspath(raw))
        except (OSError, ValueError) as exc:
            raise PathTraversal(f"Cannot canonicalize path: {raw!r}") from exc

    def _containing_root(self, canonical: str) -> Optional[str]:
        norm_ap = self._normalize_case(canonical)
        best: Optional[str] = None
        for root in self._allowed_roots:
            norm_root = self._normalize_case(root)
            try:
                common = os.path.commonpath([norm_ap, norm_root])
            except ValueError:
                continue
            if common == norm_root and (best is None or len(root) > len(best)):
                best = root
        return best

    def is_allowed(self, path: str | Path) -> bool:
        try:
            self.ensure_allowed(path)
        except PathTraversal:
            return False
        return True

    def ensure_allowed(self, path: str | Path) -> str:
        """Return the canonical form of *path*, or raise if it leaves every root."""
        if not self._allowed_roots:
            raise PathTraversal("No allowed roots configured.")
        canonical = self._canonicalize(path)
        if self._containing_root(canonical) is None:
            raise PathTraversal(f"Path '{canonical}' is outside the allowed roots.")
        return canonical

    def resolve_path(self, path: str | Path) -> Path:
        return Path(self.ensure_allowed(path))

    def resolve_file(self, path: str | Path) -> Path:
        """Canonicalize *path* and require an existing regular file inside a root.

        Fails closed: escapes, canonicalization errors, missing targets and
        non-regular files all raise :class:`PathTraversal`.
        """
        resolved = self.resolve_path(path)
        try:
            st = os.stat(resolved)
        except OSError as exc:
            raise PathTraversal(f"Path '{resolved}' does not exist.") from exc
        if not os.path.isfile(resolved) or not _is_regular(st.st_mode):
            raise PathTraversal(f"Path '{resolved}' is not a regular file.")
        return resolved

    def open_file(self, path: str | Path, mode: str = "rb"):
        if any(flag in mode for flag in ("w", "a", "+", "x")):
            raise ValueError("PathContext.open_file only supports read modes. Use write_bytes_atomic.")
        fd = self._open_file_no_symlink_race(path)
        return os.fdopen(fd, mode)

    def read_bytes(self, path: str | Path) -> bytes:
        with self.open_file(path, "rb") as handle:
            return handle.read()

    def _open_file_no_symlink_race(self, path: str | Path) -> int:
        """Open an already-resolved file and verify it is still the file that was checked."""
        resolved = self.resolve_file(path)
        flags = os.O_RDONLY
        if hasattr(os, "O_NOFOLLOW"):
            flags |= os.O_NOFOLLOW
        if hasattr(os, "O_CLOEXEC"):
            flags |= os.O_CLOEXEC
        try:
            fd = os.open(resolved, flags)
        except OSError as exc:
            raise PathTraversal(f"Cannot open '{resolved}'.") from exc
        try:
            if not os.path.samestat(os.fstat(fd), os.stat(resolved)):
                raise PathTraversal(f"Path changed while opening '{resolved}'")
        except BaseException:
            os.close(fd)
            raise
        return fd

    def iter_files(
        self,
        root: str | Path,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> Iterator[Path]:
        """Yield regular files below *root* without following directory symlinks.

        Symlinked files are yielded only when their target stays inside the
        allowed roots. Unreadable directories are logged, reported to *on_error*
        and skipped.
        """
        resolved_root = self.resolve_path(root)
        stack = [resolved_root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as entries:
                    for entry in entries:
                        candidate = Path(entry.path)
                        try:
                            if entry.is_dir(follow_symlinks=False):
                                stack.append(candidate)
                                continue
                            if entry.is_symlink():
                                if not self.is_allowed(candidate) or not candidate.is_file():
                                    continue
                                yield candidate
                            elif entry.is_file(follow_symlinks=False):
                                yield candidate
                        except OSError:
                            logging.debug("Skipping unreadable filesystem entry: %s", entry.path, exc_info=True)
            except OSError:
                logging.warning("Skipping unreadable directory during scan: %s", current, exc_info=True)
                if on_error is not None:
                    on_error(str(current))

    def makedirs(self, path: str | Path, *, exist_ok: bool = True) -> None:
        resolved = self.resolve_path(path)
        os.makedirs(resolved, exist_ok=exist_ok)

    def write_bytes_atomic(self, path: str | Path, data: bytes) -> Path:
        """Write *data* next to *path* and rename it into place.

        Readers see either the previous file or the complete new one, never a
        partial write.
        """
        resolved = self.resolve_path(path)
        dir_path = resolved.parent
        os.makedirs(dir_path, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=dir_path, prefix=".tmp-", suffix=resolved.suffix)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, resolved)
        finally:
            if os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    logging.debug("Failed to cleanup temp file %s", temp_path, exc_info=True)
        return resolved


def _is_regular(mode: int) -> bool:
    return stat.S_ISREG(mode)


def is_within_root(path: str | Path, root: str | Path) -> bool:
    """Return True if *path* canonicalizes to *root* or somewhere below it."""
    ap = os.path.realpath(os.fspath(path))
    ar = os.path.realpath(os.fspath(root))
    try:
        return os.path.commonpath([ap, ar]) == ar
    except ValueError:
        # Different drives on Windows etc.
        return False
