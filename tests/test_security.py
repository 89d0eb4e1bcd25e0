import os

import pytest

from imagefind_mcp.security import PathContext, PathTraversal, is_within_root


def _ctx(root):
    return PathContext([str(root)])


def test_relative_escape_rejected(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    ctx = _ctx(root)
    with pytest.raises(PathTraversal):
        ctx.resolve_file("../../etc/passwd")
    with pytest.raises(PathTraversal):
        ctx.resolve_path(str(root / ".." / "outside.jpg"))


def test_file_inside_root_accepted(tmp_path):
    root = tmp_path / "root"
    (root / "sub").mkdir(parents=True)
    target = root / "sub" / "a.jpg"
    target.write_bytes(b"jpeg")
    ctx = _ctx(root)
    assert ctx.resolve_file(str(target)) == target.resolve()
    assert ctx.resolve_file("sub/a.jpg") == target.resolve()
    assert ctx.resolve_path(str(root)) == root.resolve()


def test_directory_and_missing_rejected_by_resolve_file(tmp_path):
    root = tmp_path / "root"
    (root / "sub").mkdir(parents=True)
    ctx = _ctx(root)
    with pytest.raises(PathTraversal):
        ctx.resolve_file(str(root / "sub"))
    with pytest.raises(PathTraversal):
        ctx.resolve_file(str(root / "missing.jpg"))


def test_nul_byte_rejected(tmp_path):
    ctx = _ctx(tmp_path)
    with pytest.raises(PathTraversal):
        ctx.resolve_path("a\x00.jpg")


def test_symlink_escape_rejected(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "secret.txt"
    outside.write_text("nope")
    link = root / "link.jpg"
    try:
        os.symlink(outside, link)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported")
    ctx = _ctx(root)
    with pytest.raises(PathTraversal):
        ctx.resolve_file(str(link))
    assert list(ctx.iter_files(root)) == []


def test_iter_files_reports_unreadable_directories(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    ctx = _ctx(root)
    errors = []
    missing = root / "gone"
    # Walking a directory that disappears is reported, not raised.
    assert list(ctx.iter_files(missing, on_error=errors.append)) == []
    assert errors == [str(missing.resolve())]


def test_write_bytes_atomic(tmp_path):
    root = tmp_path / "cache"
    ctx = _ctx(root)
    target = root / "nested" / "thumb.jpg"
    written = ctx.write_bytes_atomic(target, b"first")
    assert written.read_bytes() == b"first"
    ctx.write_bytes_atomic(target, b"second")
    assert target.read_bytes() == b"second"
    leftovers = [p.name for p in target.parent.iterdir() if p.name.startswith(".tmp-")]
    assert leftovers == []
    with pytest.raises(PathTraversal):
        ctx.write_bytes_atomic(tmp_path / "escape.jpg", b"x")


def test_is_within_root(tmp_path):
    assert is_within_root(tmp_path / "a" / "b", tmp_path)
    assert is_within_root(tmp_path, tmp_path)
    assert not is_within_root(tmp_path.parent, tmp_path)
