import asyncio

import pytest

pytest.importorskip("aiosqlite")

from imagefind_mcp import db as dbmod
from imagefind_mcp.parsing import KEY_TAGS, KEY_TITLE, MetadataEntry


def _tags(*values):
    return [MetadataEntry(KEY_TAGS, v) for v in values]


@pytest.mark.asyncio
async def test_upsert_replaces_entries(tmp_path):
    db_path = str(tmp_path / "imagefind.db")
    try:
        await dbmod.init_db(db_path)
        first_id = await dbmod.upsert_file(db_path, "/p/a.jpg", "f1", _tags("cat", "outdoor"))
        second_id = await dbmod.upsert_file(db_path, "/p/a.jpg", "f2", _tags("dog"))

        assert first_id == second_id
        assert await dbmod.fetch_entries(db_path, "/p/a.jpg") == _tags("dog")
        assert await dbmod.get_fingerprint(db_path, "/p/a.jpg") == "f2"
        assert await dbmod.count_files(db_path) == 1

        async with dbmod.get_connection(db_path) as db:
            rows = await db.execute_fetchall("SELECT COUNT(*) FROM metadata_entries")
        assert rows[0][0] == 1
    finally:
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_failed_upsert_rolls_back(tmp_path):
    db_path = str(tmp_path / "imagefind.db")
    try:
        await dbmod.init_db(db_path)
        await dbmod.upsert_file(db_path, "/p/a.jpg", "f1", _tags("cat"))

        bad = [MetadataEntry(KEY_TAGS, "dog"), MetadataEntry(KEY_TAGS, object())]
        with pytest.raises(dbmod.StoreError):
            await dbmod.upsert_file(db_path, "/p/a.jpg", "f2", bad)

        # Previous state is intact: neither half-deleted nor half-inserted.
        assert await dbmod.fetch_entries(db_path, "/p/a.jpg") == _tags("cat")
        assert await dbmod.get_fingerprint(db_path, "/p/a.jpg") == "f1"
    finally:
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_query_is_conjunctive_and_ordered(tmp_path):
    db_path = str(tmp_path / "imagefind.db")
    try:
        await dbmod.init_db(db_path)
        await dbmod.upsert_file(db_path, "/p/z.jpg", "1", _tags("vacation", "beach"))
        await dbmod.upsert_file(db_path, "/p/a.jpg", "2", _tags("vacation", "mountain"))
        await dbmod.upsert_file(db_path, "/p/m.jpg", "3", _tags("Beach party"))

        hits = await dbmod.query_files(db_path, ["vacation", "beach"])
        assert [h.file_path for h in hits] == ["/p/z.jpg"]
        assert hits[0].value == "vacation"

        hits = await dbmod.query_files(db_path, ["beach"])
        assert [(h.file_path, h.value) for h in hits] == [
            ("/p/m.jpg", "Beach party"),
            ("/p/z.jpg", "beach"),
        ]

        everything = await dbmod.query_files(db_path, [])
        assert [h.file_path for h in everything] == ["/p/a.jpg", "/p/m.jpg", "/p/z.jpg"]

        assert await dbmod.query_files(db_path, ["vacation", "snow"]) == []
    finally:
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_query_case_insensitive_unicode(tmp_path):
    db_path = str(tmp_path / "imagefind.db")
    try:
        await dbmod.init_db(db_path)
        await dbmod.upsert_file(
            db_path,
            "/p/a.jpg",
            "1",
            [MetadataEntry(KEY_TITLE, "Straße in MÜNCHEN")],
        )
        hits = await dbmod.query_files(db_path, ["strasse", "münchen"])
        assert [h.file_path for h in hits] == ["/p/a.jpg"]
    finally:
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_file_without_entries_matches_empty_query(tmp_path):
    db_path = str(tmp_path / "imagefind.db")
    try:
        await dbmod.init_db(db_path)
        await dbmod.upsert_file(db_path, "/p/a.jpg", "1", [])
        hits = await dbmod.query_files(db_path, [])
        assert [(h.file_path, h.value) for h in hits] == [("/p/a.jpg", "")]
        assert await dbmod.query_files(db_path, ["x"]) == []
    finally:
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_delete_cascades(tmp_path):
    db_path = str(tmp_path / "imagefind.db")
    try:
        await dbmod.init_db(db_path)
        await dbmod.upsert_file(db_path, "/p/a.jpg", "1", _tags("cat"))
        await dbmod.upsert_file(db_path, "/p/b.jpg", "2", _tags("dog"))

        assert await dbmod.delete_files(db_path, ["/p/a.jpg", "/p/missing.jpg"]) == 1
        assert await dbmod.list_file_paths(db_path) == ["/p/b.jpg"]
        async with dbmod.get_connection(db_path) as db:
            rows = await db.execute_fetchall(
                "SELECT COUNT(*) FROM metadata_entries e LEFT JOIN files f ON f.id = e.file_id WHERE f.id IS NULL"
            )
        assert rows[0][0] == 0
        assert await dbmod.fetch_fingerprints(db_path) == {"/p/b.jpg": "2"}
    finally:
        await dbmod.close_db_pool()


def test_build_match_query_params():
    query = dbmod.build_match_query(["a", "b"])
    assert query.params == ("a", "a", "b")
    assert query.text.count("EXISTS") == 2
    assert dbmod.build_match_query([]).params == ()


def test_init_db_is_idempotent(tmp_path):
    db_path = str(tmp_path / "imagefind.db")

    async def _run():
        try:
            await dbmod.init_db(db_path)
            await dbmod.init_db(db_path)
            return await dbmod.count_files(db_path)
        finally:
            await dbmod.close_db_pool()

    assert asyncio.run(_run()) == 0
