from __future__ import annotations

import logging
import time
from typing import List

from . import db as dbmod


AND_DELIMITER = " AND "


def parse_query(raw: str) -> List[str]:
    """Split a search string into AND-terms.

    Only the literal, uppercase, space-padded ``" AND "`` separates terms.
    Blank terms are dropped, so a blank query yields ``[]`` (match-all).
    """
    if not raw:
        return []
    return [part.strip() for part in raw.split(AND_DELIMITER) if part.strip()]


class SearchEngine:
    def __init__(self, db_path: str, *, max_query_length: int = 1000) -> None:
        self.db_path = db_path
        self.max_query_length = int(max_query_length)

    async def search(self, raw: str) -> List[dbmod.SearchHit]:
        """Return files matching every term of *raw*, ordered by ascending path."""
        raw = raw or ""
        if len(raw) > self.max_query_length:
            raise ValueError(f"Query exceeds max length of {self.max_query_length} characters.")
        terms = parse_query(raw)
        start = time.time()
        hits = await dbmod.query_files(self.db_path, terms)
        logging.info(
            "search",
            extra={
                "operation": "search",
                "terms": len(terms),
                "results": len(hits),
                "duration_ms": int((time.time() - start) * 1000),
            },
        )
        return hits
