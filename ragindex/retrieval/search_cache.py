"""
Search response cache.

Responses are cached under sha256(normalised query + options + filters +
generation counters).  The generation counters (one per organization, one
per course) are bumped whenever content changes, which makes every older
entry unreachable at once without scanning keys; the TTL only bounds how
long unreachable entries linger.
"""
from __future__ import annotations

from typing import Optional

import orjson
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ragindex.schemas import SearchFilters, SearchOptions, SearchResponse
from ragindex.utils.cache import CacheStore
from ragindex.utils.helpers import collapse_whitespace, sha256_hex

SEARCH_TTL = 300


def normalize_query(query: str) -> str:
    return collapse_whitespace(query).lower()


class SearchCache:
    def __init__(self, cache: CacheStore, ttl_seconds: int = SEARCH_TTL) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _org_gen_key(organization_id: str) -> str:
        return f"search-gen:org:{organization_id}"

    @staticmethod
    def _course_gen_key(course_id: str) -> str:
        return f"search-gen:course:{course_id}"

    def _generations(self, filters: SearchFilters) -> list[str]:
        keys = [self._org_gen_key(filters.organization_id)]
        if filters.course_id is not None:
            keys.append(self._course_gen_key(filters.course_id))
        return [(raw or b"0").decode() for raw in self.cache.get_many(keys)]

    def key(self, query: str, filters: SearchFilters, options: SearchOptions) -> str:
        material = {
            "q": normalize_query(query),
            "filters": filters.model_dump(mode="json"),
            "options": options.model_dump(mode="json", exclude={"use_cache"}),
            "gen": self._generations(filters),
        }
        return f"search:{sha256_hex(orjson.dumps(material, option=orjson.OPT_SORT_KEYS))}"

    def get(self, key: str) -> Optional[SearchResponse]:
        raw = self.cache.get(key)
        if raw is None:
            return None
        try:
            return SearchResponse.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning(f"[SearchCache] Dropping undecodable entry {key}")
            return None

    def set(self, key: str, response: SearchResponse) -> None:
        self.cache.set(key, response.model_dump_json().encode("utf-8"), self.ttl_seconds)

    def invalidate(self, organization_id: str, course_id: Optional[str] = None) -> None:
        self.cache.incr(self._org_gen_key(organization_id))
        if course_id is not None:
            self.cache.incr(self._course_gen_key(course_id))
        logger.debug(f"[SearchCache] Invalidated org={organization_id} course={course_id}")
