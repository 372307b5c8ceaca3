"""
Catalog read-cache invalidation.
Ingestion drops cached piece and catalog-listing entries after it commits.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

import structlog
from redis import Redis

from smart_upload.config import settings

logger = structlog.get_logger(__name__)


def piece_cache_key(piece_id: str, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.CATALOG_CACHE_PREFIX}:piece:{piece_id}"


def catalog_cache_key(prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.CATALOG_CACHE_PREFIX}:catalog"


class CatalogCache(ABC):
    @abstractmethod
    def invalidate_pieces(self, piece_ids: Iterable[str]) -> int:
        """Drop cached entries for these pieces and the catalog listing."""
        ...


class RedisCatalogCache(CatalogCache):
    def __init__(self, connection: Optional[Redis] = None, redis_url: Optional[str] = None):
        self._conn = connection or Redis.from_url(redis_url or settings.REDIS_URL)

    def invalidate_pieces(self, piece_ids: Iterable[str]) -> int:
        keys = [piece_cache_key(pid) for pid in piece_ids]
        keys.append(catalog_cache_key())
        deleted = int(self._conn.delete(*keys))
        logger.info("catalog_cache_invalidated", keys=len(keys), deleted=deleted)
        return deleted


class InMemoryCatalogCache(CatalogCache):
    """Records invalidated keys. Used with the in-memory queue backend."""

    def __init__(self):
        self.invalidated: list[str] = []

    def invalidate_pieces(self, piece_ids: Iterable[str]) -> int:
        keys = [piece_cache_key(pid) for pid in piece_ids]
        keys.append(catalog_cache_key())
        self.invalidated.extend(keys)
        return len(keys)
