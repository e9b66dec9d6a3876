"""
Memoized /api/show lookups keyed by model name.
"""

from collections.abc import Awaitable, Callable

from mocolamma.core.logging import get_logger
from mocolamma.schemas.models import ShowResponse

logger = get_logger(__name__)

ShowFetcher = Callable[[str], Awaitable[ShowResponse | None]]


class ModelInfoCache:
    """
    Caches model details until explicitly cleared.

    There is no TTL or eviction: model catalogs are small and details only
    change when a model is re-pulled, at which point the cache is cleared.
    """

    def __init__(self, fetcher: ShowFetcher):
        """
        Initialize the cache.

        Args:
            fetcher: Coroutine fetching details for a model name; returns None
                on failure
        """
        self._fetcher = fetcher
        self._entries: dict[str, ShowResponse] = {}

    def __contains__(self, model_name: str) -> bool:
        return model_name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, model_name: str) -> ShowResponse | None:
        """Return a cached entry without fetching."""
        return self._entries.get(model_name)

    async def get(self, model_name: str) -> ShowResponse | None:
        """
        Return details for a model, fetching them on a cache miss.

        Failed fetches are not cached and yield None.
        """
        cached = self._entries.get(model_name)
        if cached is not None:
            logger.debug(f"Fetched model {model_name} details from cache")
            return cached

        info = await self._fetcher(model_name)
        if info is not None:
            self._entries[model_name] = info
        return info

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Model information cache cleared")
