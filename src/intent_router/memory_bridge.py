"""
Conversation memory bridge for recheck follow-ups.

Keeps one ``LastSearchQuery`` per user, written whenever a routing decision
needs search. A "check again" message is only honored when this slot (or,
once it has expired, a recent turn from the optional external memory store)
yields a search-worthy topic.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from loguru import logger

from src.intent_router.cache import ExpiringCache
from src.intent_router.models import ConversationTurn, Domain, LastSearchQuery, MessageRole
from src.intent_router.patterns import PatternClassifier
from src.intent_router.utils import sanitize_for_logging


@runtime_checkable
class MemoryStore(Protocol):
    """Durable conversation history owned by another service."""

    async def get_recent_context(self, user_id: str, limit: int) -> List[ConversationTurn]:
        ...


class ConversationMemoryBridge:
    """Per-user last-search slot with a generous TTL."""

    def __init__(
        self,
        patterns: PatternClassifier,
        cache: Optional[ExpiringCache] = None,
        memory_store: Optional[MemoryStore] = None,
        context_limit: int = 10
    ):
        self.patterns = patterns
        self.cache = cache if cache is not None else ExpiringCache("recheck", ttl_seconds=6 * 3600, max_size=1000)
        self.memory_store = memory_store
        self.context_limit = context_limit

    def remember(self, user_id: str, query: str, domain: Domain) -> Optional[LastSearchQuery]:
        """Overwrite the user's slot with a new search-worthy query."""
        query = " ".join((query or "").split())
        if not user_id or not query:
            return None

        entry = LastSearchQuery(query=query, domain=domain)
        self.cache.set(user_id, entry)
        logger.debug("Last search query remembered",
                     user_id=user_id,
                     query=sanitize_for_logging(query, 80),
                     domain=domain.value)
        return entry

    async def recall(self, user_id: str) -> Optional[LastSearchQuery]:
        """Return the user's last search topic, or None when there is none to repeat."""
        entry = self.cache.get(user_id)
        if entry is not None:
            return entry

        if self.memory_store is None:
            return None
        return await self._recall_from_store(user_id)

    async def _recall_from_store(self, user_id: str) -> Optional[LastSearchQuery]:
        try:
            turns = await self.memory_store.get_recent_context(user_id, self.context_limit)
        except Exception as e:
            logger.warning("Memory store lookup failed", user_id=user_id, error=str(e))
            return None

        # Newest first
        for turn in reversed(list(turns or [])):
            if turn.role != MessageRole.USER:
                continue
            content = turn.content.strip()
            if not content or self.patterns.is_recheck(content) or self.patterns.is_greeting(content):
                continue
            if self.patterns.match_category(content) is None:
                continue

            domain = self.patterns.detect_domain(content)
            logger.info("Recheck topic recovered from memory store", user_id=user_id, domain=domain.value)
            return LastSearchQuery(query=content, domain=domain, timestamp=turn.timestamp)

        return None

    def forget(self, user_id: Optional[str] = None) -> None:
        self.cache.clear(user_id)

    def stats(self) -> Dict[str, Any]:
        return {
            "memory_store_attached": self.memory_store is not None,
            "cache": self.cache.stats(),
        }
