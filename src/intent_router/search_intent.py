"""
Hybrid search-intent classification.

This module decides whether a message needs a live search, and of which
kind, with an explicit fallback chain:

1. Near-empty messages resolve to a low-confidence "no search" default
   without touching the LLM or the cache.
2. Cache lookup by normalized message text (``source=cache``).
3. One LLM call asking for a JSON verdict, parsed by the ordered strategies
   in ``json_parsing`` and validated against ``LLMIntentVerdict``.
4. Keyword fallback when the call fails, times out, returns nothing
   parseable, or answers below the low-confidence threshold. Priority:
   no-search phrases > news > local > shopping > knowledge > default.
5. Every non-trivial result is written back to the cache.

``classify`` never raises.
"""

import asyncio
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator

from src.intent_router.cache import ExpiringCache
from src.intent_router.json_parsing import parse_with_strategies
from src.intent_router.llm import LLMOptions, LLMService
from src.intent_router.models import (
    Domain,
    IntentSource,
    RequestContext,
    SearchIntentResult,
    SearchType,
    UserIntent,
)
from src.intent_router.patterns import PatternClassifier
from src.intent_router.utils import ConfigurationError, Timer, sanitize_for_logging


# Heuristic confidences for keyword decisions; tune alongside the rule tables
FALLBACK_CONFIDENCE: Dict[str, float] = {
    "no_search": 85.0,
    "news": 70.0,
    "local": 75.0,
    "shopping": 70.0,
    "knowledge": 60.0,
    "default": 30.0,
}
NEAR_EMPTY_CONFIDENCE = 10.0
DEFAULT_LLM_CONFIDENCE = 70.0

SEARCH_INTENT_PROMPT = """You are an intent classifier for a conversational assistant used in India. Decide whether the user's message needs a live web or local search.

Return:
1. intent: one of question, local_search, product_search, factual_search, entertainment, compliment, greeting, farewell, gratitude, agreement, disagreement, frustration, casual_chat, command, clarification, continuation, creative_request, unknown
2. needsSearch: true only when the answer needs real-time or external information (places, prices, news, scores, releases, facts the assistant may not know)
3. searchType: local, web, news, shopping, knowledge or none
4. suggestedQuery: when a search is needed, a short English search query with filler words removed (translate Hinglish)
5. confidence: 0-100
6. reasoning: a few words

Examples:
- "best pizza near me" -> local_search, needsSearch true, local, "pizza restaurants nearby"
- "dinner kahaan milega" -> local_search, needsSearch true, local, "dinner restaurants"
- "iPhone 16 price" -> product_search, needsSearch true, shopping, "iPhone 16 price India"
- "news about elections" -> factual_search, needsSearch true, news, "election news"
- "what is quantum computing" -> factual_search, needsSearch true, knowledge, "quantum computing"
- "badi achi baat" -> compliment, needsSearch false, none
- "thank you so much" -> gratitude, needsSearch false, none
- "ek kavita likho" -> creative_request, needsSearch false, none

User message: "{USER_MESSAGE}"

Respond with ONLY a JSON object:
{"intent": "...", "needsSearch": true, "searchType": "...", "suggestedQuery": "...", "confidence": 85, "reasoning": "..."}"""


class LLMIntentVerdict(BaseModel):
    """Schema the model's JSON answer must satisfy."""
    intent: UserIntent = UserIntent.UNKNOWN
    needs_search: bool = Field(..., alias="needsSearch")
    search_type: SearchType = Field(SearchType.NONE, alias="searchType")
    suggested_query: Optional[str] = Field(None, alias="suggestedQuery")
    confidence: float = DEFAULT_LLM_CONFIDENCE
    reasoning: str = "No reasoning provided"

    class Config:
        populate_by_name = True

    @field_validator("intent", mode="before")
    @classmethod
    def coerce_intent(cls, v):
        try:
            return UserIntent(str(v).strip().lower())
        except ValueError:
            return UserIntent.UNKNOWN

    @field_validator("search_type", mode="before")
    @classmethod
    def coerce_search_type(cls, v):
        try:
            return SearchType(str(v).strip().lower())
        except ValueError:
            return SearchType.NONE

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return DEFAULT_LLM_CONFIDENCE
        return max(0.0, min(100.0, float(v)))

    @field_validator("reasoning", mode="before")
    @classmethod
    def coerce_reasoning(cls, v):
        return str(v) if v else "No reasoning provided"

    def to_result(self) -> SearchIntentResult:
        query = (self.suggested_query or "").strip()
        return SearchIntentResult(
            needs_search=self.needs_search,
            search_type=self.search_type if self.needs_search else SearchType.NONE,
            intent=self.intent,
            suggested_query=query if self.needs_search and query else None,
            confidence=self.confidence,
            source=IntentSource.LLM,
            reasoning=self.reasoning[:300]
        )


def normalize_cache_key(message: str, max_length: int = 200) -> str:
    """Lowercase, collapse whitespace and truncate."""
    return " ".join(message.lower().split())[:max_length]


def default_result(reason: str, confidence: float = FALLBACK_CONFIDENCE["default"]) -> SearchIntentResult:
    """Low-confidence "no search" verdict."""
    return SearchIntentResult(
        needs_search=False,
        search_type=SearchType.NONE,
        intent=UserIntent.UNKNOWN,
        suggested_query=None,
        confidence=confidence,
        source=IntentSource.DEFAULT,
        reasoning=reason
    )


class SearchIntentClassifier:
    """LLM-first search-intent classifier with keyword fallback and caching."""

    def __init__(
        self,
        llm_service: LLMService,
        patterns: PatternClassifier,
        cache: Optional[ExpiringCache] = None,
        llm_timeout_ms: int = 3000,
        low_confidence_threshold: float = 40.0,
        min_text_length: int = 2,
        max_key_length: int = 200
    ):
        if llm_service is None:
            raise ConfigurationError("SearchIntentClassifier requires an LLMService")
        if patterns is None:
            raise ConfigurationError("SearchIntentClassifier requires a PatternClassifier")

        self.llm_service = llm_service
        self.patterns = patterns
        self.cache = cache if cache is not None else ExpiringCache("search_intent", ttl_seconds=10 * 60, max_size=1000)
        self.llm_timeout_ms = llm_timeout_ms
        self.low_confidence_threshold = low_confidence_threshold
        self.min_text_length = min_text_length
        self.max_key_length = max_key_length

        self._source_counts: Dict[str, int] = {source.value: 0 for source in IntentSource}
        self._llm_calls = 0
        self._llm_failures = 0

    def _record(self, result: SearchIntentResult) -> SearchIntentResult:
        self._source_counts[result.source.value] += 1
        return result

    # Keyword fallback

    def keyword_fallback(self, message: str) -> SearchIntentResult:
        """Deterministic verdict from the keyword tables.

        Returns a ``default`` sourced result when nothing matches.
        """
        tables = self.patterns.rules.current
        text = " ".join(message.lower().split())

        for intent, pattern in tables.no_search_patterns:
            if pattern.search(text):
                return SearchIntentResult(
                    needs_search=False,
                    search_type=SearchType.NONE,
                    intent=intent,
                    suggested_query=None,
                    confidence=FALLBACK_CONFIDENCE["no_search"],
                    source=IntentSource.KEYWORD_FALLBACK,
                    reasoning=f"Matched {intent.value} phrase"
                )

        core_text = self.patterns.extract_core_text(message)
        checks = (
            ("news", tables.news_pattern, SearchType.NEWS, UserIntent.FACTUAL_SEARCH, Domain.GENERAL),
            ("local", tables.local_pattern, SearchType.LOCAL, UserIntent.LOCAL_SEARCH, Domain.LOCAL),
            ("shopping", tables.shopping_pattern, SearchType.SHOPPING, UserIntent.PRODUCT_SEARCH, Domain.SHOPPING),
            ("knowledge", tables.knowledge_pattern, SearchType.KNOWLEDGE, UserIntent.QUESTION, None),
        )
        for name, pattern, search_type, intent, domain in checks:
            if not pattern.search(text):
                continue
            if domain is None:
                suggested = core_text
            else:
                suggested = self.patterns.build_search_query(core_text, domain)
            return SearchIntentResult(
                needs_search=True,
                search_type=search_type,
                intent=intent,
                suggested_query=suggested or None,
                confidence=FALLBACK_CONFIDENCE[name],
                source=IntentSource.KEYWORD_FALLBACK,
                reasoning=f"Matched {name} keywords"
            )

        return default_result("No keyword matched")

    # LLM path

    async def _classify_with_llm(self, message: str, user_id: Optional[str]) -> Optional[SearchIntentResult]:
        """One LLM round trip. Returns None on any failure."""
        prompt = SEARCH_INTENT_PROMPT.replace("{USER_MESSAGE}", message.strip()[:1000].replace('"', "'"))
        options = LLMOptions(
            max_tokens=200,
            temperature=0.1,
            timeout_ms=self.llm_timeout_ms,
            user_id=user_id
        )

        self._llm_calls += 1
        try:
            response = await asyncio.wait_for(
                self.llm_service.generate_completion(prompt, options),
                timeout=self.llm_timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            self._llm_failures += 1
            logger.warning("Search intent LLM call timed out", timeout_ms=self.llm_timeout_ms)
            return None
        except Exception as e:
            self._llm_failures += 1
            logger.warning("Search intent LLM call failed", error=str(e))
            return None

        outcome = parse_with_strategies(response, LLMIntentVerdict.model_validate)
        if not outcome.ok:
            self._llm_failures += 1
            logger.warning("Search intent response unparseable",
                           error=outcome.error,
                           response_preview=sanitize_for_logging(response, 120))
            return None

        logger.debug("Search intent response parsed", strategy=outcome.strategy)
        return outcome.value.to_result()

    async def classify(self, message: str, context: Optional[RequestContext] = None) -> SearchIntentResult:
        """
        Classify a message, preferring the LLM and falling back to keywords.

        Args:
            message: Raw user message
            context: Request session, used for LLM attribution

        Returns:
            SearchIntentResult; never raises
        """
        if message is None or len(message.strip()) < self.min_text_length:
            return self._record(default_result("Message too short", NEAR_EMPTY_CONFIDENCE))

        key = normalize_cache_key(message, self.max_key_length)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Search intent cache hit", key=sanitize_for_logging(key, 60))
            return self._record(cached.model_copy(update={"source": IntentSource.CACHE}))

        user_id = context.user_id if context else None

        with Timer("search_intent_classification"):
            result = await self._classify_with_llm(message, user_id)

            if result is None:
                result = self.keyword_fallback(message)
            elif result.confidence < self.low_confidence_threshold:
                keyword_result = self.keyword_fallback(message)
                if keyword_result.source == IntentSource.KEYWORD_FALLBACK:
                    logger.info("Low confidence LLM verdict replaced by keyword match",
                                llm_confidence=result.confidence)
                    result = keyword_result

        self.cache.set(key, result)

        logger.info("Search intent resolved",
                    source=result.source.value,
                    needs_search=result.needs_search,
                    search_type=result.search_type.value,
                    confidence=result.confidence)
        return self._record(result)

    async def should_search(self, message: str, context: Optional[RequestContext] = None) -> bool:
        result = await self.classify(message, context)
        return result.needs_search

    async def get_search_query(self, message: str, context: Optional[RequestContext] = None) -> Optional[str]:
        result = await self.classify(message, context)
        if not result.needs_search:
            return None
        return result.suggested_query or self.patterns.extract_core_text(message)

    def clear_cache(self, message: Optional[str] = None) -> None:
        self.cache.clear(normalize_cache_key(message, self.max_key_length) if message else None)

    def stats(self) -> Dict[str, Any]:
        return {
            "sources": dict(self._source_counts),
            "llm_calls": self._llm_calls,
            "llm_failures": self._llm_failures,
            "cache": self.cache.stats(),
        }
