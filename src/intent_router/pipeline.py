"""
Intent & routing orchestration pipeline.

The pipeline turns one user message into a ``RoutingDecision``:

    START -> RECHECK_CHECK -> GREETING_CHECK -> SEQUEL_PATTERN_CHECK
          -> SEARCH_CLASSIFY || TONE_ANALYZE -> MERGE -> ROUTE_DECIDE -> DONE

The three checks are short-circuits: a match returns a complete decision
immediately, without any LLM call. Otherwise search classification and tone
analysis run concurrently, each behind its own timeout, and their results
are merged with the pattern classification.

Routing rule:
- needs search            -> ENRICHED (search dominates complexity)
- fast-tier plan / SIMPLE -> FAST
- everything else         -> ENRICHED

A classifier failure never fails the request; the worst case is a
"no search, FAST" decision.

Usage:
    initialize_app()
    pipeline = create_pipeline(llm_service)
    decision = await pipeline.route("best pizza near me", RequestContext(user_id="u1"))
    prompt_builder.consume(decision.to_record())
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from src.intent_router.cache import ExpiringCache
from src.intent_router.llm import LLMService
from src.intent_router.memory_bridge import ConversationMemoryBridge, MemoryStore
from src.intent_router.models import (
    ClassificationResult,
    Complexity,
    Domain,
    IntentSource,
    LastSearchQuery,
    PipelineStage,
    PlanTier,
    RequestContext,
    RouteTier,
    RoutingDecision,
    SearchIntentResult,
    SearchType,
    ShortCircuit,
    ToneAnalysis,
    UserIntent,
    utc_now,
)
from src.intent_router.patterns import PatternClassifier
from src.intent_router.rules import RuleConfigManager
from src.intent_router.search_intent import SearchIntentClassifier, default_result
from src.intent_router.tone import ToneAnalyzer
from src.intent_router.utils import (
    DEFAULT_SETTINGS,
    ConfigurationError,
    coerce_settings,
    generate_request_id,
    get_config,
    parse_plan_list,
    sanitize_for_logging,
)


ANONYMOUS_USER = "anonymous"
RECHECK_CONFIDENCE = 90.0
GREETING_CONFIDENCE = 95.0
SEQUEL_CONFIDENCE = 85.0
DEFAULT_FAST_TIER_PLANS = frozenset({PlanTier.STARTER, PlanTier.LITE})


@dataclass
class PipelineMetrics:
    """Counters tracked by the routing pipeline."""
    total_requests: int = 0
    fallback_decisions: int = 0
    stage_failures: int = 0
    short_circuits: Dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in ShortCircuit})
    routed: Dict[str, int] = field(default_factory=lambda: {t.value: 0 for t in RouteTier})
    processing_times: deque = field(default_factory=lambda: deque(maxlen=1000))

    def record(self, decision: RoutingDecision) -> None:
        self.total_requests += 1
        self.routed[decision.routed_to.value] += 1
        if decision.short_circuit is not None:
            self.short_circuits[decision.short_circuit.value] += 1
        self.processing_times.append(decision.processing_time_ms)

    def to_dict(self) -> Dict[str, Any]:
        times = sorted(self.processing_times)
        avg = sum(times) / len(times) if times else 0.0
        p99 = times[min(len(times) - 1, int(len(times) * 0.99))] if times else 0.0
        return {
            "total_requests": self.total_requests,
            "fallback_decisions": self.fallback_decisions,
            "stage_failures": self.stage_failures,
            "short_circuits": dict(self.short_circuits),
            "routed": dict(self.routed),
            "avg_processing_time_ms": round(avg, 3),
            "p99_processing_time_ms": round(p99, 3),
        }


class RoutingPipeline:
    """State machine that sequences the classifiers and emits a RoutingDecision."""

    def __init__(
        self,
        llm_service: LLMService,
        patterns: Optional[PatternClassifier] = None,
        search_classifier: Optional[SearchIntentClassifier] = None,
        tone_analyzer: Optional[ToneAnalyzer] = None,
        memory_bridge: Optional[ConversationMemoryBridge] = None,
        fast_tier_plans: Iterable[PlanTier] = DEFAULT_FAST_TIER_PLANS,
        stage_timeout_ms: int = 5000,
        timer: Callable[[], float] = time.perf_counter
    ):
        """Wire the pipeline. Missing classifiers are built with defaults.

        Raises:
            ConfigurationError: If no LLM service is provided
        """
        if llm_service is None:
            raise ConfigurationError("RoutingPipeline requires an LLMService")

        self.llm_service = llm_service
        self.patterns = patterns or PatternClassifier(RuleConfigManager())
        self.search_classifier = search_classifier or SearchIntentClassifier(llm_service, self.patterns)
        self.tone_analyzer = tone_analyzer or ToneAnalyzer(llm_service)
        self.memory_bridge = memory_bridge or ConversationMemoryBridge(self.patterns)
        self.fast_tier_plans = frozenset(fast_tier_plans)
        self.stage_timeout_ms = stage_timeout_ms
        self._timer = timer
        self._metrics = PipelineMetrics()

        logger.info("Routing pipeline initialized",
                    fast_tier_plans=sorted(p.value for p in self.fast_tier_plans),
                    stage_timeout_ms=stage_timeout_ms)

    @property
    def caches(self) -> List[ExpiringCache]:
        return [self.search_classifier.cache, self.tone_analyzer.cache, self.memory_bridge.cache]

    def _ensure_sweepers(self) -> None:
        for cache in self.caches:
            cache.ensure_sweeper_started()

    # Routing rule

    def decide_tier(self, needs_search: bool, complexity: Complexity, plan: PlanTier) -> RouteTier:
        if needs_search:
            return RouteTier.ENRICHED
        if plan in self.fast_tier_plans or complexity == Complexity.SIMPLE:
            return RouteTier.FAST
        return RouteTier.ENRICHED

    # Decision assembly

    def _finish(
        self,
        message: str,
        context: Optional[RequestContext],
        start: float,
        stages: List[PipelineStage],
        classification: ClassificationResult,
        search_intent: SearchIntentResult,
        tone: ToneAnalysis,
        search_query: Optional[str] = None,
        short_circuit: Optional[ShortCircuit] = None
    ) -> RoutingDecision:
        plan = context.plan if context else PlanTier.STARTER
        stages.append(PipelineStage.DONE)
        return RoutingDecision(
            request_id=context.request_id if context else generate_request_id(),
            user_id=context.user_id if context else ANONYMOUS_USER,
            message=message,
            classification=classification,
            search_intent=search_intent,
            tone=tone,
            routed_to=self.decide_tier(search_intent.needs_search, classification.complexity, plan),
            search_query=search_query if search_intent.needs_search else None,
            short_circuit=short_circuit,
            stages=list(stages),
            processing_time_ms=max(0.0, (self._timer() - start) * 1000)
        )

    def _quick_tone(self, message: str, user_id: Optional[str]) -> ToneAnalysis:
        """Tone for short-circuit paths: cached analysis or the statistical pass, never the LLM."""
        if user_id:
            cached = self.tone_analyzer.get_cached(user_id)
            if cached is not None:
                return cached
        return self.tone_analyzer.analyze_statistical(message)

    def _recheck_decision(self, message, context, start, stages, last: LastSearchQuery) -> RoutingDecision:
        tables = self.patterns.rules.current
        classification = self.patterns.classify(last.query).model_copy(update={"domain": last.domain})
        search_intent = SearchIntentResult(
            needs_search=True,
            search_type=tables.domain_search_types.get(last.domain, SearchType.WEB),
            intent=UserIntent.CONTINUATION,
            suggested_query=last.query,
            confidence=RECHECK_CONFIDENCE,
            source=IntentSource.MEMORY,
            reasoning="Repeating the last search on request"
        )
        self.memory_bridge.remember(context.user_id, last.query, last.domain)
        return self._finish(
            message, context, start, stages, classification, search_intent,
            self._quick_tone(message, context.user_id),
            search_query=last.query,
            short_circuit=ShortCircuit.RECHECK
        )

    def _greeting_decision(self, message, context, start, stages) -> RoutingDecision:
        classification = ClassificationResult(
            complexity=Complexity.SIMPLE,
            domain=Domain.GENERAL,
            core_text=self.patterns.extract_core_text(message),
            language_family=self.patterns.detect_language_family(message)
        )
        search_intent = SearchIntentResult(
            needs_search=False,
            search_type=SearchType.NONE,
            intent=UserIntent.GREETING,
            suggested_query=None,
            confidence=GREETING_CONFIDENCE,
            source=IntentSource.PATTERN,
            reasoning="Simple greeting"
        )
        user_id = context.user_id if context else None
        return self._finish(
            message, context, start, stages, classification, search_intent,
            self._quick_tone(message, user_id),
            short_circuit=ShortCircuit.GREETING
        )

    def _sequel_decision(self, message, context, start, stages, entity: str) -> RoutingDecision:
        classification = self.patterns.classify(message).model_copy(update={"domain": Domain.ENTERTAINMENT})
        query = self.patterns.build_search_query(classification.core_text, Domain.ENTERTAINMENT)
        search_intent = SearchIntentResult(
            needs_search=True,
            search_type=SearchType.WEB,
            intent=UserIntent.ENTERTAINMENT,
            suggested_query=query,
            confidence=SEQUEL_CONFIDENCE,
            source=IntentSource.PATTERN,
            reasoning=f"Sequel or numbered title: {entity}"
        )
        user_id = context.user_id if context else None
        if user_id:
            self.memory_bridge.remember(user_id, query, Domain.ENTERTAINMENT)
        return self._finish(
            message, context, start, stages, classification, search_intent,
            self._quick_tone(message, user_id),
            search_query=query,
            short_circuit=ShortCircuit.SEQUEL
        )

    def _fallback_decision(self, message, context, start, stages, reason: str) -> RoutingDecision:
        classification = ClassificationResult(
            complexity=Complexity.SIMPLE,
            domain=Domain.GENERAL,
            core_text=" ".join((message or "").split())
        )
        return self._finish(
            message or "", context, start, stages, classification,
            default_result(reason), ToneAnalysis()
        )

    # Guarded concurrent stages

    async def _guarded_search(self, message: str, context: Optional[RequestContext]) -> SearchIntentResult:
        try:
            return await asyncio.wait_for(
                self.search_classifier.classify(message, context),
                timeout=self.stage_timeout_ms / 1000.0
            )
        except Exception as e:
            self._metrics.stage_failures += 1
            logger.error("Search classification stage failed", error=str(e) or type(e).__name__)
            return default_result("Search classification unavailable")

    async def _guarded_tone(self, message: str, user_id: Optional[str]) -> ToneAnalysis:
        try:
            return await asyncio.wait_for(
                self.tone_analyzer.analyze(message, user_id),
                timeout=self.stage_timeout_ms / 1000.0
            )
        except Exception as e:
            self._metrics.stage_failures += 1
            logger.error("Tone analysis stage failed", error=str(e) or type(e).__name__)
            return ToneAnalysis()

    @staticmethod
    def _merge(classification: ClassificationResult, search_intent: SearchIntentResult) -> ClassificationResult:
        """Fill a general domain from the search verdict when it is more specific."""
        if classification.domain != Domain.GENERAL or not search_intent.needs_search:
            return classification
        by_search_type = {
            SearchType.LOCAL: Domain.LOCAL,
            SearchType.SHOPPING: Domain.SHOPPING,
        }
        domain = by_search_type.get(search_intent.search_type)
        if domain is None:
            return classification
        return classification.model_copy(update={"domain": domain})

    # Entry point

    async def _run(self, message: str, context: Optional[RequestContext],
                   start: float, stages: List[PipelineStage]) -> RoutingDecision:
        user_id = context.user_id if context else None

        stages.append(PipelineStage.RECHECK_CHECK)
        if user_id and self.patterns.is_recheck(message):
            last = await self.memory_bridge.recall(user_id)
            if last is not None:
                return self._recheck_decision(message, context, start, stages, last)
            logger.info("Recheck phrasing without a remembered search, classifying normally",
                        user_id=user_id)

        stages.append(PipelineStage.GREETING_CHECK)
        if self.patterns.is_greeting(message):
            return self._greeting_decision(message, context, start, stages)

        stages.append(PipelineStage.SEQUEL_PATTERN_CHECK)
        entity = self.patterns.detect_sequel(message)
        if entity:
            return self._sequel_decision(message, context, start, stages, entity)

        stages.extend([PipelineStage.SEARCH_CLASSIFY, PipelineStage.TONE_ANALYZE])
        search_intent, tone = await asyncio.gather(
            self._guarded_search(message, context),
            self._guarded_tone(message, user_id)
        )

        stages.append(PipelineStage.MERGE)
        classification = self._merge(self.patterns.classify(message), search_intent)

        stages.append(PipelineStage.ROUTE_DECIDE)
        search_query = None
        if search_intent.needs_search:
            search_query = search_intent.suggested_query or self.patterns.build_search_query(
                classification.core_text, classification.domain
            )
            if user_id:
                self.memory_bridge.remember(user_id, search_query, classification.domain)

        return self._finish(message, context, start, stages, classification, search_intent, tone,
                            search_query=search_query)

    async def route(self, message: str, context: Optional[RequestContext] = None) -> RoutingDecision:
        """
        Produce a routing decision for one message.

        Args:
            message: Raw user message
            context: Request session (user, plan, request id)

        Returns:
            RoutingDecision; classifier failures degrade to "no search, FAST"
        """
        start = self._timer()
        stages: List[PipelineStage] = [PipelineStage.START]
        message = message or ""
        self._ensure_sweepers()

        try:
            decision = await self._run(message, context, start, stages)
        except Exception as e:
            self._metrics.fallback_decisions += 1
            logger.error("Routing pipeline failed, using fallback decision",
                         error=str(e),
                         message=sanitize_for_logging(message, 100))
            decision = self._fallback_decision(message, context, start, stages, f"Routing fallback: {e}")

        self._metrics.record(decision)
        logger.info("Routing decision made",
                    request_id=decision.request_id,
                    routed_to=decision.routed_to.value,
                    short_circuit=decision.short_circuit.value if decision.short_circuit else None,
                    needs_search=decision.search_intent.needs_search,
                    source=decision.search_intent.source.value,
                    processing_time_ms=round(decision.processing_time_ms, 2))
        return decision

    # Introspection

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "pipeline": self._metrics.to_dict(),
            "search_intent": self.search_classifier.stats(),
            "tone": self.tone_analyzer.stats(),
            "memory_bridge": self.memory_bridge.stats(),
            "rules": self.patterns.rules.stats(),
        }

    def get_health_status(self) -> Dict[str, Any]:
        """Health summary derived from fallback rates and latency."""
        metrics = self._metrics.to_dict()
        search_stats = self.search_classifier.stats()
        llm_calls = search_stats["llm_calls"]
        llm_failure_rate = search_stats["llm_failures"] / llm_calls if llm_calls else 0.0

        status = "healthy"
        if llm_failure_rate > 0.5 or metrics["fallback_decisions"] > 0:
            status = "degraded"

        return {
            "status": status,
            "timestamp": utc_now().isoformat(),
            "llm": {
                "calls": llm_calls,
                "failure_rate": round(llm_failure_rate, 4),
            },
            "performance": {
                "avg_processing_time_ms": metrics["avg_processing_time_ms"],
                "p99_processing_time_ms": metrics["p99_processing_time_ms"],
            },
            "caches": {cache.name: len(cache) for cache in self.caches},
            "sweepers_running": all(cache.sweeper_running for cache in self.caches),
        }

    def shutdown(self) -> None:
        """Stop background cache sweeps."""
        for cache in self.caches:
            cache.stop_sweeper()
        logger.info("Routing pipeline shut down")


def create_pipeline(
    llm_service: LLMService,
    memory_store: Optional[MemoryStore] = None,
    config: Optional[Dict[str, Any]] = None,
    rules_path: Optional[str] = None,
    clock: Callable[[], float] = time.monotonic
) -> RoutingPipeline:
    """
    Build a pipeline from configuration.

    Args:
        llm_service: Completion provider shared by the LLM-backed stages
        memory_store: Optional durable history used when the recheck slot expired
        config: Settings dict (defaults to the environment via ``get_config``)
        rules_path: JSON rule overrides (defaults to ROUTING_RULES_PATH)
        clock: Time source for cache TTLs

    Raises:
        ConfigurationError: On missing dependencies or invalid settings
    """
    if llm_service is None:
        raise ConfigurationError("create_pipeline requires an LLMService")

    settings = dict(DEFAULT_SETTINGS)
    settings.update(config if config is not None else get_config())
    settings = coerce_settings(settings)

    rules = RuleConfigManager()
    path = rules_path or settings.get("ROUTING_RULES_PATH")
    if path:
        rules.load_from_file(path)

    try:
        fast_tier_plans = {PlanTier(p) for p in parse_plan_list(settings["FAST_TIER_PLANS"])}
    except ValueError as e:
        raise ConfigurationError(f"Invalid FAST_TIER_PLANS: {settings['FAST_TIER_PLANS']}") from e

    sweep = settings["CACHE_SWEEP_INTERVAL_SECONDS"]
    patterns = PatternClassifier(rules)

    search_classifier = SearchIntentClassifier(
        llm_service,
        patterns,
        cache=ExpiringCache(
            "search_intent",
            ttl_seconds=settings["SEARCH_CACHE_TTL_MINUTES"] * 60,
            max_size=settings["SEARCH_CACHE_SIZE"],
            clock=clock,
            sweep_interval_seconds=sweep
        ),
        llm_timeout_ms=settings["SEARCH_LLM_TIMEOUT_MS"],
        low_confidence_threshold=settings["LOW_CONFIDENCE_THRESHOLD"]
    )
    tone_analyzer = ToneAnalyzer(
        llm_service,
        cache=ExpiringCache(
            "tone",
            ttl_seconds=settings["TONE_CACHE_TTL_MINUTES"] * 60,
            max_size=settings["TONE_CACHE_SIZE"],
            clock=clock,
            sweep_interval_seconds=sweep
        ),
        refresh_after_messages=settings["TONE_REFRESH_AFTER_MESSAGES"],
        llm_timeout_ms=settings["TONE_LLM_TIMEOUT_MS"]
    )
    memory_bridge = ConversationMemoryBridge(
        patterns,
        cache=ExpiringCache(
            "recheck",
            ttl_seconds=settings["RECHECK_TTL_HOURS"] * 3600,
            max_size=settings["RECHECK_CACHE_SIZE"],
            clock=clock,
            sweep_interval_seconds=sweep
        ),
        memory_store=memory_store
    )

    stage_timeout_ms = max(settings["SEARCH_LLM_TIMEOUT_MS"], settings["TONE_LLM_TIMEOUT_MS"]) + 1000

    return RoutingPipeline(
        llm_service,
        patterns=patterns,
        search_classifier=search_classifier,
        tone_analyzer=tone_analyzer,
        memory_bridge=memory_bridge,
        fast_tier_plans=fast_tier_plans,
        stage_timeout_ms=stage_timeout_ms
    )
