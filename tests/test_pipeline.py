"""End-to-end tests for the routing pipeline."""

import asyncio
import json

import pytest

from conftest import FakeLLMService, FakeMemoryStore
from src.intent_router.llm import LLMError
from src.intent_router.models import (
    Complexity,
    ConversationTurn,
    Domain,
    IntentSource,
    MessageRole,
    PipelineStage,
    PlanTier,
    RequestContext,
    RouteTier,
    SearchType,
    ShortCircuit,
    ToneStage,
    UserIntent,
)
from src.intent_router.pipeline import RoutingPipeline, create_pipeline
from src.intent_router.utils import ConfigurationError


LOCAL_JSON = (
    '{"intent": "local_search", "needsSearch": true, "searchType": "local", '
    '"suggestedQuery": "pizza restaurants nearby", "confidence": 92, "reasoning": "place lookup"}'
)
NO_SEARCH_JSON = (
    '{"intent": "command", "needsSearch": false, "searchType": "none", '
    '"confidence": 85, "reasoning": "coding help"}'
)


def _pipeline(llm, clock, **config):
    return create_pipeline(llm, config=config, clock=clock)


def _ctx(user_id="u1", plan=PlanTier.STARTER):
    return RequestContext(user_id=user_id, plan=plan)


def test_requires_llm_service():
    with pytest.raises(ConfigurationError):
        RoutingPipeline(None)
    with pytest.raises(ConfigurationError):
        create_pipeline(None, config={})


def test_invalid_fast_tier_plans_rejected(fake_llm):
    with pytest.raises(ConfigurationError):
        create_pipeline(fake_llm, config={"FAST_TIER_PLANS": "starter,platinum"})


def test_string_settings_are_coerced(fake_llm):
    pipeline = create_pipeline(fake_llm, config={
        "SEARCH_LLM_TIMEOUT_MS": "30",
        "TONE_LLM_TIMEOUT_MS": "45",
        "LOW_CONFIDENCE_THRESHOLD": "55.5",
    })

    assert pipeline.stage_timeout_ms == 1045
    assert pipeline.search_classifier.low_confidence_threshold == 55.5


def test_negative_settings_rejected(fake_llm):
    with pytest.raises(ConfigurationError):
        create_pipeline(fake_llm, config={"SEARCH_LLM_TIMEOUT_MS": "-5"})


def test_greeting_short_circuits_without_llm(clock):
    llm = FakeLLMService()
    decision = asyncio.run(_pipeline(llm, clock).route("Hello!", _ctx()))

    assert decision.short_circuit == ShortCircuit.GREETING
    assert decision.routed_to == RouteTier.FAST
    assert decision.search_intent.needs_search is False
    assert decision.search_intent.intent == UserIntent.GREETING
    assert decision.search_intent.source == IntentSource.PATTERN
    assert decision.classification.complexity == Complexity.SIMPLE
    assert decision.search_query is None
    assert decision.stages == [
        PipelineStage.START,
        PipelineStage.RECHECK_CHECK,
        PipelineStage.GREETING_CHECK,
        PipelineStage.DONE,
    ]
    assert llm.calls == {"search": 0, "tone": 0}


def test_local_search_routes_enriched_and_recheck_repeats_query(clock):
    llm = FakeLLMService(search=LOCAL_JSON, tone="casual")
    pipeline = _pipeline(llm, clock)

    first = asyncio.run(pipeline.route("best pizza near me", _ctx()))

    assert first.short_circuit is None
    assert first.routed_to == RouteTier.ENRICHED
    assert first.search_intent.source == IntentSource.LLM
    assert first.search_query == "pizza restaurants nearby"
    assert first.classification.domain == Domain.LOCAL
    assert first.tone.stage == ToneStage.LLM_REFINED
    assert PipelineStage.SEARCH_CLASSIFY in first.stages
    assert PipelineStage.TONE_ANALYZE in first.stages
    assert first.stages[-1] == PipelineStage.DONE

    again = asyncio.run(pipeline.route("check again", _ctx()))

    assert again.short_circuit == ShortCircuit.RECHECK
    assert again.routed_to == RouteTier.ENRICHED
    assert again.search_query == "pizza restaurants nearby"
    assert again.search_intent.source == IntentSource.MEMORY
    assert again.search_intent.intent == UserIntent.CONTINUATION
    assert again.search_intent.search_type == SearchType.LOCAL
    assert again.classification.domain == Domain.LOCAL
    assert again.tone.stage == ToneStage.CACHED
    assert llm.calls["search"] == 1


def test_recheck_is_per_user(clock):
    llm = FakeLLMService(search=LOCAL_JSON)
    pipeline = _pipeline(llm, clock)

    asyncio.run(pipeline.route("best pizza near me", _ctx("u1")))
    other = asyncio.run(pipeline.route("check again", _ctx("u2")))

    assert other.short_circuit is None
    assert PipelineStage.SEARCH_CLASSIFY in other.stages


def test_thanks_again_after_search_is_not_a_recheck(clock):
    llm = FakeLLMService(search=LOCAL_JSON)
    pipeline = _pipeline(llm, clock)

    asyncio.run(pipeline.route("best pizza near me", _ctx()))
    decision = asyncio.run(pipeline.route("thanks again", _ctx()))

    assert decision.short_circuit == ShortCircuit.GREETING
    assert decision.search_intent.needs_search is False
    assert decision.search_query is None


def test_recheck_without_memory_classifies_normally(clock):
    llm = FakeLLMService()
    decision = asyncio.run(_pipeline(llm, clock).route("dobara", _ctx()))

    assert decision.short_circuit is None
    assert decision.search_intent.needs_search is False
    assert llm.calls["search"] == 1


def test_recheck_recovered_from_memory_store(clock):
    store = FakeMemoryStore(turns=[
        ConversationTurn(role=MessageRole.USER, content="sensex crash"),
    ])
    llm = FakeLLMService()
    pipeline = create_pipeline(llm, memory_store=store, config={}, clock=clock)

    decision = asyncio.run(pipeline.route("phir se check karo", _ctx()))

    assert decision.short_circuit == ShortCircuit.RECHECK
    assert decision.search_query == "sensex crash"
    assert decision.classification.domain == Domain.FINANCE
    assert decision.search_intent.search_type == SearchType.NEWS


def test_sequel_short_circuits_as_entertainment(clock):
    llm = FakeLLMService()
    pipeline = _pipeline(llm, clock)

    decision = asyncio.run(pipeline.route("border 2 release date", _ctx()))

    assert decision.short_circuit == ShortCircuit.SEQUEL
    assert decision.routed_to == RouteTier.ENRICHED
    assert decision.search_intent.intent == UserIntent.ENTERTAINMENT
    assert decision.search_intent.search_type == SearchType.WEB
    assert decision.classification.domain == Domain.ENTERTAINMENT
    assert decision.search_query == "border 2 release date rating review"
    assert llm.calls == {"search": 0, "tone": 0}

    # Sequel queries are remembered for a later recheck
    again = asyncio.run(pipeline.route("check again", _ctx()))
    assert again.search_query == "border 2 release date rating review"


@pytest.mark.parametrize("message,domain", [
    ("show me top 5 restaurants near me", Domain.LOCAL),
    ("book 2 tickets near me", Domain.LOCAL),
    ("iphone 15 launch price", Domain.GENERAL),
])
def test_counts_do_not_short_circuit_as_sequels(clock, message, domain):
    llm = FakeLLMService()
    decision = asyncio.run(_pipeline(llm, clock).route(message, _ctx()))

    assert decision.short_circuit is None
    assert decision.classification.domain == domain
    assert PipelineStage.SEARCH_CLASSIFY in decision.stages


def test_llm_outage_degrades_to_keyword_fallback(clock):
    llm = FakeLLMService(search=LLMError("down"), tone=LLMError("down"))
    decision = asyncio.run(_pipeline(llm, clock).route("what is the capital of france", _ctx()))

    assert decision.search_intent.source == IntentSource.KEYWORD_FALLBACK
    assert decision.search_intent.search_type == SearchType.KNOWLEDGE
    assert decision.routed_to == RouteTier.ENRICHED
    assert decision.tone.stage == ToneStage.STATISTICAL_ANALYZED


def test_slow_llm_bounded_by_timeouts(clock):
    llm = FakeLLMService(search=LOCAL_JSON, tone="formal", delay=0.5)
    pipeline = _pipeline(llm, clock, SEARCH_LLM_TIMEOUT_MS=30, TONE_LLM_TIMEOUT_MS=30)

    decision = asyncio.run(pipeline.route("best pizza near me", _ctx()))

    assert decision.search_intent.source == IntentSource.KEYWORD_FALLBACK
    assert decision.search_query == "best pizza near me"
    assert decision.tone.stage == ToneStage.STATISTICAL_ANALYZED
    assert decision.processing_time_ms < 500


@pytest.mark.parametrize("message,plan,expected", [
    ("debug this code for me", PlanTier.PRO, RouteTier.ENRICHED),
    ("debug this code for me", PlanTier.STARTER, RouteTier.FAST),
    ("debug this code for me", PlanTier.LITE, RouteTier.FAST),
    ("write me a short poem", PlanTier.PRO, RouteTier.FAST),
])
def test_routing_rule_without_search(clock, message, plan, expected):
    llm = FakeLLMService(search=NO_SEARCH_JSON)
    decision = asyncio.run(_pipeline(llm, clock).route(message, _ctx(plan=plan)))

    assert decision.search_intent.needs_search is False
    assert decision.routed_to == expected


def test_search_dominates_plan_and_complexity(fake_llm):
    pipeline = RoutingPipeline(fake_llm)
    assert pipeline.decide_tier(True, Complexity.SIMPLE, PlanTier.STARTER) == RouteTier.ENRICHED
    assert pipeline.decide_tier(False, Complexity.HIGH, PlanTier.SOVEREIGN) == RouteTier.ENRICHED
    assert pipeline.decide_tier(False, Complexity.MEDIUM, PlanTier.LITE) == RouteTier.FAST


def test_stage_failure_falls_back_to_default(clock):
    llm = FakeLLMService()
    pipeline = _pipeline(llm, clock)

    async def broken(message, context=None):
        raise RuntimeError("classifier bug")

    pipeline.search_classifier.classify = broken
    decision = asyncio.run(pipeline.route("tell me something interesting", _ctx()))

    assert decision.search_intent.source == IntentSource.DEFAULT
    assert decision.routed_to == RouteTier.FAST
    assert pipeline.get_metrics()["pipeline"]["stage_failures"] == 1


def test_unexpected_error_yields_fallback_decision(clock):
    llm = FakeLLMService()
    pipeline = _pipeline(llm, clock)

    def broken(message):
        raise RuntimeError("rules corrupted")

    pipeline.patterns.is_greeting = broken
    decision = asyncio.run(pipeline.route("anything at all", _ctx()))

    assert decision.routed_to == RouteTier.FAST
    assert decision.search_intent.needs_search is False
    assert decision.stages[-1] == PipelineStage.DONE
    assert pipeline.get_metrics()["pipeline"]["fallback_decisions"] == 1
    assert pipeline.get_health_status()["status"] == "degraded"


def test_rule_overrides_loaded_from_file(clock, tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"simple_greetings": ["salaam alaikum"]}), encoding="utf-8")
    llm = FakeLLMService()
    pipeline = create_pipeline(llm, config={}, rules_path=str(path), clock=clock)

    decision = asyncio.run(pipeline.route("Salaam alaikum", _ctx()))
    assert decision.short_circuit == ShortCircuit.GREETING


def test_context_optional(clock):
    decision = asyncio.run(_pipeline(FakeLLMService(), clock).route("hello"))

    assert decision.user_id == "anonymous"
    assert decision.request_id


def test_decision_record_is_json_ready(clock):
    llm = FakeLLMService(search=LOCAL_JSON)
    decision = asyncio.run(_pipeline(llm, clock).route("best pizza near me", _ctx()))

    record = decision.to_record()
    assert json.loads(json.dumps(record))["routed_to"] == "ENRICHED"
    assert record["search_intent"]["source"] == "llm"


def test_metrics_health_and_shutdown(clock):
    llm = FakeLLMService()
    pipeline = _pipeline(llm, clock)

    async def scenario():
        await pipeline.route("hello", _ctx())
        await pipeline.route("border 2 trailer", _ctx())
        health = pipeline.get_health_status()
        pipeline.shutdown()
        return health

    health = asyncio.run(scenario())
    metrics = pipeline.get_metrics()

    assert health["status"] == "healthy"
    assert health["sweepers_running"] is True
    assert metrics["pipeline"]["total_requests"] == 2
    assert metrics["pipeline"]["short_circuits"]["greeting"] == 1
    assert metrics["pipeline"]["short_circuits"]["sequel"] == 1
    assert metrics["rules"]["version"] == 1
    assert all(not cache.sweeper_running for cache in pipeline.caches)


class TestReferenceScenarios:
    """The five reference conversations the router must always handle."""

    def test_plain_greeting(self, clock):
        llm = FakeLLMService()
        decision = asyncio.run(_pipeline(llm, clock).route("hi", _ctx()))

        assert decision.classification.complexity == Complexity.SIMPLE
        assert decision.search_intent.needs_search is False
        assert decision.routed_to == RouteTier.FAST
        assert llm.calls == {"search": 0, "tone": 0}

    def test_local_search(self, clock):
        llm = FakeLLMService(search=LOCAL_JSON)
        decision = asyncio.run(_pipeline(llm, clock).route("best pizza restaurant near me", _ctx()))

        assert decision.search_intent.needs_search is True
        assert decision.search_intent.search_type == SearchType.LOCAL
        assert decision.routed_to == RouteTier.ENRICHED

    def test_hinglish_recheck_repeats_exact_query(self, clock):
        llm = FakeLLMService()
        pipeline = _pipeline(llm, clock)
        pipeline.memory_bridge.remember("u1", "IPL score today", Domain.ENTERTAINMENT)

        decision = asyncio.run(pipeline.route("dobara check karo", _ctx()))

        assert decision.search_query == "IPL score today"
        assert decision.routed_to == RouteTier.ENRICHED
        assert llm.calls["search"] == 0

    def test_gratitude_without_llm(self, clock):
        llm = FakeLLMService(search=LLMError("unavailable"), tone=LLMError("unavailable"))
        decision = asyncio.run(_pipeline(llm, clock).route("thank you so much", _ctx()))

        assert decision.search_intent.needs_search is False
        assert decision.search_intent.intent == UserIntent.GRATITUDE

    def test_repeat_message_served_from_cache(self, clock):
        llm = FakeLLMService(search=LOCAL_JSON)
        pipeline = _pipeline(llm, clock)

        asyncio.run(pipeline.route("best pizza restaurant near me", _ctx("u1")))
        second = asyncio.run(pipeline.route("best pizza restaurant near me", _ctx("u2")))

        assert second.search_intent.source == IntentSource.CACHE
        assert llm.calls["search"] == 1
