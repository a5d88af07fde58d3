"""Tests for tone and language-mix analysis."""

import asyncio

import pytest

from conftest import FakeLLMService
from src.intent_router.cache import ExpiringCache
from src.intent_router.llm import LLMError
from src.intent_router.models import Formality, ToneLanguage, ToneStage
from src.intent_router.tone import ToneAnalyzer, parse_formality_label
from src.intent_router.utils import ConfigurationError


FORMAL_MESSAGE = "Could you kindly assist me with my booking request?"


def _analyzer(llm, clock=None, **kwargs):
    cache = ExpiringCache("tone", ttl_seconds=900, max_size=10, clock=clock) if clock else None
    return ToneAnalyzer(llm, cache=cache, **kwargs)


def test_requires_llm_service():
    with pytest.raises(ConfigurationError):
        ToneAnalyzer(None)


def test_language_mix():
    empty = ToneAnalyzer.detect_language_mix("")
    assert empty["hindi_percent"] == 0.0
    assert empty["english_percent"] == 100.0

    mix = ToneAnalyzer.detect_language_mix("bhai kya scene hai")
    assert mix["hindi_percent"] == 75.0
    assert ToneAnalyzer.classify_language(mix["hindi_percent"], mix["english_percent"]) == ToneLanguage.HINGLISH

    assert ToneAnalyzer.classify_language(0, 100) == ToneLanguage.ENGLISH
    assert ToneAnalyzer.classify_language(90, 10) == ToneLanguage.HINDI


def test_formality_scoring():
    assert ToneAnalyzer.classify_formality(ToneAnalyzer.formality_score(FORMAL_MESSAGE)) == Formality.FORMAL
    assert ToneAnalyzer.classify_formality(ToneAnalyzer.formality_score("bhai yaar lol!!")) == Formality.CASUAL
    assert ToneAnalyzer.classify_formality(50) == Formality.SEMI_FORMAL


def test_statistical_analysis(fake_llm):
    analysis = ToneAnalyzer(fake_llm).analyze_statistical("arre bhai kya baat hai, ekdum mast")

    assert analysis.stage == ToneStage.STATISTICAL_ANALYZED
    assert analysis.language in (ToneLanguage.HINGLISH, ToneLanguage.HINDI)
    assert analysis.formality == Formality.CASUAL
    assert "bhai" in analysis.hinglish_phrases
    assert analysis.hindi_percent + analysis.english_percent == 100.0


@pytest.mark.parametrize("response,expected", [
    ("formal", Formality.FORMAL),
    ("Semi-formal.", Formality.SEMI_FORMAL),
    ("semi_formal", Formality.SEMI_FORMAL),
    ("  Casual", Formality.CASUAL),
    ("no idea", None),
    ("", None),
])
def test_parse_formality_label(response, expected):
    assert parse_formality_label(response) == expected


def test_llm_refines_formality():
    llm = FakeLLMService(tone="formal")
    analysis = asyncio.run(ToneAnalyzer(llm).analyze("yo can u help me with my booking"))

    assert analysis.stage == ToneStage.LLM_REFINED
    assert analysis.formality == Formality.FORMAL
    assert analysis.suggested_style.formality_level == Formality.FORMAL
    assert llm.options[0].max_tokens == 8


def test_llm_failure_keeps_statistical_result():
    llm = FakeLLMService(tone=LLMError("provider down"))
    analysis = asyncio.run(ToneAnalyzer(llm).analyze(FORMAL_MESSAGE))

    assert analysis.stage == ToneStage.STATISTICAL_ANALYZED
    assert analysis.formality == Formality.FORMAL


def test_llm_timeout_keeps_statistical_result():
    llm = FakeLLMService(tone="casual", delay=0.2)
    analysis = asyncio.run(ToneAnalyzer(llm, llm_timeout_ms=20).analyze(FORMAL_MESSAGE))

    assert analysis.stage == ToneStage.STATISTICAL_ANALYZED


def test_short_messages_skip_llm():
    llm = FakeLLMService(tone="formal")
    analysis = asyncio.run(ToneAnalyzer(llm).analyze("ok bhai"))

    assert analysis.stage == ToneStage.STATISTICAL_ANALYZED
    assert llm.calls["tone"] == 0


def test_cache_served_until_message_limit(clock):
    llm = FakeLLMService(tone="casual")
    analyzer = _analyzer(llm, clock, refresh_after_messages=2)

    async def scenario():
        return [
            (await analyzer.analyze(FORMAL_MESSAGE, "u1")).stage
            for _ in range(4)
        ]

    stages = asyncio.run(scenario())
    assert stages == [ToneStage.LLM_REFINED, ToneStage.CACHED, ToneStage.CACHED, ToneStage.LLM_REFINED]
    assert llm.calls["tone"] == 2


def test_cache_expires_with_ttl(clock):
    llm = FakeLLMService(tone="casual")
    analyzer = _analyzer(llm, clock)

    asyncio.run(analyzer.analyze(FORMAL_MESSAGE, "u1"))
    assert analyzer.get_cached("u1").stage == ToneStage.CACHED

    clock.advance(901)
    assert analyzer.get_cached("u1") is None
    asyncio.run(analyzer.analyze(FORMAL_MESSAGE, "u1"))
    assert llm.calls["tone"] == 2


def test_no_user_means_no_caching(fake_llm):
    analyzer = ToneAnalyzer(fake_llm)
    asyncio.run(analyzer.analyze(FORMAL_MESSAGE))

    assert len(analyzer.cache) == 0
    analyzer.clear_cache()
    assert analyzer.stats()["llm_calls"] == 1
