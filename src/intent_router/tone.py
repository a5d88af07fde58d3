"""
Tone and language-mix analysis.

Hybrid analyzer: a statistical pass (always runs, no I/O) estimates the
Hindi/English mix and a formality score from vocabulary lists; an optional
LLM call refines only the formality label. Results are cached per user
together with a served-message counter so a burst of messages cannot keep a
stale analysis alive past ``refresh_after_messages`` serves.

Lifecycle: NEW -> STATISTICAL_ANALYZED -> (LLM_REFINED) -> CACHED
"""

import asyncio
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from src.intent_router.cache import ExpiringCache
from src.intent_router.llm import LLMOptions, LLMService
from src.intent_router.models import Formality, SuggestedStyle, ToneAnalysis, ToneLanguage, ToneStage
from src.intent_router.rules import compile_phrase_pattern
from src.intent_router.utils import ConfigurationError, sanitize_for_logging


HINGLISH_VOCABULARY: Dict[str, List[str]] = {
    "ultra_casual": [
        "bhai", "yaar", "boss", "dude", "bro", "mere bhai",
        "arre", "arey", "oye", "chal", "kya baat", "sahi hai",
        "badhiya", "ekdum", "matlab"
    ],
    "casual": [
        "thik hai", "theek", "accha", "acha", "achha", "haan ji", "nahi ji",
        "samajh gaya", "samajh gayi", "ho gaya", "kar diya",
        "bilkul", "zaroor", "pakka", "theek hai"
    ],
    "semi_formal": [
        "aap", "aapka", "aapki", "dhanyavaad", "shukriya", "maaf kijiye",
        "kripya", "ji", "sahab"
    ],
    "code_mixed": [
        "kar do", "kar dijiye", "bata do", "bata dijiye", "help karo",
        "help kijiye", "problem hai", "issue hai", "samajh nahi aaya",
        "samajh nahi aa raha", "kya matlab hai", "kaise karu", "kaise karun"
    ],
    "expressions": [
        "wah", "badiya", "mast", "kya baat hai", "zabardast", "shandar"
    ],
}

# Single romanized Hindi tokens counted towards the Hindi share
HINDI_WORDS: Set[str] = {
    "bhai", "yaar", "arre", "arey", "oye", "chal", "haan", "nahi", "kya", "baat",
    "sahi", "badhiya", "ekdum", "matlab", "thik", "theek", "accha", "acha", "achha",
    "ji", "kaise", "kaisa", "samajh", "gaya", "gayi", "ho", "kar", "diya", "bilkul",
    "zaroor", "pakka", "aap", "aapka", "aapki", "dhanyavaad", "shukriya", "maaf",
    "kijiye", "kripya", "sahab", "dijiye", "bata", "batao", "karo", "aaya", "raha",
    "karu", "karun", "wah", "badiya", "mast", "zabardast", "shandar", "kab", "kahan",
    "kyun", "kaun", "kitna", "kitne", "konsa", "konse", "hai", "hain", "tha", "thi",
    "hoga", "hogi", "kiya", "kiye", "mein", "hum", "tum", "yeh", "woh", "kuch",
    "koi", "sab", "sabhi", "ek", "mujhe", "aur", "se", "ko", "ka", "ki", "ke",
    "dobara", "phir", "fir", "karna", "bahut", "abhi", "aaj", "kal",
}

FORMAL_INDICATORS = [
    "kindly", "request", "would you", "could you", "please assist",
    "appreciate", "grateful", "sir", "madam", "respected", "dear"
]
CASUAL_INDICATORS = ["btw", "lol", "omg", "gonna", "wanna", "yeah", "yep", "nope", "yup"]

LANGUAGE_THRESHOLD = 80
HINGLISH_MIN_THRESHOLD = 5
FORMAL_SCORE_THRESHOLD = 60
CASUAL_SCORE_THRESHOLD = 40
SHOULD_MATCH_THRESHOLD = 70
HINGLISH_STYLE_MIN_CONFIDENCE = 60

STYLE_PHRASES: Dict[bool, Dict[Formality, List[str]]] = {
    True: {
        Formality.CASUAL: [
            "Bilkul, main samjha sakta hoon",
            "Haan, yeh kaam ho sakta hai",
            "Theek hai, chaliye main batata hoon",
            "Arre haan, yeh bahut simple hai",
        ],
        Formality.SEMI_FORMAL: [
            "Ji bilkul, main aapki madad kar sakta hoon",
            "Haan ji, yeh possible hai",
            "Theek hai, main aapko guide karta hoon",
            "Zaroor, main explain karta hoon",
        ],
        Formality.FORMAL: [
            "Certainly, I can help you with that",
            "Yes, this is definitely possible",
            "Let me guide you through this",
            "I'll explain this clearly",
        ],
    },
    False: {
        Formality.CASUAL: ["Sure thing!", "Yeah, that works", "Got it, let me help", "No problem"],
        Formality.SEMI_FORMAL: [
            "Certainly, I can assist",
            "Yes, that's possible",
            "Let me help you",
            "I'll guide you",
        ],
        Formality.FORMAL: [
            "Certainly, I would be happy to assist",
            "Yes, that is absolutely possible",
            "Allow me to guide you",
            "I will provide a comprehensive explanation",
        ],
    },
}

FORMALITY_PROMPT = """Classify the formality of the user's message.
Answer with exactly one word: casual, semi_formal or formal.

Message: "{message}"

Formality:"""

_DEVANAGARI = re.compile(r"[\u0900-\u097F]")
_WORD = re.compile(r"[\w\u0900-\u097F']+")
_FORMALITY_LABEL = re.compile(r"\b(semi[\s_-]?formal|formal|casual)\b", re.IGNORECASE)

_ULTRA_CASUAL_PATTERN = compile_phrase_pattern(HINGLISH_VOCABULARY["ultra_casual"])
_SEMI_FORMAL_PATTERN = compile_phrase_pattern(HINGLISH_VOCABULARY["semi_formal"])
_FORMAL_PATTERN = compile_phrase_pattern(FORMAL_INDICATORS)
_CASUAL_PATTERN = compile_phrase_pattern(CASUAL_INDICATORS)
_ALL_PHRASES_PATTERN = compile_phrase_pattern(
    [phrase for phrases in HINGLISH_VOCABULARY.values() for phrase in phrases]
)


def _distinct_matches(pattern: re.Pattern, text: str) -> Set[str]:
    return {" ".join(m.lower().split()) for m in pattern.findall(text)}


def parse_formality_label(response: str) -> Optional[Formality]:
    """Pull a formality label out of a short model answer."""
    match = _FORMALITY_LABEL.search(response or "")
    if not match:
        return None
    label = match.group(1).lower()
    if label.startswith("semi"):
        return Formality.SEMI_FORMAL
    return Formality(label)


@dataclass(frozen=True)
class _ToneSlot:
    """Cached analysis plus how many messages it has been served for."""
    analysis: ToneAnalysis
    served: int = 0


class ToneAnalyzer:
    """Statistical tone analyzer with optional LLM formality refinement."""

    def __init__(
        self,
        llm_service: LLMService,
        cache: Optional[ExpiringCache] = None,
        refresh_after_messages: int = 10,
        min_length_for_llm: int = 10,
        llm_timeout_ms: int = 2000,
        use_llm: bool = True
    ):
        if llm_service is None:
            raise ConfigurationError("ToneAnalyzer requires an LLMService")
        self.llm_service = llm_service
        self.cache = cache if cache is not None else ExpiringCache("tone", ttl_seconds=15 * 60, max_size=500)
        self.refresh_after_messages = refresh_after_messages
        self.min_length_for_llm = min_length_for_llm
        self.llm_timeout_ms = llm_timeout_ms
        self.use_llm = use_llm

        self._llm_calls = 0
        self._llm_failures = 0

    # Statistical pass

    @staticmethod
    def detect_language_mix(message: str) -> Dict[str, float]:
        words = _WORD.findall(message.lower())
        if not words:
            return {"hindi_percent": 0.0, "english_percent": 100.0, "total_words": 0}

        hindi = sum(1 for w in words if w in HINDI_WORDS or _DEVANAGARI.search(w))
        hindi_percent = round(hindi / len(words) * 100)
        return {
            "hindi_percent": float(hindi_percent),
            "english_percent": float(100 - hindi_percent),
            "total_words": len(words),
        }

    @staticmethod
    def classify_language(hindi_percent: float, english_percent: float) -> ToneLanguage:
        if english_percent >= LANGUAGE_THRESHOLD:
            return ToneLanguage.ENGLISH
        if hindi_percent >= LANGUAGE_THRESHOLD:
            return ToneLanguage.HINDI
        if hindi_percent >= HINGLISH_MIN_THRESHOLD and english_percent >= HINGLISH_MIN_THRESHOLD:
            return ToneLanguage.HINGLISH
        return ToneLanguage.MIXED

    @staticmethod
    def formality_score(message: str) -> int:
        """Heuristic 0-100 score; 50 is neutral."""
        text = message.strip()
        score = 50
        score += 8 * len(_distinct_matches(_FORMAL_PATTERN, text))
        score -= 10 * len(_distinct_matches(_ULTRA_CASUAL_PATTERN, text))
        score -= 5 * len(_distinct_matches(_CASUAL_PATTERN, text))
        score += 5 * len(_distinct_matches(_SEMI_FORMAL_PATTERN, text))
        if "!" in text:
            score -= 5
        if "!!" in text:
            score -= 5

        words = len(text.split())
        if words > 30:
            score += 5
        if words < 10:
            score -= 5
        if text[:1].isupper():
            score += 3
        if text[-1:] in (".", "!", "?"):
            score += 2
        return max(0, min(100, score))

    @staticmethod
    def classify_formality(score: int) -> Formality:
        if score >= FORMAL_SCORE_THRESHOLD:
            return Formality.FORMAL
        if score <= CASUAL_SCORE_THRESHOLD:
            return Formality.CASUAL
        return Formality.SEMI_FORMAL

    @staticmethod
    def match_confidence(total_words: int, hindi_percent: float, english_percent: float,
                         phrase_count: int) -> int:
        confidence = 50
        if total_words > 20:
            confidence += 20
        elif total_words > 10:
            confidence += 10
        elif total_words < 5:
            confidence -= 20
        if hindi_percent > 70 or english_percent > 70:
            confidence += 15
        confidence += min(phrase_count * 5, 20)
        return max(0, min(100, confidence))

    @staticmethod
    def suggest_style(language: ToneLanguage, formality: Formality, confidence: int) -> SuggestedStyle:
        use_hinglish = (
            language in (ToneLanguage.HINGLISH, ToneLanguage.HINDI)
            and confidence >= HINGLISH_STYLE_MIN_CONFIDENCE
        )
        return SuggestedStyle(
            use_hinglish=use_hinglish,
            formality_level=formality,
            example_phrases=list(STYLE_PHRASES[use_hinglish][formality])
        )

    def analyze_statistical(self, message: str) -> ToneAnalysis:
        """Run the statistical pass only. Never performs I/O."""
        mix = self.detect_language_mix(message)
        language = self.classify_language(mix["hindi_percent"], mix["english_percent"])
        formality = self.classify_formality(self.formality_score(message))
        phrases = sorted(_distinct_matches(_ALL_PHRASES_PATTERN, message))[:10]
        confidence = self.match_confidence(
            mix["total_words"], mix["hindi_percent"], mix["english_percent"], len(phrases)
        )

        return ToneAnalysis(
            language=language,
            formality=formality,
            hindi_percent=mix["hindi_percent"],
            english_percent=mix["english_percent"],
            suggested_style=self.suggest_style(language, formality, confidence),
            hinglish_phrases=phrases,
            should_match_tone=confidence >= SHOULD_MATCH_THRESHOLD,
            stage=ToneStage.STATISTICAL_ANALYZED
        )

    # LLM refinement

    async def _refine_with_llm(self, message: str, statistical: ToneAnalysis,
                               user_id: Optional[str]) -> Optional[ToneAnalysis]:
        options = LLMOptions(
            max_tokens=8,
            temperature=0.0,
            timeout_ms=self.llm_timeout_ms,
            user_id=user_id
        )
        prompt = FORMALITY_PROMPT.format(message=message.strip()[:500].replace('"', "'"))

        self._llm_calls += 1
        try:
            response = await asyncio.wait_for(
                self.llm_service.generate_completion(prompt, options),
                timeout=self.llm_timeout_ms / 1000.0
            )
        except Exception as e:
            self._llm_failures += 1
            logger.debug("Tone refinement unavailable, keeping statistical result",
                         error=str(e) or type(e).__name__)
            return None

        formality = parse_formality_label(response)
        if formality is None:
            self._llm_failures += 1
            logger.debug("Tone refinement returned no label", response=sanitize_for_logging(response, 50))
            return None

        use_hinglish = statistical.suggested_style.use_hinglish
        return statistical.model_copy(update={
            "formality": formality,
            "suggested_style": SuggestedStyle(
                use_hinglish=use_hinglish,
                formality_level=formality,
                example_phrases=list(STYLE_PHRASES[use_hinglish][formality])
            ),
            "stage": ToneStage.LLM_REFINED,
        })

    # Cached entry point

    def get_cached(self, user_id: str) -> Optional[ToneAnalysis]:
        """Peek at a user's cached analysis without counting a serve."""
        slot = self.cache.get(user_id)
        if slot is None:
            return None
        return slot.analysis.model_copy(update={"stage": ToneStage.CACHED})

    async def analyze(self, message: str, user_id: Optional[str] = None) -> ToneAnalysis:
        """
        Analyze tone, serving the user's cached analysis while it is fresh.

        Never raises: LLM failures fall back to the statistical result.

        Args:
            message: User message
            user_id: Cache key; without one nothing is cached

        Returns:
            ToneAnalysis tagged with the stage that produced it
        """
        if user_id:
            slot = self.cache.get(user_id)
            if slot is not None and slot.served < self.refresh_after_messages:
                self.cache.replace(user_id, replace(slot, served=slot.served + 1))
                return slot.analysis.model_copy(update={"stage": ToneStage.CACHED})
            if slot is not None:
                logger.debug("Tone cache entry refreshed after message limit",
                             user_id=user_id, served=slot.served)

        analysis = self.analyze_statistical(message)

        if self.use_llm and len(message.strip()) >= self.min_length_for_llm:
            refined = await self._refine_with_llm(message, analysis, user_id)
            if refined is not None:
                analysis = refined

        if user_id:
            self.cache.set(user_id, _ToneSlot(analysis=analysis))

        logger.debug("Tone analyzed",
                     language=analysis.language.value,
                     formality=analysis.formality.value,
                     stage=analysis.stage.value)
        return analysis

    def clear_cache(self, user_id: Optional[str] = None) -> None:
        self.cache.clear(user_id)

    def stats(self) -> Dict[str, Any]:
        return {
            "llm_calls": self._llm_calls,
            "llm_failures": self._llm_failures,
            "cache": self.cache.stats(),
        }
