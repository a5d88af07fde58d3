"""
Zero-latency pattern and keyword classification.

Every check here is pure regex/set work over the active rule tables; nothing
performs I/O, so the orchestration pipeline runs these first and can end a
request before any LLM call is made.

Checks:
- Greeting detection (exact set match, first token for short inputs)
- Complexity estimate (high/medium keyword regexes plus word count)
- Search category and domain (first matching category wins)
- Language family (romanized Hindi function words, Devanagari)
- Sequel/entity detection (numbered title plus media context, counts skipped)
- Recheck phrasing ("check again", "dobara")
- Core text extraction and domain-aware search query building
"""

import re
from typing import List, Optional

from loguru import logger

from src.intent_router.models import ClassificationResult, Complexity, Domain, LanguageFamily
from src.intent_router.rules import RuleConfigManager, RuleTables


_PUNCTUATION = re.compile(r"[^\w\s\u0900-\u097F]")
_NON_WORD = re.compile(r"[^\w\u0900-\u097F]+")
_DEVANAGARI = re.compile(r"[\u0900-\u097F]")


def normalize_text(text: str) -> str:
    """Lowercase, delete punctuation and collapse whitespace.

    Punctuation is deleted rather than replaced so "hi-tech" becomes
    "hitech" and cannot be mistaken for the greeting "hi".
    """
    stripped = _PUNCTUATION.sub("", text.lower())
    return " ".join(stripped.split())


def tokenize(text: str) -> List[str]:
    """Split text into lowercase word tokens."""
    return [t for t in _NON_WORD.split(text.lower()) if t]


class PatternClassifier:
    """Table-driven classifier over the active rule tables."""

    def __init__(
        self,
        rules: RuleConfigManager,
        medium_word_threshold: int = 25,
        short_greeting_max_words: int = 3,
        recheck_max_words: int = 8
    ):
        if rules is None:
            raise ValueError("PatternClassifier requires a RuleConfigManager")
        self.rules = rules
        self.medium_word_threshold = medium_word_threshold
        self.short_greeting_max_words = short_greeting_max_words
        self.recheck_max_words = recheck_max_words

    # Helpers over one snapshot

    @staticmethod
    def _category(tables: RuleTables, text: str) -> Optional[str]:
        for category, pattern in tables.category_patterns:
            if pattern.search(text):
                return category
        return None

    @staticmethod
    def _domain_for(tables: RuleTables, category: Optional[str]) -> Domain:
        if category is None:
            return Domain.GENERAL
        return tables.category_domain_map.get(category, Domain.GENERAL)

    @staticmethod
    def _core_text(tables: RuleTables, text: str) -> str:
        tokens = tokenize(text)
        kept = [t for t in tokens if t not in tables.stop_words]
        return " ".join(kept) if kept else " ".join(tokens)

    # Public checks

    def is_greeting(self, message: str) -> bool:
        """True when the whole message is a greeting or, for short inputs, starts with one."""
        tables = self.rules.current
        normalized = normalize_text(message)
        if not normalized:
            return False

        if normalized in tables.greetings:
            return True

        words = normalized.split()
        if len(words) <= self.short_greeting_max_words and words[0] in tables.greetings:
            # "hi, ipl score?" still carries a request
            return self._category(tables, normalized) is None

        return False

    def _complexity(self, tables: RuleTables, message: str) -> Complexity:
        text = message.lower()
        if tables.complexity_high.search(text):
            return Complexity.HIGH
        if tables.complexity_medium.search(text) or len(text.split()) > self.medium_word_threshold:
            return Complexity.MEDIUM
        return Complexity.SIMPLE

    @staticmethod
    def _language_family(tables: RuleTables, message: str) -> LanguageFamily:
        if _DEVANAGARI.search(message) or tables.hindi_pattern.search(message):
            return LanguageFamily.HINGLISH
        return LanguageFamily.ENGLISH

    def estimate_complexity(self, message: str) -> Complexity:
        return self._complexity(self.rules.current, message)

    def match_category(self, message: str) -> Optional[str]:
        """First search-keyword category, in table order, that matches."""
        return self._category(self.rules.current, message.lower())

    def detect_domain(self, message: str) -> Domain:
        tables = self.rules.current
        return self._domain_for(tables, self._category(tables, message.lower()))

    def detect_language_family(self, message: str) -> LanguageFamily:
        return self._language_family(self.rules.current, message)

    def detect_sequel(self, message: str) -> Optional[str]:
        """Return the titled entity when a numbered title appears in media context.

        Both a "title + number/ordinal" match and a context keyword are
        required; a bare number such as "room 204" never qualifies. Counts
        ("top 5", "book 2 tickets") are skipped: the title may not end in a
        count prefix and the number may not be followed by a plural noun
        outside the context list.
        """
        tables = self.rules.current
        if not tables.sequel_context_pattern.search(message):
            return None

        for match in tables.sequel_number_pattern.finditer(message):
            title_tokens = tokenize(match.group(1))
            if not title_tokens or title_tokens[-1] in tables.sequel_count_prefixes:
                continue

            following = tokenize(message[match.end():])[:1]
            if following and self._is_counted_noun(tables, following[0]):
                continue

            entity_words = [
                w for w in title_tokens
                if w not in tables.stop_words and not tables.sequel_context_pattern.fullmatch(w)
            ]
            if not entity_words:
                continue

            entity = " ".join(entity_words + [match.group(2).lower()])
            logger.debug("Sequel pattern detected", entity=entity)
            return entity

        return None

    @staticmethod
    def _is_counted_noun(tables: RuleTables, word: str) -> bool:
        # "2 tickets", "5 restaurants"; "2 songs" stays a title reference
        if len(word) <= 3 or not word.endswith("s"):
            return False
        return not (
            tables.sequel_context_pattern.fullmatch(word)
            or tables.sequel_context_pattern.fullmatch(word[:-1])
        )

    def is_recheck(self, message: str) -> bool:
        """True for short "do it again" style messages.

        Messages carrying a no-search phrase ("thanks again") are never rechecks.
        """
        tables = self.rules.current
        normalized = " ".join(message.lower().split())
        if not normalized or len(normalized.split()) > self.recheck_max_words:
            return False
        if tables.recheck_pattern.search(normalized) is None:
            return False
        return not any(pattern.search(normalized) for _, pattern in tables.no_search_patterns)

    def extract_core_text(self, message: str) -> str:
        """Message tokens with stop words removed."""
        return self._core_text(self.rules.current, message)

    def build_search_query(self, text: str, domain: Domain) -> str:
        """Append the domain suffix words the text does not already contain."""
        tables = self.rules.current
        base = " ".join(text.split())
        suffix = tables.domain_suffixes.get(domain, "")
        present = set(tokenize(base))
        extra = [w for w in suffix.split() if w.lower() not in present]
        return " ".join([base] + extra) if base else " ".join(extra)

    def classify(self, message: str) -> ClassificationResult:
        """Complexity, domain, language family and core text in one pass."""
        tables = self.rules.current
        category = self._category(tables, message.lower())
        return ClassificationResult(
            complexity=self._complexity(tables, message),
            domain=self._domain_for(tables, category),
            core_text=self._core_text(tables, message),
            language_family=self._language_family(tables, message),
            category=category
        )
