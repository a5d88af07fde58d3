"""
Hot-swappable rule tables for the pattern and keyword classifiers.

The tables are held as one immutable ``RuleTables`` value. Reloading builds
a complete replacement (validated by pydantic, regexes compiled up front)
and swaps the reference in a single assignment, so a classifier call that
already took a snapshot keeps seeing a consistent set of tables. A reload
that fails validation leaves the active tables untouched.

Tables:
- Search keyword categories (ordered; earlier categories win ties)
- Category to domain map and domain to search-type map
- Greeting set, stop words, romanized Hindi function words
- Complexity keyword lists
- Recheck phrases
- Sequel context keywords, markers, ordinals and count prefixes
- Keyword fallback tables used when the LLM path fails
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Pattern, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from src.intent_router.models import Domain, SearchType, UserIntent, utc_now
from src.intent_router.utils import ConfigurationError


class RuleConfigError(ConfigurationError):
    """Raised when a rule table document is rejected."""
    pass


DEFAULT_SEARCH_KEYWORDS: Dict[str, List[str]] = {
    "time": [
        "aaj", "today", "kal", "tomorrow", "abhi", "now", "current",
        "latest", "live", "recent", "breaking", "is waqt", "filhal"
    ],
    "info": [
        "kya hai", "what is", "kaun hai", "who is", "kab", "when",
        "kahan", "where", "kitna", "how much", "price", "rate", "cost",
        "kaun", "konsa", "which"
    ],
    "entertainment": [
        "movie", "film", "song", "album", "release", "netflix",
        "amazon prime", "hotstar", "ott", "imdb", "rating", "review",
        "trailer", "box office", "web series", "bollywood", "hollywood",
        "actor", "actress", "singer", "music", "gaana", "picture"
    ],
    "news": [
        "news", "khabar", "headline", "election", "match", "score",
        "result", "winner", "died", "death", "accident", "update",
        "latest news", "taaza khabar"
    ],
    "finance": [
        "stock", "share", "sensex", "nifty", "bitcoin", "crypto",
        "dollar", "rupee", "gold", "silver", "petrol", "diesel",
        "market", "trading", "invest", "mutual fund", "price today"
    ],
    "weather": [
        "weather", "mausam", "temperature", "barish", "rain",
        "garmi", "sardi", "forecast", "humidity", "toofan", "storm"
    ],
    "sports": [
        "cricket", "ipl", "football", "hockey", "tennis", "world cup",
        "playing xi", "toss", "live score", "team", "player", "khel",
        "tournament", "final"
    ],
    "festivals": [
        "festival", "tyohar", "holiday", "chutti", "diwali", "holi",
        "eid", "christmas", "navratri", "puja", "rakhi", "baisakhi",
        "lohri", "guru purab", "kab hai"
    ],
    "local": [
        "near me", "nearby", "best in", "restaurant", "hotel",
        "shop", "hospital", "doctor", "directions", "address",
        "location", "paas mein", "kahan milega", "contact number"
    ],
    "tech": [
        "download", "app", "software", "version", "launch",
        "release date", "features", "specs", "price india"
    ],
}

DEFAULT_CATEGORY_DOMAIN_MAP: Dict[str, Domain] = {
    "entertainment": Domain.ENTERTAINMENT,
    "news": Domain.GENERAL,
    "finance": Domain.FINANCE,
    "weather": Domain.GENERAL,
    "sports": Domain.ENTERTAINMENT,
    "festivals": Domain.GENERAL,
    "local": Domain.LOCAL,
    "time": Domain.GENERAL,
    "info": Domain.GENERAL,
    "tech": Domain.TECH,
}

DEFAULT_SIMPLE_GREETINGS: List[str] = [
    "hi", "hello", "hey", "hii", "hiii", "hiiii",
    "good morning", "good afternoon", "good evening", "good night",
    "gm", "gn", "morning", "evening",
    "namaste", "namaskar", "pranam", "suprabhat",
    "kya haal", "kaise ho", "how are you", "whats up", "wassup", "sup",
    "kya chal raha", "sab theek", "kaisa hai",
    "thanks", "thank you", "shukriya", "dhanyavaad", "thx", "ty",
    "ok", "okay", "acha", "accha", "theek hai", "thik hai",
    "hmm", "hmmm", "ohh", "ohhh", "achha", "got it",
    "haan", "nahi", "yes", "no", "yeah", "nope", "ha", "na",
    "bye", "goodbye", "alvida", "tata", "see you", "bye bye",
    "jai shri ram", "jai siyaram", "har har mahadev", "radhe radhe",
    "jai mata di", "sat sri akal", "jai hind", "vande mataram",
]

DEFAULT_DOMAIN_SUFFIXES: Dict[Domain, str] = {
    Domain.ENTERTAINMENT: "release date rating review",
    Domain.LOCAL: "near me",
    Domain.FINANCE: "today price India",
    Domain.TECH: "latest version features",
    Domain.TRAVEL: "booking price India",
    Domain.HEALTH: "doctor near me",
    Domain.SHOPPING: "price buy online India",
    Domain.EDUCATION: "course online",
    Domain.GENERAL: "latest",
}

DEFAULT_DOMAIN_SEARCH_TYPES: Dict[Domain, SearchType] = {
    Domain.ENTERTAINMENT: SearchType.WEB,
    Domain.LOCAL: SearchType.LOCAL,
    Domain.FINANCE: SearchType.NEWS,
    Domain.TECH: SearchType.WEB,
    Domain.TRAVEL: SearchType.WEB,
    Domain.HEALTH: SearchType.KNOWLEDGE,
    Domain.SHOPPING: SearchType.SHOPPING,
    Domain.EDUCATION: SearchType.KNOWLEDGE,
    Domain.GENERAL: SearchType.WEB,
}

DEFAULT_HINDI_PATTERNS: List[str] = [
    "kya", "hai", "kaise", "batao", "samjhao", "bhai", "yaar",
    "haan", "nahi", "acha", "theek", "karo", "karna", "karun",
    "karenge", "hoga", "tha", "thi", "mein", "aur", "par", "se",
    "ko", "ka", "ki", "ke", "aaegi", "aayegi", "ayegi", "ho",
    "kuch", "bahut", "zyada", "kam", "accha", "bura", "sahi",
    "galat", "pata", "ji", "hum", "tum", "aap", "mujhe", "tujhe"
]

DEFAULT_COMPLEXITY_HIGH: List[str] = [
    "code", "program", "function", "algorithm", "analyze",
    "compare", "explain in detail", "step by step", "debug",
    "error", "architecture", "design pattern", "optimize"
]

DEFAULT_COMPLEXITY_MEDIUM: List[str] = [
    "explain", "how to", "why", "difference", "samjhao",
    "batao detail", "kaise kare", "tutorial", "guide",
    "example", "kya fark hai", "compare karo"
]

DEFAULT_STOP_WORDS: List[str] = [
    "kya", "hai", "ka", "ki", "ke", "ko", "me", "mein",
    "the", "is", "a", "an", "what", "how", "when", "where",
    "who", "why", "batao", "bataao", "btao", "btaao",
    "please", "pls", "krdo", "kardo", "de", "do", "dijiye",
    "and", "or", "but", "for", "with", "about", "this", "that"
]

DEFAULT_RECHECK_PHRASES: List[str] = [
    "again", "check again", "search again", "try again", "look again",
    "once more", "one more time", "recheck", "re-check", "refresh",
    "dobara", "dubara", "phir se", "fir se", "phirse", "firse",
    "ek baar aur", "ek baar phir", "phir check", "fir check", "wapas check"
]

DEFAULT_SEQUEL_CONTEXT_KEYWORDS: List[str] = [
    "movie", "film", "release", "release date", "trailer", "teaser",
    "box office", "season", "episode", "web series", "sequel", "cast",
    "imdb", "ott", "netflix", "prime video", "hotstar", "cinema",
    "theatre", "theater", "screening", "album", "song"
]

DEFAULT_SEQUEL_MARKERS: List[str] = ["part", "season", "chapter", "vol", "vol.", "volume"]

DEFAULT_SEQUEL_ORDINALS: List[str] = [
    "ii", "iii", "iv", "second", "third", "fourth", "fifth", "2nd", "3rd", "4th", "5th"
]

# Words that turn the following number into a count, rank or address
DEFAULT_SEQUEL_COUNT_PREFIXES: List[str] = [
    "top", "best", "book", "buy", "order", "get", "under", "above", "below",
    "over", "around", "about", "only", "just", "last", "next", "first", "room",
    "flat", "gate", "platform", "sector", "block", "table", "for", "in", "at",
    "of", "with", "me"
]

DEFAULT_NO_SEARCH_PHRASES: Dict[str, List[str]] = {
    UserIntent.GRATITUDE.value: [
        "thank you", "thanks", "thank u", "thanku", "thx", "shukriya",
        "dhanyavaad", "dhanyawad", "much appreciated"
    ],
    UserIntent.FAREWELL.value: [
        "bye", "goodbye", "good night", "see you", "alvida", "tata", "chalo bye"
    ],
    UserIntent.GREETING.value: [
        "hello", "namaste", "good morning", "how are you", "kaise ho", "kya haal"
    ],
    UserIntent.COMPLIMENT.value: [
        "great job", "well done", "awesome", "you are great", "love you",
        "bahut badhiya", "bahut accha", "zabardast", "kamaal"
    ],
    UserIntent.AGREEMENT.value: [
        "got it", "theek hai", "thik hai", "samajh gaya", "samajh gayi", "sounds good"
    ],
    UserIntent.CREATIVE_REQUEST.value: [
        "write a poem", "write a story", "tell me a joke", "joke sunao",
        "kavita likho", "shayari", "kahani sunao"
    ],
}

DEFAULT_NEWS_KEYWORDS: List[str] = [
    "news", "khabar", "headline", "headlines", "breaking", "latest news",
    "taaza khabar", "election", "score", "live score", "result", "match result",
    "what happened"
]

DEFAULT_LOCAL_KEYWORDS: List[str] = [
    "near me", "nearby", "paas mein", "aas paas", "kahan milega",
    "restaurant", "restaurants", "hotel", "cafe", "hospital", "pharmacy",
    "atm", "directions", "address", "open now"
]

DEFAULT_SHOPPING_KEYWORDS: List[str] = [
    "buy", "price of", "price", "cost", "kitne ka", "kitne ki", "discount",
    "deal", "offer", "cheapest", "under rs", "amazon", "flipkart", "kharidna"
]

DEFAULT_KNOWLEDGE_KEYWORDS: List[str] = [
    "what is", "what are", "who is", "who was", "who invented", "how does",
    "history of", "meaning of", "define", "definition", "kya hai", "kaun hai",
    "kaun tha", "kya hota hai", "capital of", "population of"
]


class ComplexityPatterns(BaseModel):
    """High and medium complexity keyword lists."""
    high: List[str] = Field(default_factory=lambda: list(DEFAULT_COMPLEXITY_HIGH))
    medium: List[str] = Field(default_factory=lambda: list(DEFAULT_COMPLEXITY_MEDIUM))

    class Config:
        extra = "forbid"


def _clean_phrases(values: List[str]) -> List[str]:
    cleaned = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Keyword entries must be non-empty strings")
        phrase = " ".join(value.lower().split())
        if phrase not in cleaned:
            cleaned.append(phrase)
    return cleaned


class RuleTablesSpec(BaseModel):
    """Validated, serializable form of the rule tables."""
    search_keywords: Dict[str, List[str]] = Field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_SEARCH_KEYWORDS.items()})
    category_domain_map: Dict[str, Domain] = Field(default_factory=lambda: dict(DEFAULT_CATEGORY_DOMAIN_MAP))
    simple_greetings: List[str] = Field(default_factory=lambda: list(DEFAULT_SIMPLE_GREETINGS))
    domain_suffixes: Dict[Domain, str] = Field(default_factory=lambda: dict(DEFAULT_DOMAIN_SUFFIXES))
    domain_search_types: Dict[Domain, SearchType] = Field(default_factory=lambda: dict(DEFAULT_DOMAIN_SEARCH_TYPES))
    hindi_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_HINDI_PATTERNS))
    complexity_patterns: ComplexityPatterns = Field(default_factory=ComplexityPatterns)
    stop_words: List[str] = Field(default_factory=lambda: list(DEFAULT_STOP_WORDS))
    recheck_phrases: List[str] = Field(default_factory=lambda: list(DEFAULT_RECHECK_PHRASES))
    sequel_context_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_SEQUEL_CONTEXT_KEYWORDS))
    sequel_markers: List[str] = Field(default_factory=lambda: list(DEFAULT_SEQUEL_MARKERS))
    sequel_ordinals: List[str] = Field(default_factory=lambda: list(DEFAULT_SEQUEL_ORDINALS))
    sequel_count_prefixes: List[str] = Field(default_factory=lambda: list(DEFAULT_SEQUEL_COUNT_PREFIXES))
    no_search_phrases: Dict[UserIntent, List[str]] = Field(default_factory=lambda: {UserIntent(k): list(v) for k, v in DEFAULT_NO_SEARCH_PHRASES.items()})
    news_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_NEWS_KEYWORDS))
    local_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_LOCAL_KEYWORDS))
    shopping_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_SHOPPING_KEYWORDS))
    knowledge_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_KNOWLEDGE_KEYWORDS))

    class Config:
        extra = "forbid"

    @field_validator(
        "simple_greetings", "hindi_patterns", "stop_words", "recheck_phrases",
        "sequel_context_keywords", "sequel_markers", "sequel_ordinals",
        "sequel_count_prefixes", "news_keywords", "local_keywords",
        "shopping_keywords", "knowledge_keywords"
    )
    @classmethod
    def validate_phrase_list(cls, v):
        return _clean_phrases(v)

    @field_validator("search_keywords")
    @classmethod
    def validate_search_keywords(cls, v):
        if not v:
            raise ValueError("search_keywords must define at least one category")
        return {category.strip().lower(): _clean_phrases(words) for category, words in v.items()}

    @field_validator("no_search_phrases")
    @classmethod
    def validate_no_search_phrases(cls, v):
        return {intent: _clean_phrases(words) for intent, words in v.items()}

    @field_validator("complexity_patterns")
    @classmethod
    def validate_complexity(cls, v):
        if not v.high or not v.medium:
            raise ValueError("complexity_patterns needs both high and medium keywords")
        return ComplexityPatterns(high=_clean_phrases(v.high), medium=_clean_phrases(v.medium))


_NEVER_MATCHES = re.compile(r"(?!x)x")


def compile_phrase_pattern(phrases: List[str]) -> Pattern:
    """Compile phrases into one case-insensitive, token-bounded alternation.

    Longer phrases are tried first so "latest news" wins over "latest".
    """
    if not phrases:
        return _NEVER_MATCHES
    ordered = sorted(set(phrases), key=len, reverse=True)
    alternation = "|".join(r"\s+".join(re.escape(word) for word in p.split()) for p in ordered)
    return re.compile(rf"(?<!\w)(?:{alternation})(?!\w)", re.IGNORECASE)


def compile_sequel_pattern(markers: List[str], ordinals: List[str]) -> Pattern:
    """Compile the "title + number" matcher ("border 2", "kgf chapter 2", "dhoom iii").

    Group 1 holds up to four title words, matched lazily so the title ends
    right before the marker or number. Group 2 holds the number or ordinal.
    """
    def alternation(phrases):
        return "|".join(re.escape(p) for p in sorted(set(phrases), key=len, reverse=True))

    number = r"\d{1,2}"
    if ordinals:
        number += "|" + alternation(ordinals)
    marker = rf"(?:(?:{alternation(markers)})\s+)?" if markers else ""
    return re.compile(
        rf"\b([a-z][\w'&:.-]*(?:\s+[a-z][\w'&:.-]*){{0,3}}?)\s+{marker}({number})\b",
        re.IGNORECASE
    )


@dataclass(frozen=True)
class RuleTables:
    """Immutable compiled snapshot of every rule table."""
    spec: RuleTablesSpec
    version: int
    category_patterns: Tuple[Tuple[str, Pattern], ...]
    category_domain_map: Mapping[str, Domain]
    greetings: frozenset
    domain_suffixes: Mapping[Domain, str]
    domain_search_types: Mapping[Domain, SearchType]
    hindi_pattern: Pattern
    complexity_high: Pattern
    complexity_medium: Pattern
    stop_words: frozenset
    recheck_pattern: Pattern
    sequel_context_pattern: Pattern
    sequel_number_pattern: Pattern
    sequel_count_prefixes: frozenset
    no_search_patterns: Tuple[Tuple[UserIntent, Pattern], ...]
    news_pattern: Pattern
    local_pattern: Pattern
    shopping_pattern: Pattern
    knowledge_pattern: Pattern
    loaded_at: Any = field(default_factory=utc_now)

    @classmethod
    def build(cls, spec: RuleTablesSpec, version: int) -> "RuleTables":
        """Compile a validated table document into a rule snapshot."""
        return cls(
            spec=spec,
            version=version,
            category_patterns=tuple(
                (category, compile_phrase_pattern(words))
                for category, words in spec.search_keywords.items()
            ),
            category_domain_map=MappingProxyType(dict(spec.category_domain_map)),
            greetings=frozenset(spec.simple_greetings),
            domain_suffixes=MappingProxyType(dict(spec.domain_suffixes)),
            domain_search_types=MappingProxyType(dict(spec.domain_search_types)),
            hindi_pattern=compile_phrase_pattern(spec.hindi_patterns),
            complexity_high=compile_phrase_pattern(spec.complexity_patterns.high),
            complexity_medium=compile_phrase_pattern(spec.complexity_patterns.medium),
            stop_words=frozenset(spec.stop_words),
            recheck_pattern=compile_phrase_pattern(spec.recheck_phrases),
            sequel_context_pattern=compile_phrase_pattern(spec.sequel_context_keywords),
            sequel_number_pattern=compile_sequel_pattern(spec.sequel_markers, spec.sequel_ordinals),
            sequel_count_prefixes=frozenset(spec.sequel_count_prefixes),
            no_search_patterns=tuple(
                (intent, compile_phrase_pattern(words))
                for intent, words in spec.no_search_phrases.items()
            ),
            news_pattern=compile_phrase_pattern(spec.news_keywords),
            local_pattern=compile_phrase_pattern(spec.local_keywords),
            shopping_pattern=compile_phrase_pattern(spec.shopping_keywords),
            knowledge_pattern=compile_phrase_pattern(spec.knowledge_keywords),
        )


class RuleConfigManager:
    """Owns the active rule tables and replaces them atomically on reload."""

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self._version = 0
        self._tables = self._build(RuleTablesSpec())
        if overrides:
            self.load_from_dict(overrides)

    def _build(self, spec: RuleTablesSpec) -> RuleTables:
        self._version += 1
        return RuleTables.build(spec, self._version)

    @property
    def current(self) -> RuleTables:
        """The active snapshot. Callers should read it once per operation."""
        return self._tables

    def load_from_dict(self, data: Dict[str, Any]) -> RuleTables:
        """Merge ``data`` over the active tables and swap in the result.

        Top-level keys absent from ``data`` keep their current value.

        Raises:
            RuleConfigError: If the merged document is invalid
        """
        if not isinstance(data, dict):
            raise RuleConfigError("Rule configuration must be a JSON object")

        merged = self._tables.spec.model_dump(mode="json")
        merged.update(data)

        try:
            spec = RuleTablesSpec.model_validate(merged)
            tables = RuleTables.build(spec, self._version + 1)
        except (ValidationError, re.error, ValueError, TypeError) as e:
            logger.warning("Rejected rule configuration", error=str(e), keys=sorted(data.keys()))
            raise RuleConfigError(f"Invalid rule configuration: {e}") from e

        self._version += 1
        self._tables = tables
        logger.info("Rule tables updated", version=self._version, keys=sorted(data.keys()))
        return tables

    def load_from_json(self, text: str) -> RuleTables:
        """Parse a JSON document and load it with ``load_from_dict``."""
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise RuleConfigError(f"Rule configuration is not valid JSON: {e}") from e
        return self.load_from_dict(data)

    def load_from_file(self, path: Union[str, Path]) -> RuleTables:
        """Load rule overrides from a JSON file on disk."""
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise RuleConfigError(f"Cannot read rule configuration {path}: {e}") from e
        return self.load_from_json(text)

    def reset_to_defaults(self) -> RuleTables:
        """Discard every override and reinstate the built-in tables."""
        self._tables = self._build(RuleTablesSpec())
        logger.info("Rule tables reset to defaults", version=self._version)
        return self._tables

    def export_to_json(self) -> str:
        """Serialize the active tables as a JSON document."""
        return json.dumps(self._tables.spec.model_dump(mode="json"), indent=2, ensure_ascii=False)

    def add_search_keyword(self, category: str, keyword: str) -> RuleTables:
        keywords = self._tables.spec.model_dump(mode="json")["search_keywords"]
        keywords.setdefault(category.lower(), []).append(keyword)
        return self.load_from_dict({"search_keywords": keywords})

    def remove_search_keyword(self, category: str, keyword: str) -> RuleTables:
        keywords = self._tables.spec.model_dump(mode="json")["search_keywords"]
        if category.lower() in keywords:
            keywords[category.lower()] = [k for k in keywords[category.lower()] if k != keyword.lower()]
        return self.load_from_dict({"search_keywords": keywords})

    def add_greeting(self, greeting: str) -> RuleTables:
        greetings = list(self._tables.spec.simple_greetings) + [greeting]
        return self.load_from_dict({"simple_greetings": greetings})

    def remove_greeting(self, greeting: str) -> RuleTables:
        greetings = [g for g in self._tables.spec.simple_greetings if g != greeting.lower()]
        return self.load_from_dict({"simple_greetings": greetings})

    def stats(self) -> Dict[str, Any]:
        """Sizes of the active tables."""
        spec = self._tables.spec
        return {
            "version": self._tables.version,
            "loaded_at": self._tables.loaded_at.isoformat(),
            "search_categories": len(spec.search_keywords),
            "search_keywords": sum(len(v) for v in spec.search_keywords.values()),
            "greetings": len(spec.simple_greetings),
            "hindi_patterns": len(spec.hindi_patterns),
            "stop_words": len(spec.stop_words),
            "recheck_phrases": len(spec.recheck_phrases),
            "complexity_patterns": {
                "high": len(spec.complexity_patterns.high),
                "medium": len(spec.complexity_patterns.medium),
            },
        }
