"""
Pydantic data models for the Intent & Routing Orchestrator.

This module defines the controlled vocabularies and the immutable records
that flow between the classifiers and the orchestration pipeline. Every
record is frozen: caches replace entries wholesale and never mutate one in
place.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum
import uuid


# UTC datetime factory function
def utc_now():
    """Factory function to get current UTC datetime."""
    return datetime.now(timezone.utc)


# Enums for controlled vocabulary
class Complexity(str, Enum):
    """Message complexity assessment."""
    SIMPLE = "simple"
    MEDIUM = "medium"
    HIGH = "high"


class Domain(str, Enum):
    """Topical domain a message belongs to."""
    ENTERTAINMENT = "entertainment"
    LOCAL = "local"
    FINANCE = "finance"
    TECH = "tech"
    TRAVEL = "travel"
    HEALTH = "health"
    SHOPPING = "shopping"
    EDUCATION = "education"
    GENERAL = "general"


class LanguageFamily(str, Enum):
    """Coarse language family detected from function words."""
    ENGLISH = "english"
    HINGLISH = "hinglish"


class SearchType(str, Enum):
    """Kind of external lookup a message needs."""
    LOCAL = "local"
    WEB = "web"
    NEWS = "news"
    SHOPPING = "shopping"
    KNOWLEDGE = "knowledge"
    NONE = "none"


class UserIntent(str, Enum):
    """Conversational intent of a user message."""
    QUESTION = "question"
    LOCAL_SEARCH = "local_search"
    PRODUCT_SEARCH = "product_search"
    FACTUAL_SEARCH = "factual_search"
    ENTERTAINMENT = "entertainment"
    COMPLIMENT = "compliment"
    GREETING = "greeting"
    FAREWELL = "farewell"
    GRATITUDE = "gratitude"
    AGREEMENT = "agreement"
    DISAGREEMENT = "disagreement"
    FRUSTRATION = "frustration"
    CASUAL_CHAT = "casual_chat"
    COMMAND = "command"
    CLARIFICATION = "clarification"
    CONTINUATION = "continuation"
    CREATIVE_REQUEST = "creative_request"
    UNKNOWN = "unknown"


class IntentSource(str, Enum):
    """Which stage produced a search-intent verdict."""
    LLM = "llm"
    KEYWORD_FALLBACK = "keyword_fallback"
    CACHE = "cache"
    DEFAULT = "default"
    PATTERN = "pattern"      # Greeting or sequel short-circuit
    MEMORY = "memory"        # Recheck served from the memory bridge


class ToneLanguage(str, Enum):
    """Language mix of a message."""
    ENGLISH = "english"
    HINDI = "hindi"
    HINGLISH = "hinglish"
    MIXED = "mixed"


class Formality(str, Enum):
    """Register of a message."""
    CASUAL = "casual"
    SEMI_FORMAL = "semi_formal"
    FORMAL = "formal"


class ToneStage(str, Enum):
    """Lifecycle of a tone analysis."""
    NEW = "new"
    STATISTICAL_ANALYZED = "statistical_analyzed"
    LLM_REFINED = "llm_refined"
    CACHED = "cached"


class RouteTier(str, Enum):
    """Downstream processing tier."""
    FAST = "FAST"
    ENRICHED = "ENRICHED"


class PlanTier(str, Enum):
    """Subscription plan of the requesting user."""
    STARTER = "starter"
    LITE = "lite"
    PLUS = "plus"
    PRO = "pro"
    APEX = "apex"
    SOVEREIGN = "sovereign"


class ShortCircuit(str, Enum):
    """Pipeline stage that ended a request early."""
    RECHECK = "recheck"
    GREETING = "greeting"
    SEQUEL = "sequel"


class PipelineStage(str, Enum):
    """States of the orchestration pipeline, in visiting order."""
    START = "start"
    RECHECK_CHECK = "recheck_check"
    GREETING_CHECK = "greeting_check"
    SEQUEL_PATTERN_CHECK = "sequel_pattern_check"
    SEARCH_CLASSIFY = "search_classify"
    TONE_ANALYZE = "tone_analyze"
    MERGE = "merge"
    ROUTE_DECIDE = "route_decide"
    DONE = "done"


class MessageRole(str, Enum):
    """Message roles in a stored conversation."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# Classification records
class ClassificationResult(BaseModel):
    """Zero-latency classification of a single message."""
    complexity: Complexity = Field(..., description="Estimated complexity level")
    domain: Domain = Field(Domain.GENERAL, description="Topical domain")
    core_text: str = Field("", description="Message with stop words removed")
    language_family: LanguageFamily = Field(LanguageFamily.ENGLISH, description="English or Hinglish")
    category: Optional[str] = Field(None, description="Matched search-keyword category")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "complexity": "simple",
                "domain": "local",
                "core_text": "best pizza restaurant",
                "language_family": "english",
                "category": "local"
            }
        }


class SearchIntentResult(BaseModel):
    """Verdict on whether a message needs live external information."""
    needs_search: bool = Field(..., description="Whether a search should run")
    search_type: SearchType = Field(SearchType.NONE, description="Kind of search")
    intent: UserIntent = Field(UserIntent.UNKNOWN, description="Conversational intent")
    suggested_query: Optional[str] = Field(None, description="Rewritten search query")
    confidence: float = Field(..., ge=0.0, le=100.0, description="Confidence score 0-100")
    source: IntentSource = Field(..., description="Stage that produced the verdict")
    reasoning: str = Field("", description="Short explanation")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "needs_search": True,
                "search_type": "local",
                "intent": "local_search",
                "suggested_query": "best pizza restaurant near me",
                "confidence": 90,
                "source": "llm",
                "reasoning": "Location based request"
            }
        }


class SuggestedStyle(BaseModel):
    """Response style hints derived from a tone analysis."""
    use_hinglish: bool = Field(False, description="Reply in Hinglish")
    formality_level: Formality = Field(Formality.SEMI_FORMAL, description="Target register")
    example_phrases: List[str] = Field(default_factory=list, description="Phrases matching the register")

    class Config:
        frozen = True


class ToneAnalysis(BaseModel):
    """Language mix and formality of a message."""
    language: ToneLanguage = Field(ToneLanguage.ENGLISH, description="Detected language mix")
    formality: Formality = Field(Formality.SEMI_FORMAL, description="Detected register")
    hindi_percent: float = Field(0.0, ge=0.0, le=100.0, description="Share of Hindi words")
    english_percent: float = Field(100.0, ge=0.0, le=100.0, description="Share of English words")
    suggested_style: SuggestedStyle = Field(default_factory=SuggestedStyle)
    hinglish_phrases: List[str] = Field(default_factory=list, description="Hinglish vocabulary found")
    should_match_tone: bool = Field(False, description="Confidence is high enough to mirror the user")
    stage: ToneStage = Field(ToneStage.NEW, description="Analysis lifecycle stage")

    class Config:
        frozen = True


class LastSearchQuery(BaseModel):
    """The last search-worthy query of a user, kept for recheck follow-ups."""
    query: str = Field(..., min_length=1, description="Query that triggered a search")
    domain: Domain = Field(Domain.GENERAL, description="Domain of the query")
    timestamp: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True


class ConversationTurn(BaseModel):
    """A prior turn returned by an external memory store."""
    role: MessageRole = Field(..., description="Role of the speaker")
    content: str = Field(..., description="Turn text")
    timestamp: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True


class RequestContext(BaseModel):
    """Per-request session object threaded through the pipeline."""
    user_id: str = Field(..., min_length=1, description="Stable user identifier")
    session_id: Optional[str] = Field(None, description="Conversation session identifier")
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    plan: PlanTier = Field(PlanTier.STARTER, description="Subscription plan")

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v):
        if not v.strip():
            raise ValueError("user_id cannot be blank")
        return v.strip()

    class Config:
        frozen = True


class RoutingDecision(BaseModel):
    """Final output of the orchestration pipeline for one request."""
    request_id: str = Field(..., description="Request identifier")
    user_id: str = Field(..., description="User identifier")
    message: str = Field(..., description="Original message")
    classification: ClassificationResult
    search_intent: SearchIntentResult
    tone: ToneAnalysis
    routed_to: RouteTier = Field(..., description="Processing tier")
    search_query: Optional[str] = Field(None, description="Query to hand to a search provider")
    short_circuit: Optional[ShortCircuit] = Field(None, description="Stage that ended the pipeline early")
    stages: List[PipelineStage] = Field(default_factory=list, description="Stages visited")
    processing_time_ms: float = Field(0.0, ge=0.0, description="Wall time spent routing")
    created_at: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True

    def to_record(self) -> Dict[str, Any]:
        """Plain JSON-compatible record for downstream prompt construction."""
        return self.model_dump(mode="json")
