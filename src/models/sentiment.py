"""Pydantic models for per-message sentiment judgments and customer profiles."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Emotion(str, Enum):
    """Primary emotion labels, in tie-break order."""

    FRUSTRATED = "frustrated"
    ANGRY = "angry"
    CONFUSED = "confused"
    SATISFIED = "satisfied"
    URGENT = "urgent"
    CALM = "calm"


NEGATIVE_EMOTIONS = (Emotion.ANGRY, Emotion.FRUSTRATED)


class Tone(str, Enum):
    """Response tone recommended to the agent."""

    EMPATHETIC = "empathetic"
    REASSURING = "reassuring"
    TECHNICAL = "technical"
    PROFESSIONAL = "professional"


class CommunicationStyle(str, Enum):
    """How directly the customer phrases requests.

    TECHNICAL is never inferred from text; callers declare it through
    ``context["communication_style"]``.
    """

    DIRECT = "direct"
    INDIRECT = "indirect"
    BALANCED = "balanced"
    TECHNICAL = "technical"


class FormalityLevel(str, Enum):
    FORMAL = "formal"
    INFORMAL = "informal"
    NEUTRAL = "neutral"


class RiskLevel(str, Enum):
    """Escalation risk buckets (thresholds 0.3 / 0.5 / 0.7)."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CustomerType(str, Enum):
    TECHNICAL = "technical"
    EXECUTIVE = "executive"
    DEMANDING = "demanding"
    PATIENT = "patient"
    REGULAR_USER = "regular_user"


class CommunicationPreference(str, Enum):
    """Preferred answer shape; PROFESSIONAL only appears on the default profile."""

    DETAILED = "detailed"
    CONCISE = "concise"
    TECHNICAL = "technical"
    STEP_BY_STEP = "step-by-step"
    PROFESSIONAL = "professional"


class SentimentTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class EngagementLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EmotionalFactors(BaseModel):
    """Independently accumulated affect scores; they need not sum to 1."""

    model_config = ConfigDict(frozen=True)

    urgency: float = Field(default=0.0, ge=0, le=1)
    frustration: float = Field(default=0.0, ge=0, le=1)
    satisfaction: float = Field(default=0.0, ge=0, le=1)
    confusion: float = Field(default=0.0, ge=0, le=1)


class CulturalMarkers(BaseModel):
    """Fixed-shape placeholder kept stable for downstream consumers."""

    model_config = ConfigDict(frozen=True)

    time_orientation: str = "punctual"
    context_level: str = "medium"
    hierarchy_expectation: str = "flat"


class CulturalContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    communication_style: CommunicationStyle = CommunicationStyle.BALANCED
    formality_level: FormalityLevel = FormalityLevel.NEUTRAL
    cultural_markers: CulturalMarkers = Field(default_factory=CulturalMarkers)


class RawSentiment(BaseModel):
    """Lexical polarity, kept for audit and debugging only."""

    model_config = ConfigDict(frozen=True)

    score: float = 0.0
    comparative: float = 0.0
    words: List[str] = Field(default_factory=list)


class EmotionResult(BaseModel):
    """Classifier output for one message."""

    primary_emotion: Emotion
    intensity: float = Field(ge=0, le=1)
    confidence: float = Field(ge=0, le=1)
    all_emotions: Dict[Emotion, float] = Field(default_factory=dict)


class SentimentResult(BaseModel):
    """Complete per-message judgment; immutable once produced."""

    model_config = ConfigDict(frozen=True)

    primary_emotion: Emotion
    intensity: float = Field(ge=0, le=1)
    confidence: float = Field(ge=0, le=1)
    emotional_factors: EmotionalFactors
    escalation_triggers: List[str] = Field(default_factory=list)
    recommended_tone: Tone
    priority_adjustment: int = Field(ge=-2, le=3)
    cultural_context: CulturalContext
    raw_sentiment: RawSentiment = Field(default_factory=RawSentiment)


class EscalationMetadata(BaseModel):
    """Caller-supplied ticket metadata used by the escalation predictor."""

    model_config = ConfigDict(extra="ignore")

    customer_tier: Optional[str] = None
    previous_escalations: int = 0
    ticket_age_hours: float = 0.0
    reopen_count: int = 0


class EscalationSignals(BaseModel):
    """The subset of a sentiment judgment the escalation formula reads."""

    model_config = ConfigDict(extra="ignore")

    primary_emotion: Emotion = Emotion.CALM
    intensity: float = 0.0
    escalation_triggers: List[str] = Field(default_factory=list)
    emotional_factors: EmotionalFactors = Field(default_factory=EmotionalFactors)
    recommended_tone: Optional[Tone] = None


class EscalationRisk(BaseModel):
    risk_score: float = Field(ge=0, le=1)
    risk_level: RiskLevel
    recommendations: List[str] = Field(default_factory=list)
    factors: Dict[str, Any] = Field(default_factory=dict)


class Interaction(BaseModel):
    """One historical customer message supplied by the host application."""

    model_config = ConfigDict(extra="ignore")

    content: str = ""
    context: Dict[str, Any] = Field(default_factory=dict)


class EmotionalProfile(BaseModel):
    """Aggregate view over a customer's full interaction history."""

    model_config = ConfigDict(frozen=True)

    customer_type: CustomerType
    communication_preference: CommunicationPreference
    historical_satisfaction: float = Field(ge=0, le=1)
    churn_risk: float = Field(ge=0, le=1)
    sentiment_trend: SentimentTrend
    engagement_level: EngagementLevel


DEFAULT_EMOTIONAL_PROFILE = EmotionalProfile(
    customer_type=CustomerType.REGULAR_USER,
    communication_preference=CommunicationPreference.PROFESSIONAL,
    historical_satisfaction=0.5,
    churn_risk=0.3,
    sentiment_trend=SentimentTrend.STABLE,
    engagement_level=EngagementLevel.MEDIUM,
)
