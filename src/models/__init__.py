"""Pydantic models for engine inputs and judgments."""

from models.learning import (  # noqa: F401
    AgentProfile,
    AgentRecommendations,
    BehaviorRecord,
    DepartmentAnalytics,
    EscalationPattern,
    LearningResult,
    ProactiveSuggestions,
    TimeRange,
    TrainingRecord,
)
from models.registry import (  # noqa: F401
    BackendKind,
    ModelRegistration,
    ModelStatus,
    PredictionResult,
    PredictionSource,
    RegistrationResult,
    TrainingResult,
)
from models.sentiment import (  # noqa: F401
    DEFAULT_EMOTIONAL_PROFILE,
    CulturalContext,
    Emotion,
    EmotionalFactors,
    EmotionalProfile,
    EmotionResult,
    EscalationRisk,
    RiskLevel,
    SentimentResult,
    Tone,
)
