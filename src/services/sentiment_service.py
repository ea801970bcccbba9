"""
Sentiment Analysis Engine.

Composes lexical extraction, emotion classification, cultural analysis and
escalation scoring into one SentimentResult per message, aggregates
interaction history into an EmotionalProfile, and fronts the learning engine
for outcome recording and recommendations.

Every judgment method degrades to a documented default instead of raising.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from statistics import mean
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from config.settings import EngineSettings
from models.learning import (
    AgentMatch,
    AgentRecommendations,
    ClassificationPrediction,
    CsatPrediction,
    DepartmentAnalytics,
    LearningResult,
    ProactiveSuggestions,
    ResolutionEstimate,
)
from models.sentiment import (
    DEFAULT_EMOTIONAL_PROFILE,
    NEGATIVE_EMOTIONS,
    CommunicationPreference,
    CommunicationStyle,
    CulturalContext,
    CustomerType,
    Emotion,
    EmotionalFactors,
    EmotionalProfile,
    EmotionResult,
    EngagementLevel,
    EscalationMetadata,
    EscalationRisk,
    EscalationSignals,
    Interaction,
    SentimentResult,
    SentimentTrend,
    Tone,
)
from services.cultural_context import CulturalContextAnalyzer
from services.emotion_classifier import EmotionClassifier
from services.escalation_predictor import EscalationPredictor
from services.learning_engine import LearningEngine
from services.lexicon import LexicalFeatureExtractor, LexicalFeatures
from utils.logging_config import get_logger
from utils.validators import clamp

logger = get_logger(__name__)

METADATA_KEYS = ("customer_tier", "previous_escalations", "ticket_age_hours", "reopen_count")

# Per-emotion scores feeding historical satisfaction and the trend comparison.
SATISFACTION_SCORES = {
    Emotion.SATISFIED: 0.8,
    Emotion.CALM: 0.7,
    Emotion.CONFUSED: 0.4,
    Emotion.URGENT: 0.4,
    Emotion.FRUSTRATED: 0.2,
    Emotion.ANGRY: 0.1,
}
TREND_SCORES = {**SATISFACTION_SCORES, Emotion.URGENT: 0.5}

PRIORITY_MIN = -2
PRIORITY_MAX = 3
TREND_WINDOW = 3

HistoryItem = Union[Interaction, Dict[str, Any], str]


def neutral_sentiment() -> SentimentResult:
    """Judgment returned for empty or unusable input."""
    return SentimentResult(
        primary_emotion=Emotion.CALM,
        intensity=0.5,
        confidence=0.3,
        emotional_factors=EmotionalFactors(),
        escalation_triggers=[],
        recommended_tone=Tone.PROFESSIONAL,
        priority_adjustment=0,
        cultural_context=CulturalContext(),
    )


class SentimentAnalysisEngine:
    """In-process API consumed by the surrounding ticketing application."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        learning_engine: Optional[LearningEngine] = None,
        extractor: Optional[LexicalFeatureExtractor] = None,
    ):
        self.settings = settings or EngineSettings()
        self.extractor = extractor or LexicalFeatureExtractor()
        self.classifier = EmotionClassifier(self.extractor)
        self.cultural_analyzer = CulturalContextAnalyzer()
        self.escalation_predictor = EscalationPredictor()
        self._learning_engine = learning_engine
        self._learning_lock = threading.Lock()

    @property
    def learning_engine(self) -> LearningEngine:
        """Created on first use so pure sentiment callers never spin up the model registry."""
        if self._learning_engine is None:
            with self._learning_lock:
                if self._learning_engine is None:
                    self._learning_engine = LearningEngine(settings=self.settings)
        return self._learning_engine

    # ------------------------------------------------------------------
    # Per-message judgment
    # ------------------------------------------------------------------

    def analyze_sentiment(
        self, text: str, context: Optional[Dict[str, Any]] = None
    ) -> SentimentResult:
        """Run extraction, classification, cultural analysis and escalation scoring."""
        if not isinstance(text, str) or not text.strip():
            return neutral_sentiment()
        context = context if isinstance(context, dict) else {}

        try:
            features = self.extractor.extract(text)
            return self._judge(text, context, features)
        except Exception:
            logger.exception("Sentiment analysis failed", extra={"text_length": len(text)})
            return neutral_sentiment()

    def _judge(
        self, text: str, context: Dict[str, Any], features: LexicalFeatures
    ) -> SentimentResult:
        emotion = self.classifier.classify_features(features)
        cultural = self.cultural_analyzer.analyze(text, context)
        tone = self.determine_tone(emotion, cultural)

        signals = EscalationSignals(
            primary_emotion=emotion.primary_emotion,
            intensity=emotion.intensity,
            escalation_triggers=features.escalation_triggers,
            emotional_factors=features.emotional_factors,
            recommended_tone=tone,
        )
        risk = self.escalation_predictor.predict(signals, self._metadata_from(context))

        return SentimentResult(
            primary_emotion=emotion.primary_emotion,
            intensity=emotion.intensity,
            confidence=emotion.confidence,
            emotional_factors=features.emotional_factors,
            escalation_triggers=features.escalation_triggers,
            recommended_tone=tone,
            priority_adjustment=self.priority_adjustment(
                risk.risk_score, emotion.primary_emotion, features.emotional_factors
            ),
            cultural_context=cultural,
            raw_sentiment=features.polarity,
        )

    @staticmethod
    def determine_tone(emotion: EmotionResult, cultural: CulturalContext) -> Tone:
        if emotion.primary_emotion in NEGATIVE_EMOTIONS and emotion.intensity > 0.6:
            return Tone.EMPATHETIC
        if emotion.primary_emotion == Emotion.CONFUSED:
            return Tone.REASSURING
        if cultural.communication_style == CommunicationStyle.TECHNICAL:
            return Tone.TECHNICAL
        return Tone.PROFESSIONAL

    @staticmethod
    def priority_adjustment(
        risk_score: float, primary_emotion: Emotion, factors: EmotionalFactors
    ) -> int:
        adjustment = 0
        if risk_score > 0.7:
            adjustment += 2
        elif risk_score > 0.5:
            adjustment += 1
        if factors.urgency > 0.7:
            adjustment += 1
        if factors.frustration > 0.8:
            adjustment += 1
        if primary_emotion == Emotion.SATISFIED and factors.urgency < 0.3:
            adjustment -= 1
        return int(max(PRIORITY_MIN, min(PRIORITY_MAX, adjustment)))

    @staticmethod
    def _metadata_from(context: Dict[str, Any]) -> Dict[str, Any]:
        metadata = context.get("metadata")
        source = metadata if isinstance(metadata, dict) else context
        return {key: source[key] for key in METADATA_KEYS if source.get(key) is not None}

    def predict_escalation_risk(
        self,
        sentiment_result: Union[SentimentResult, EscalationSignals, Dict[str, Any]],
        metadata: Union[EscalationMetadata, Dict[str, Any], None] = None,
    ) -> EscalationRisk:
        return self.escalation_predictor.predict(sentiment_result, metadata)

    # ------------------------------------------------------------------
    # Customer profiling
    # ------------------------------------------------------------------

    def get_emotional_state(
        self, ticket_history: Optional[Sequence[HistoryItem]]
    ) -> EmotionalProfile:
        """Profile a customer from their full interaction history; empty history yields the default."""
        if not ticket_history or isinstance(ticket_history, (str, bytes, Mapping)):
            return DEFAULT_EMOTIONAL_PROFILE

        try:
            interactions = [self._as_interaction(item) for item in ticket_history]
            return self._build_profile(interactions)
        except Exception:
            logger.exception(
                "Emotional state analysis failed", extra={"history_length": len(ticket_history)}
            )
            return DEFAULT_EMOTIONAL_PROFILE

    def _build_profile(self, interactions: List[Interaction]) -> EmotionalProfile:
        judgments: List[SentimentResult] = []
        word_counts: List[int] = []
        technical = False
        for interaction in interactions:
            features = self.extractor.extract(interaction.content)
            if interaction.content.strip():
                judgments.append(self._judge(interaction.content, interaction.context, features))
            else:
                judgments.append(neutral_sentiment())
            word_counts.append(features.word_count)
            technical = technical or features.technical

        emotions = [judgment.primary_emotion for judgment in judgments]
        avg_words = mean(word_counts)
        customer_type = self.determine_customer_type(emotions, avg_words, technical)

        return EmotionalProfile(
            customer_type=customer_type,
            communication_preference=self.determine_communication_preference(avg_words, technical),
            historical_satisfaction=self.historical_satisfaction(emotions),
            churn_risk=self.churn_risk(emotions, customer_type),
            sentiment_trend=self.sentiment_trend(emotions),
            engagement_level=self.engagement_level(interactions),
        )

    def determine_customer_type(
        self, emotions: Sequence[Emotion], avg_words: float, technical: bool
    ) -> CustomerType:
        if technical:
            return CustomerType.TECHNICAL
        if avg_words > self.settings.executive_word_count:
            return CustomerType.EXECUTIVE
        if _negative_count(emotions) >= len(emotions) * 0.5:
            return CustomerType.DEMANDING
        return CustomerType.PATIENT

    @staticmethod
    def determine_communication_preference(
        avg_words: float, technical: bool
    ) -> CommunicationPreference:
        if avg_words > 100:
            return CommunicationPreference.DETAILED
        if avg_words < 20:
            return CommunicationPreference.CONCISE
        if technical:
            return CommunicationPreference.TECHNICAL
        return CommunicationPreference.STEP_BY_STEP

    def historical_satisfaction(self, emotions: Sequence[Emotion]) -> float:
        """Recency-weighted satisfaction; capped when half or more interactions are negative."""
        if not emotions:
            return DEFAULT_EMOTIONAL_PROFILE.historical_satisfaction
        floor = self.settings.satisfaction_recency_floor
        count = len(emotions)
        weighted = [
            SATISFACTION_SCORES.get(emotion, 0.5) * (floor + (1 - floor) * (index + 1) / count)
            for index, emotion in enumerate(emotions)
        ]
        satisfaction = mean(weighted)
        if _negative_count(emotions) >= count / 2:
            satisfaction = min(satisfaction, self.settings.satisfaction_negative_cap)
        return clamp(satisfaction)

    def churn_risk(self, emotions: Sequence[Emotion], customer_type: CustomerType) -> float:
        risk = self.settings.churn_base_risk
        recent_negative = _negative_count(emotions[-TREND_WINDOW:])
        if recent_negative >= 2:
            risk += self.settings.churn_two_negative_bonus
        elif recent_negative == 1:
            risk += self.settings.churn_one_negative_bonus
        if customer_type == CustomerType.EXECUTIVE:
            risk += self.settings.churn_executive_bonus
        return clamp(risk)

    def sentiment_trend(self, emotions: Sequence[Emotion]) -> SentimentTrend:
        recent = emotions[-TREND_WINDOW:]
        earlier = emotions[:-TREND_WINDOW]
        if not recent or not earlier:
            return SentimentTrend.STABLE

        delta = mean(TREND_SCORES[e] for e in recent) - mean(TREND_SCORES[e] for e in earlier)
        if delta > self.settings.trend_threshold:
            return SentimentTrend.IMPROVING
        if delta < -self.settings.trend_threshold:
            return SentimentTrend.DECLINING
        return SentimentTrend.STABLE

    @staticmethod
    def engagement_level(interactions: Sequence[Interaction]) -> EngagementLevel:
        avg_length = mean(len(interaction.content) for interaction in interactions)
        if avg_length > 200:
            return EngagementLevel.HIGH
        if avg_length > 50:
            return EngagementLevel.MEDIUM
        return EngagementLevel.LOW

    @staticmethod
    def _as_interaction(item: HistoryItem) -> Interaction:
        if isinstance(item, Interaction):
            return item
        if isinstance(item, str):
            return Interaction(content=item)
        if isinstance(item, dict):
            return Interaction(
                content=item.get("content") or "",
                context=item.get("context") if isinstance(item.get("context"), dict) else {},
            )
        return Interaction()

    # ------------------------------------------------------------------
    # Learning and proactive intelligence
    # ------------------------------------------------------------------

    def learn_from_ticket_resolution(
        self, ticket_data: Dict[str, Any], resolution_outcome: Dict[str, Any]
    ) -> LearningResult:
        return self.learning_engine.process_ticket_resolution(ticket_data, resolution_outcome)

    def learn_from_agent_actions(
        self,
        agent_id: str,
        department: str,
        ticket_id: Optional[str],
        actions: Iterable[Dict[str, Any]],
        outcomes: Optional[Dict[str, Any]] = None,
    ) -> LearningResult:
        return self.learning_engine.process_agent_behavior(
            agent_id, department, ticket_id, actions, outcomes
        )

    def learn_from_escalation_patterns(self, escalation_data: Dict[str, Any]) -> LearningResult:
        return self.learning_engine.process_escalation_pattern(escalation_data)

    def get_personalized_recommendations(
        self, agent_id: str, department: str, ticket_context: Optional[Dict[str, Any]] = None
    ) -> AgentRecommendations:
        return self.learning_engine.get_agent_recommendations(agent_id, department, ticket_context)

    def get_department_insights(self, department: str, time_range: Any = None) -> DepartmentAnalytics:
        return self.learning_engine.get_department_analytics(department, time_range)

    def update_models_from_training_data(self) -> Dict[str, Any]:
        return self.learning_engine.retrain_models()

    def get_proactive_suggestions(
        self, context: Optional[Dict[str, Any]] = None
    ) -> ProactiveSuggestions:
        return self.learning_engine.generate_proactive_suggestions(context)

    def predict_ticket_classification(
        self, ticket_content: str, historical_data: Optional[Sequence[Dict[str, Any]]] = None
    ) -> ClassificationPrediction:
        return self.learning_engine.predict_optimal_classification(ticket_content, historical_data)

    def suggest_optimal_agent(
        self, ticket_data: Dict[str, Any], available_agents: Sequence[Dict[str, Any]]
    ) -> List[AgentMatch]:
        return self.learning_engine.recommend_best_agent(ticket_data, available_agents)

    def predict_resolution_time(
        self, ticket_data: Dict[str, Any], agent_profile: Optional[Dict[str, Any]] = None
    ) -> ResolutionEstimate:
        return self.learning_engine.estimate_resolution_time(ticket_data, agent_profile)

    def predict_customer_satisfaction(
        self, ticket_data: Dict[str, Any], proposed_response: str
    ) -> CsatPrediction:
        """Predict CSAT for a draft reply, using the reply's own sentiment as a signal."""
        response_sentiment = self.analyze_sentiment(proposed_response)
        return self.learning_engine.predict_csat(ticket_data, proposed_response, response_sentiment)

    def generate_knowledge_base_suggestions(self, ticket_content: str) -> List[Dict[str, Any]]:
        return self.learning_engine.suggest_knowledge_articles(ticket_content)


def _negative_count(emotions: Iterable[Emotion]) -> int:
    return sum(1 for emotion in emotions if emotion in NEGATIVE_EMOTIONS)
