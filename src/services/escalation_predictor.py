"""
Escalation risk scoring.

Additive heuristic over the sentiment judgment and ticket metadata, clamped to
[0, 1] and bucketed into a risk level. Scoring failures degrade to a medium
risk instead of raising.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union

from models.sentiment import (
    Emotion,
    EscalationMetadata,
    EscalationRisk,
    EscalationSignals,
    RiskLevel,
    SentimentResult,
    Tone,
)
from utils.logging_config import get_logger
from utils.validators import clamp

logger = get_logger(__name__)

EMOTION_WEIGHTS = {
    Emotion.ANGRY: 0.4,
    Emotion.FRUSTRATED: 0.3,
    Emotion.CONFUSED: 0.25,
}
HIGH_INTENSITY_THRESHOLD = 0.7
HIGH_INTENSITY_WEIGHT = 0.2
TRIGGER_WEIGHT = 0.15
ENTERPRISE_WEIGHT = 0.1
PREVIOUS_ESCALATION_WEIGHT = 0.2
STALE_TICKET_HOURS = 48
STALE_TICKET_WEIGHT = 0.15
REOPEN_WEIGHT = 0.1
URGENCY_WEIGHT = 0.2
FRUSTRATION_WEIGHT = 0.25
CONFUSION_WEIGHT = 0.2

LEVEL_RECOMMENDATIONS = {
    RiskLevel.CRITICAL: [
        "Immediate escalation to senior support",
        "Manager notification required",
        "Expedite resolution timeline",
    ],
    RiskLevel.HIGH: [
        "Monitor closely for escalation signs",
        "Use empathetic communication tone",
        "Provide frequent status updates",
    ],
    RiskLevel.MEDIUM: [
        "Standard response with care",
        "Acknowledge customer concerns",
    ],
    RiskLevel.LOW: ["Standard support process"],
}
EMPATHY_ADDENDUM = "Use empathetic language and acknowledge frustration"
FALLBACK_RECOMMENDATIONS = ["Monitor closely", "Ensure timely response"]


def risk_level_for(score: float) -> RiskLevel:
    if score > 0.7:
        return RiskLevel.CRITICAL
    if score > 0.5:
        return RiskLevel.HIGH
    if score > 0.3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


SignalsInput = Union[SentimentResult, EscalationSignals, Mapping[str, Any]]
MetadataInput = Union[EscalationMetadata, Mapping[str, Any], None]


class EscalationPredictor:
    """Combines emotion output, triggers and metadata into an EscalationRisk."""

    def predict(self, signals: SignalsInput, metadata: MetadataInput = None) -> EscalationRisk:
        try:
            return self._score(self._signals(signals), self._metadata(metadata))
        except Exception as exc:
            logger.warning("Escalation scoring failed; using fallback", extra={"error": str(exc)})
            return EscalationRisk(
                risk_score=0.5,
                risk_level=RiskLevel.MEDIUM,
                recommendations=list(FALLBACK_RECOMMENDATIONS),
                factors={},
            )

    def _score(self, signals: EscalationSignals, metadata: EscalationMetadata) -> EscalationRisk:
        contributions: Dict[str, float] = {}

        contributions["emotion"] = EMOTION_WEIGHTS.get(signals.primary_emotion, 0.0)
        contributions["intensity"] = (
            HIGH_INTENSITY_WEIGHT if signals.intensity > HIGH_INTENSITY_THRESHOLD else 0.0
        )
        distinct_triggers = list(dict.fromkeys(signals.escalation_triggers))
        contributions["triggers"] = TRIGGER_WEIGHT * len(distinct_triggers)

        contributions["customer_tier"] = (
            ENTERPRISE_WEIGHT if (metadata.customer_tier or "").lower() == "enterprise" else 0.0
        )
        contributions["previous_escalations"] = (
            PREVIOUS_ESCALATION_WEIGHT if metadata.previous_escalations > 0 else 0.0
        )
        contributions["ticket_age"] = (
            STALE_TICKET_WEIGHT if metadata.ticket_age_hours > STALE_TICKET_HOURS else 0.0
        )
        contributions["reopen_count"] = REOPEN_WEIGHT if metadata.reopen_count > 1 else 0.0

        factors = signals.emotional_factors
        contributions["urgency"] = URGENCY_WEIGHT * factors.urgency
        contributions["frustration"] = FRUSTRATION_WEIGHT * factors.frustration
        contributions["confusion"] = CONFUSION_WEIGHT * factors.confusion

        score = clamp(sum(contributions.values()))
        level = risk_level_for(score)

        return EscalationRisk(
            risk_score=score,
            risk_level=level,
            recommendations=self.recommendations(level, signals.recommended_tone),
            factors={
                "sentiment": signals.primary_emotion.value,
                "intensity": signals.intensity,
                "triggers": len(distinct_triggers),
                "urgency": factors.urgency,
                "frustration": factors.frustration,
                "confusion": factors.confusion,
                "contributions": contributions,
            },
        )

    def recommendations(self, level: RiskLevel, tone: Optional[Tone]) -> List[str]:
        recommendations = list(LEVEL_RECOMMENDATIONS[level])
        if tone == Tone.EMPATHETIC:
            recommendations.append(EMPATHY_ADDENDUM)
        return recommendations

    def _signals(self, signals: SignalsInput) -> EscalationSignals:
        if isinstance(signals, EscalationSignals):
            return signals
        if isinstance(signals, SentimentResult):
            return EscalationSignals(
                primary_emotion=signals.primary_emotion,
                intensity=signals.intensity,
                escalation_triggers=signals.escalation_triggers,
                emotional_factors=signals.emotional_factors,
                recommended_tone=signals.recommended_tone,
            )
        return EscalationSignals.model_validate(dict(signals))

    def _metadata(self, metadata: MetadataInput) -> EscalationMetadata:
        if metadata is None:
            return EscalationMetadata()
        if isinstance(metadata, EscalationMetadata):
            return metadata
        return EscalationMetadata.model_validate(dict(metadata))
