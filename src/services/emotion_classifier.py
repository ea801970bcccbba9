"""
Emotion classification over lexical features.

Weighted keyword scoring with cross-emotion boosts; no network or I/O.
"""

from __future__ import annotations

from typing import Dict, Optional

from models.sentiment import Emotion, EmotionResult
from services.lexicon import LexicalFeatureExtractor, LexicalFeatures

DEFAULT_EMOTION = Emotion.CALM
DEFAULT_INTENSITY = 0.5
DEFAULT_CONFIDENCE = 0.3

FRUSTRATION_ANGER_BOOST = 0.5
URGENT_NEGATIVE_ANGER_BOOST = 0.3


class EmotionClassifier:
    """Scores the six emotions and picks the dominant one."""

    def __init__(self, extractor: Optional[LexicalFeatureExtractor] = None):
        self.extractor = extractor or LexicalFeatureExtractor()

    def classify(self, text: str) -> EmotionResult:
        return self.classify_features(self.extractor.extract(text))

    def classify_features(self, features: LexicalFeatures) -> EmotionResult:
        scores: Dict[Emotion, float] = {
            emotion: float(features.emotion_scores.get(emotion, 0.0)) for emotion in Emotion
        }

        total = sum(scores.values())
        if total <= 0:
            return EmotionResult(
                primary_emotion=DEFAULT_EMOTION,
                intensity=DEFAULT_INTENSITY,
                confidence=DEFAULT_CONFIDENCE,
                all_emotions=scores,
            )

        # Compounding affect: frustration alongside anger, or urgency alongside
        # either negative emotion, reads as anger.
        if scores[Emotion.FRUSTRATED] > 0 and scores[Emotion.ANGRY] > 0:
            scores[Emotion.ANGRY] += FRUSTRATION_ANGER_BOOST
        if scores[Emotion.URGENT] > 0 and (
            scores[Emotion.FRUSTRATED] > 0 or scores[Emotion.ANGRY] > 0
        ):
            scores[Emotion.ANGRY] += URGENT_NEGATIVE_ANGER_BOOST

        # max() keeps the first maximum, so ties follow the enum declaration order.
        primary = max(Emotion, key=lambda emotion: scores[emotion])
        total = sum(scores.values())

        return EmotionResult(
            primary_emotion=primary,
            intensity=min(scores[primary] / 3, 1.0),
            confidence=min(total / 4, 1.0),
            all_emotions=scores,
        )
