"""
Emotion classifier and cultural context tests.

Run with: pytest tests/unit/test_emotion_classifier.py -v
"""

import sys
from pathlib import Path

import pytest

SRC_PATH = Path(__file__).parent.parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from models.sentiment import CommunicationStyle, CulturalMarkers, Emotion, FormalityLevel
from services.cultural_context import CulturalContextAnalyzer
from services.emotion_classifier import EmotionClassifier


class TestEmotionClassifier:
    """Test EmotionClassifier."""

    def setup_method(self):
        self.classifier = EmotionClassifier()

    def test_no_matches_returns_neutral_default(self):
        """Text without keywords yields the calm default instead of an error."""
        result = self.classifier.classify("The invoice number is 4411")
        assert result.primary_emotion == Emotion.CALM
        assert result.intensity == 0.5
        assert result.confidence == 0.3

    def test_angry_text(self):
        """Strong anger keywords dominate and saturate intensity."""
        result = self.classifier.classify("I am furious, this is unacceptable, speak to a manager")
        assert result.primary_emotion == Emotion.ANGRY
        assert result.intensity == 1.0
        assert result.confidence == 1.0

    def test_ties_follow_declaration_order(self):
        """Frustrated beats confused on an equal score."""
        result = self.classifier.classify("frustrated and confused")
        assert result.all_emotions[Emotion.FRUSTRATED] == result.all_emotions[Emotion.CONFUSED]
        assert result.primary_emotion == Emotion.FRUSTRATED

    def test_frustration_boosts_anger(self):
        """Frustration alongside anger adds 0.5 to anger."""
        result = self.classifier.classify("I am frustrated and angry")
        assert result.all_emotions[Emotion.ANGRY] == pytest.approx(1.5)
        assert result.primary_emotion == Emotion.ANGRY

    def test_urgency_with_negative_boosts_anger(self):
        """Urgency alongside a negative emotion adds 0.3 to anger."""
        result = self.classifier.classify("urgent: this is frustrating")
        assert result.all_emotions[Emotion.ANGRY] == pytest.approx(0.3)
        assert result.primary_emotion == Emotion.FRUSTRATED

    def test_scores_bounded(self):
        """Intensity and confidence stay within [0, 1]."""
        result = self.classifier.classify("great " * 50)
        assert 0.0 <= result.intensity <= 1.0
        assert 0.0 <= result.confidence <= 1.0


class TestCulturalContextAnalyzer:
    """Test CulturalContextAnalyzer."""

    def setup_method(self):
        self.analyzer = CulturalContextAnalyzer()

    def test_indirect_formal(self):
        """Polite hedging with formal salutations."""
        result = self.analyzer.analyze("Dear team, I would appreciate a fix if possible. Regards")
        assert result.communication_style == CommunicationStyle.INDIRECT
        assert result.formality_level == FormalityLevel.FORMAL

    def test_direct_informal(self):
        """Blunt requests with a casual greeting."""
        result = self.analyzer.analyze("Hey, please fix this asap")
        assert result.communication_style == CommunicationStyle.DIRECT
        assert result.formality_level == FormalityLevel.INFORMAL

    def test_ties_are_neutral(self):
        """No markers at all gives balanced/neutral."""
        result = self.analyzer.analyze("My parcel has not arrived")
        assert result.communication_style == CommunicationStyle.BALANCED
        assert result.formality_level == FormalityLevel.NEUTRAL

    def test_declared_technical_style(self):
        """A caller-declared style overrides detection."""
        result = self.analyzer.analyze("please fix", {"communication_style": "technical"})
        assert result.communication_style == CommunicationStyle.TECHNICAL

    def test_unknown_declared_style_ignored(self):
        """An unrecognized declared style falls back to detection."""
        result = self.analyzer.analyze("please fix", {"communication_style": "poetic"})
        assert result.communication_style == CommunicationStyle.DIRECT

    def test_markers_keep_fixed_shape(self):
        """Markers are the fixed placeholder shape."""
        result = self.analyzer.analyze("anything")
        assert result.cultural_markers == CulturalMarkers()
        assert set(result.cultural_markers.model_dump()) == {
            "time_orientation",
            "context_level",
            "hierarchy_expectation",
        }
