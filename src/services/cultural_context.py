"""Communication style and formality detection."""

from __future__ import annotations

from typing import Any, Dict, Optional

from models.sentiment import (
    CommunicationStyle,
    CulturalContext,
    CulturalMarkers,
    FormalityLevel,
)
from services.lexicon import matched_phrases

DIRECT_INDICATORS = ("please fix", "need this", "asap", "urgent")
INDIRECT_INDICATORS = ("would appreciate", "if possible", "when convenient")
FORMAL_INDICATORS = ("dear", "sincerely", "regards", "thank you for")
INFORMAL_INDICATORS = ("hey", "hi", "thanks", "cheers")


class CulturalContextAnalyzer:
    """Infers style and formality by comparing marker counts; ties are neutral."""

    def analyze(self, text: str, context: Optional[Dict[str, Any]] = None) -> CulturalContext:
        lower_text = (text or "").lower()
        return CulturalContext(
            communication_style=self._declared_style(context)
            or self.detect_communication_style(lower_text),
            formality_level=self.detect_formality_level(lower_text),
            cultural_markers=self.detect_cultural_markers(lower_text, context),
        )

    def detect_communication_style(self, lower_text: str) -> CommunicationStyle:
        direct = len(matched_phrases(lower_text, DIRECT_INDICATORS))
        indirect = len(matched_phrases(lower_text, INDIRECT_INDICATORS))
        if direct > indirect:
            return CommunicationStyle.DIRECT
        if indirect > direct:
            return CommunicationStyle.INDIRECT
        return CommunicationStyle.BALANCED

    def detect_formality_level(self, lower_text: str) -> FormalityLevel:
        formal = len(matched_phrases(lower_text, FORMAL_INDICATORS))
        informal = len(matched_phrases(lower_text, INFORMAL_INDICATORS))
        if formal > informal:
            return FormalityLevel.FORMAL
        if informal > formal:
            return FormalityLevel.INFORMAL
        return FormalityLevel.NEUTRAL

    def detect_cultural_markers(
        self, lower_text: str, context: Optional[Dict[str, Any]] = None
    ) -> CulturalMarkers:
        # TODO: derive time orientation and context level from locale once the
        # host application passes it through.
        return CulturalMarkers()

    def _declared_style(self, context: Optional[Dict[str, Any]]) -> Optional[CommunicationStyle]:
        """Honor a style the caller already knows (e.g. a technical account)."""
        if not isinstance(context, dict):
            return None
        declared = context.get("communication_style")
        try:
            return CommunicationStyle(declared) if declared else None
        except ValueError:
            return None
