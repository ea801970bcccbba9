"""
Lexical feature extraction.

Maps raw text to matched keyword sets per emotion, escalation triggers,
emotional factor scores and a lexical polarity score. Pure functions over
module-level dictionaries; nothing here holds state between calls.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Sequence

from models.sentiment import Emotion, EmotionalFactors, RawSentiment
from utils.validators import clamp

# Keywords scored by the emotion classifier. Phrases longer than
# LONG_PHRASE_LENGTH characters count LONG_PHRASE_WEIGHT instead of 1.
LONG_PHRASE_LENGTH = 10
LONG_PHRASE_WEIGHT = 1.5

CLASSIFIER_KEYWORDS: Dict[Emotion, Sequence[str]] = {
    Emotion.FRUSTRATED: (
        "frustrated", "annoyed", "stuck", "blocked", "irritated", "fed up", "sick of",
        "this is frustrating", "getting frustrated", "so frustrated", "really frustrated",
        "extremely frustrated", "very frustrated", "increasingly frustrated",
    ),
    Emotion.ANGRY: (
        "angry", "furious", "unacceptable", "terrible", "awful", "worst", "mad", "outraged",
        "this is unacceptable", "speak to a manager", "worst experience", "absolutely terrible",
        "completely unacceptable", "totally unacceptable", "this is ridiculous", "pathetic",
        "disgusting", "infuriating", "outrageous", "appalling",
    ),
    Emotion.CONFUSED: (
        "confused", "lost", "don't understand", "unclear", "puzzled", "baffled",
        "what do you mean", "how do i", "where do i", "not sure", "uncertain",
        "help me understand", "can you explain", "what does this mean", "no idea", "clueless",
        "doesn't make sense", "can't figure out",
    ),
    Emotion.SATISFIED: (
        "satisfied", "happy", "great", "excellent", "working", "perfect", "wonderful",
        "thank you", "appreciate", "fantastic", "amazing", "awesome", "brilliant",
        "outstanding", "good job", "well done", "exactly what", "love it", "works perfectly",
    ),
    Emotion.URGENT: (
        "urgent", "emergency", "asap", "immediately", "critical", "now", "right away",
        "deadline", "time sensitive", "rush", "priority", "important", "quickly",
        "soon as possible", "need this now", "right now", "as soon as possible",
        "time is running out", "pressing matter", "can't wait",
    ),
    Emotion.CALM: (
        "calm", "patient", "understanding", "no rush", "whenever", "at your convenience",
        "no problem", "take your time", "appreciate your help", "thank you for your time",
        "no hurry", "whenever convenient", "when you get a chance", "no pressure",
    ),
}

# Keywords feeding the emotional factor scores.
FACTOR_KEYWORDS: Dict[str, Sequence[str]] = {
    "frustrated": (
        "frustrated", "annoyed", "irritated", "fed up", "sick of", "tired of", "can't believe",
        "ridiculous", "waste of time", "going nowhere", "stuck", "blocked", "spinning wheels",
    ),
    "angry": (
        "angry", "furious", "outraged", "livid", "mad", "pissed", "unacceptable", "disgusted",
        "appalled", "terrible", "awful", "worst", "horrible", "hate", "stupid", "incompetent",
    ),
    "confused": (
        "confused", "lost", "don't understand", "unclear", "puzzled", "baffled", "mystified",
        "what does this mean", "how do i", "not sure", "uncertain", "perplexed", "bewildered",
    ),
    "urgent": (
        "urgent", "emergency", "asap", "immediately", "critical", "now", "right away",
        "deadline", "time sensitive", "rush", "priority", "important", "quickly",
        "soon as possible",
    ),
    "satisfied": (
        "satisfied", "happy", "pleased", "great", "excellent", "perfect", "wonderful",
        "amazing", "fantastic", "good job", "thank you", "appreciate", "helpful", "solved",
        "working",
    ),
}

URGENCY_INDICATORS = (
    "down", "offline", "not working", "broken", "crashed", "failed", "stopped", "frozen",
    "hung", "stuck", "error", "problem", "issue", "outage", "disruption", "impact",
    "affecting", "blocking",
)
URGENCY_PATTERNS = (
    "right away", "right now", "as soon as possible", "time sensitive", "can't wait",
    "pressing", "quick", "fast", "deadline", "rush",
)
# Each match subtracts from urgency after everything else has been added.
CALM_PATTERNS = (
    "no rush", "no hurry", "whenever", "when you have time", "when you get a chance",
    "at your convenience", "take your time", "no pressure",
)
FRUSTRATION_PATTERNS = (
    "fed up", "sick of", "tired of", "had enough", "can't believe", "ridiculous", "pathetic",
    "disgust", "outrageous", "infuriating",
)
CONFUSION_PATTERNS = (
    "don't understand", "what do you mean", "how do i", "where do i", "not sure",
    "uncertain", "help me understand", "puzzled", "no idea", "clueless", "lost",
    "doesn't make sense",
)

ESCALATION_TRIGGERS = (
    "speak to manager", "speak to a manager", "talk to manager", "escalate", "supervisor",
    "complaint", "file a complaint", "unacceptable", "absolutely unacceptable",
    "disappointed", "terrible service", "worst experience", "worst service", "worst support",
    "worst customer service", "worst company", "cancel account", "cancel my account",
    "switch providers", "switching providers", "legal action", "sue", "report this",
    "social media", "review", "rating", "never again", "last straw", "had enough",
    "done with", "going elsewhere", "considering switching",
)
# Co-occurring words that imply a trigger even when not contiguous.
STITCHED_TRIGGERS = (
    (("worst", "experience"), "worst experience"),
    (("worst", "service"), "worst service"),
)

TECHNICAL_INDICATORS = (
    "server", "network", "database", "api", "ssl", "firewall", "router", "switch",
    "protocol", "configuration", "terminal", "command", "script", "code", "log",
    "error code",
)

# AFINN-style valences for the audit-only polarity score.
POLARITY_LEXICON: Dict[str, int] = {
    "angry": -3, "furious": -3, "outraged": -3, "livid": -3, "hate": -3, "terrible": -3,
    "awful": -3, "horrible": -3, "worst": -3, "disgusting": -3, "pathetic": -3,
    "appalling": -3, "stupid": -2, "incompetent": -2, "ridiculous": -3, "unacceptable": -2,
    "frustrated": -2, "frustrating": -2, "annoyed": -2, "irritated": -3, "disappointed": -2,
    "confused": -2, "lost": -3, "stuck": -2, "broken": -1, "failed": -2, "fail": -2,
    "error": -2, "problem": -2, "issue": -1, "crashed": -2, "down": -1, "complaint": -2,
    "sue": -2, "cancel": -1, "urgent": -1, "emergency": -2, "critical": -2, "mad": -3,
    "good": 3, "great": 3, "excellent": 3, "perfect": 3, "perfectly": 3, "wonderful": 4,
    "amazing": 4, "awesome": 4, "fantastic": 4, "brilliant": 4, "outstanding": 5,
    "happy": 3, "pleased": 3, "satisfied": 2, "thanks": 2, "thank": 2, "appreciate": 2,
    "helpful": 2, "solved": 1, "love": 3, "calm": 2, "patient": 2, "help": 2,
}

_TOKEN_PATTERN = re.compile(r"[a-z']+")


@lru_cache(maxsize=1024)
def _phrase_pattern(phrase: str) -> "re.Pattern[str]":
    """Anchor at a word start; short single words must also end on a boundary."""
    suffix = r"\b" if " " not in phrase and len(phrase) <= 4 else ""
    return re.compile(r"\b" + re.escape(phrase) + suffix)


def contains_phrase(lower_text: str, phrase: str) -> bool:
    """Case-insensitive match of ``phrase`` in already-lowercased text."""
    return _phrase_pattern(phrase).search(lower_text) is not None


def matched_phrases(lower_text: str, phrases: Sequence[str]) -> List[str]:
    """Phrases present in the text, in dictionary order."""
    return [phrase for phrase in phrases if contains_phrase(lower_text, phrase)]


def phrase_weight(phrase: str) -> float:
    return LONG_PHRASE_WEIGHT if len(phrase) > LONG_PHRASE_LENGTH else 1.0


@dataclass
class LexicalFeatures:
    """Everything downstream analyzers read from one message."""

    emotion_matches: Dict[Emotion, List[str]] = field(default_factory=dict)
    emotion_scores: Dict[Emotion, float] = field(default_factory=dict)
    escalation_triggers: List[str] = field(default_factory=list)
    emotional_factors: EmotionalFactors = field(default_factory=EmotionalFactors)
    technical: bool = False
    word_count: int = 0
    polarity: RawSentiment = field(default_factory=RawSentiment)

    @property
    def has_matches(self) -> bool:
        return any(self.emotion_scores.values())


class LexicalFeatureExtractor:
    """Stateless text -> LexicalFeatures mapping."""

    def extract(self, text: str) -> LexicalFeatures:
        lower_text = (text or "").lower()
        emotion_matches = {
            emotion: matched_phrases(lower_text, keywords)
            for emotion, keywords in CLASSIFIER_KEYWORDS.items()
        }
        emotion_scores = {
            emotion: sum(phrase_weight(phrase) for phrase in matches)
            for emotion, matches in emotion_matches.items()
        }
        return LexicalFeatures(
            emotion_matches=emotion_matches,
            emotion_scores=emotion_scores,
            escalation_triggers=self.find_escalation_triggers(lower_text),
            emotional_factors=self.calculate_emotional_factors(lower_text),
            technical=bool(matched_phrases(lower_text, TECHNICAL_INDICATORS)),
            word_count=len((text or "").split()),
            polarity=self.polarity(lower_text),
        )

    def find_escalation_triggers(self, text: str) -> List[str]:
        """Matched trigger phrases in first-seen order, without duplicates."""
        lower_text = (text or "").lower()
        found = matched_phrases(lower_text, ESCALATION_TRIGGERS)
        for words, trigger in STITCHED_TRIGGERS:
            if trigger not in found and all(contains_phrase(lower_text, w) for w in words):
                found.append(trigger)
        return list(dict.fromkeys(found))

    def calculate_emotional_factors(self, text: str) -> EmotionalFactors:
        lower_text = (text or "").lower()

        def count(phrases: Sequence[str]) -> int:
            return len(matched_phrases(lower_text, phrases))

        urgency = (
            0.15 * count(URGENCY_INDICATORS)
            + 0.2 * count(FACTOR_KEYWORDS["urgent"])
            + 0.15 * count(URGENCY_PATTERNS)
            - 0.3 * count(CALM_PATTERNS)
        )
        frustration = (
            0.3 * count(FACTOR_KEYWORDS["frustrated"])
            + 0.35 * count(FACTOR_KEYWORDS["angry"])
            + 0.25 * count(FRUSTRATION_PATTERNS)
        )
        satisfaction = 0.25 * count(FACTOR_KEYWORDS["satisfied"])
        confusion = 0.3 * count(FACTOR_KEYWORDS["confused"]) + 0.25 * count(CONFUSION_PATTERNS)

        return EmotionalFactors(
            urgency=clamp(urgency),
            frustration=clamp(frustration),
            satisfaction=clamp(satisfaction),
            confusion=clamp(confusion),
        )

    def polarity(self, text: str) -> RawSentiment:
        tokens = _TOKEN_PATTERN.findall((text or "").lower())
        words = [token for token in tokens if token in POLARITY_LEXICON]
        score = float(sum(POLARITY_LEXICON[token] for token in words))
        comparative = score / len(tokens) if tokens else 0.0
        return RawSentiment(score=score, comparative=comparative, words=words)
