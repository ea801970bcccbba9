"""Pydantic models for training records, agent profiles and recommendation bundles."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class TrainingRecord(BaseModel):
    """Append-only ticket outcome, bucketed by department + category."""

    model_config = ConfigDict(frozen=True)

    ticket_id: Optional[str] = None
    department: str
    category: str
    priority: str = "medium"
    agent_id: Optional[str] = None
    resolution_time_minutes: float = Field(default=0.0, ge=0)
    csat: Optional[float] = Field(default=None, ge=0, le=5)
    escalated: bool = False
    reopened: bool = False
    solution_summary: Optional[str] = None
    ticket_text: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def pattern_key(self) -> str:
        return f"{self.department}_{self.category}"


class AgentAction(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    timestamp: Optional[datetime] = None
    content: Optional[str] = None
    effectiveness: Optional[float] = Field(default=None, ge=0, le=1)


class AgentOutcome(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    category: Optional[str] = None
    resolution_time_minutes: Optional[float] = Field(default=None, ge=0)
    csat: Optional[float] = Field(default=None, ge=0, le=5)
    escalated: bool = False
    resolved: bool = True


class BehaviorRecord(BaseModel):
    """One report of what an agent did on a ticket and how it turned out."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    department: str
    ticket_id: Optional[str] = None
    actions: List[AgentAction] = Field(default_factory=list)
    outcomes: AgentOutcome = Field(default_factory=AgentOutcome)
    timestamp: datetime = Field(default_factory=_utcnow)


class EscalationPattern(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    ticket_id: Optional[str] = None
    original_agent: Optional[str] = None
    escalated_to: Optional[str] = None
    reason: str = "unspecified"
    trigger_events: List[str] = Field(default_factory=list)
    time_to_escalation_minutes: Optional[float] = Field(default=None, ge=0)
    resolution_time_minutes: Optional[float] = Field(default=None, ge=0)
    department: str = "general"
    customer_profile: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)


class AgentProfile(BaseModel):
    """Rolling behavioral aggregate, mutated only by the learning engine."""

    agent_id: str
    department: str
    strengths: List[str] = Field(default_factory=list)
    improvement_areas: List[str] = Field(default_factory=list)
    avg_resolution_time: float = 0.0
    avg_csat: float = 0.0
    specializations: List[str] = Field(default_factory=list)
    behavior_patterns: List[BehaviorRecord] = Field(default_factory=list)
    tickets_handled: int = 0


class TimeRange(BaseModel):
    """Inclusive analytics window."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def normalize_bounds(cls, value: datetime) -> datetime:
        """Bounds are always UTC-aware so they compare with record timestamps."""
        return as_utc(value)

    @classmethod
    def last(cls, days: float = 30, now: Optional[datetime] = None) -> "TimeRange":
        end = now or _utcnow()
        return cls(start=end - timedelta(days=days), end=end)

    @classmethod
    def parse(cls, value: Union["TimeRange", str, Dict[str, Any], None]) -> "TimeRange":
        """Accept a TimeRange, a mapping, shorthand like ``"7d"``/``"24h"``, or None (30 days)."""
        if value is None:
            return cls.last()
        if isinstance(value, TimeRange):
            return value
        if isinstance(value, dict):
            return cls.model_validate(value)
        match = re.fullmatch(r"\s*(\d+)\s*([hdw])\s*", str(value).lower())
        if not match:
            raise ValueError(f"Unrecognized time range: {value}")
        amount, unit = int(match.group(1)), match.group(2)
        days = {"h": amount / 24, "d": amount, "w": amount * 7}[unit]
        return cls.last(days=days)

    def contains(self, moment: datetime) -> bool:
        return self.start <= as_utc(moment) <= self.end


class LearningResult(BaseModel):
    """Outcome of a recording call; never raised, always returned."""

    success: bool
    insights: Dict[str, Any] = Field(default_factory=dict)
    patterns_updated: bool = False
    model_updated: bool = False
    prevention_strategies: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class AgentRecommendations(BaseModel):
    suggested_actions: List[str] = Field(default_factory=list)
    estimated_resolution_time: float = 120.0
    confidence_level: float = Field(default=0.5, ge=0, le=1)
    alternative_approaches: List[str] = Field(default_factory=list)
    knowledge_base_suggestions: List[str] = Field(default_factory=list)
    escalation_risk: float = Field(default=0.3, ge=0, le=1)
    customer_satisfaction_prediction: float = Field(default=4.0, ge=0, le=5)
    similar_cases: int = 0


DEFAULT_SUGGESTED_ACTIONS = [
    "Review ticket details",
    "Check knowledge base",
    "Contact customer for clarification",
]


class PerformanceMetrics(BaseModel):
    ticket_count: int = 0
    avg_resolution_time: float = 0.0
    avg_csat: Optional[float] = None
    escalation_rate: float = 0.0
    reopen_rate: float = 0.0


class DepartmentAnalytics(BaseModel):
    department: str
    time_range: TimeRange
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    trend_analysis: Dict[str, str] = Field(default_factory=dict)
    agent_performance: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    common_issues: List[Dict[str, Any]] = Field(default_factory=list)
    resolution_patterns: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    improvement_opportunities: List[str] = Field(default_factory=list)
    training_recommendations: List[str] = Field(default_factory=list)


class ProactiveSuggestions(BaseModel):
    """Fixed-shape bundle; empty lists are valid."""

    preventive_actions: List[str] = Field(default_factory=list)
    resource_optimization: List[str] = Field(default_factory=list)
    process_improvements: List[str] = Field(default_factory=list)
    training_needs: List[str] = Field(default_factory=list)
    system_optimizations: List[str] = Field(default_factory=list)


class ClassificationPrediction(BaseModel):
    category: str = "general"
    priority: str = "medium"
    urgency: str = "normal"
    confidence: float = Field(default=0.5, ge=0, le=1)
    alternative_classifications: List[Dict[str, Any]] = Field(default_factory=list)
    reasoning: str = "Default classification applied"


class AgentMatch(BaseModel):
    agent_id: str
    match_score: float = Field(ge=0, le=1)
    estimated_resolution_time: float
    estimated_csat: float
    workload: float = Field(ge=0, le=1)
    specializations: List[str] = Field(default_factory=list)
    reasoning: str = ""


class ResolutionEstimate(BaseModel):
    estimated_time: int = 120
    confidence: float = Field(default=0.5, ge=0, le=1)
    factors: Dict[str, Any] = Field(default_factory=dict)


class CsatPrediction(BaseModel):
    predicted_csat: float = Field(default=3.5, ge=0, le=5)
    confidence: float = Field(default=0.5, ge=0, le=1)
    factors: Dict[str, Any] = Field(default_factory=dict)
    improvements: List[str] = Field(default_factory=list)
