"""
Learning engine.

Records ticket outcomes, agent behavior and escalation patterns; derives agent,
department and proactive insights from them; and delegates every numeric
prediction and retraining step to the model manager.

All state lives in memory behind one re-entrant lock. Model manager calls are
made outside that lock so slow backends never block recording.
"""

from __future__ import annotations

import threading
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from statistics import mean
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from config.settings import EngineSettings
from models.learning import (
    DEFAULT_SUGGESTED_ACTIONS,
    AgentAction,
    AgentMatch,
    AgentOutcome,
    AgentProfile,
    AgentRecommendations,
    BehaviorRecord,
    ClassificationPrediction,
    CsatPrediction,
    DepartmentAnalytics,
    EscalationPattern,
    LearningResult,
    PerformanceMetrics,
    ProactiveSuggestions,
    ResolutionEstimate,
    TimeRange,
    TrainingRecord,
    as_utc,
)
from models.registry import InHouseModelConfig, ModelStatus, PredictionResult
from models.sentiment import NEGATIVE_EMOTIONS, SentimentResult, Tone
from services.backends import tokenize
from services.lexicon import LexicalFeatureExtractor, contains_phrase
from services.model_manager import ModelManager
from utils.logging_config import get_logger
from utils.validators import clamp, ensure_present

logger = get_logger(__name__)

PREDICTOR_CAPABILITIES = ["resolution_time", "agent_matching", "satisfaction_prediction"]
CLASSIFIER_CAPABILITIES = ["category_prediction", "priority_assignment", "urgency_detection"]
ESCALATION_CAPABILITIES = ["escalation_prediction"]
AGENT_MODEL_CAPABILITIES = ["agent_performance"]

COMPLEXITY_MINUTES = {"low": 60, "medium": 120, "high": 240}
TREND_WINDOW_DAYS = 7
RISING_ISSUE_GROWTH = 1.5
RISING_ISSUE_MIN_COUNT = 3
MAX_KNOWLEDGE_SUGGESTIONS = 10

EMPATHY_MARKERS = ("sorry", "apologize", "apologise", "understand", "frustrating", "appreciate your patience")
GREETING_MARKERS = ("hi", "hello", "dear", "thanks for", "thank you for")
CLOSING_MARKERS = ("let me know", "any questions", "follow up", "reach out", "happy to help")
STEP_MARKERS = ("step", "first", "then", "next", "finally", "1.", "2.")
RESPONSE_IMPROVEMENTS = {
    "empathy": "Acknowledge the customer's situation before the fix",
    "steps": "Lay out the resolution as clear steps",
    "closing": "Close with a next step or an invitation to follow up",
    "substance": "Expand the reply; very short answers read as dismissive",
}

# (metric, threshold, message) for department-wide rates.
RATE_OPPORTUNITIES = (
    ("escalation_rate", 0.2, "Reduce escalations: {:.0%} of tickets escalated"),
    ("reopen_rate", 0.1, "Improve first-contact resolution: {:.0%} reopened"),
)

# (metric, threshold, message) per category in proactive suggestions.
CATEGORY_PROCESS_FIXES = (
    ("reopen_rate", 0.15, "Add a verification step before closing '{}' tickets"),
    ("escalation_rate", 0.25, "Clarify the '{}' escalation path and first-line runbook"),
)


def agent_model_id(agent_id: str) -> str:
    return f"agent-{agent_id}-model"


def _first(mapping: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return default


def _as_text(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _trend(earlier: Optional[float], recent: Optional[float], lower_is_better: bool) -> str:
    if earlier is None or recent is None:
        return "insufficient_data"
    if not earlier:
        return "stable" if not recent else ("declining" if lower_is_better else "improving")
    change = (recent - earlier) / abs(earlier)
    if abs(change) < 0.1:
        return "stable"
    improving = change < 0 if lower_is_better else change > 0
    return "improving" if improving else "declining"


def _mean_or_none(values: Sequence[float]) -> Optional[float]:
    return mean(values) if values else None


class LearningEngine:
    """Top-level façade for outcome recording, insights and recommendations."""

    def __init__(
        self,
        model_manager: Optional[ModelManager] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or (model_manager.settings if model_manager else EngineSettings())
        self.model_manager = model_manager or ModelManager(self.settings)
        self._extractor = LexicalFeatureExtractor()
        self._lock = threading.RLock()

        self.training_records: Dict[str, List[TrainingRecord]] = defaultdict(list)
        self.successful_strategies: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.agent_profiles: Dict[str, AgentProfile] = {}
        self.department_insights: Dict[str, Dict[str, Counter]] = defaultdict(
            lambda: {"actions": Counter(), "outcomes": Counter()}
        )
        self.escalation_patterns: Dict[str, List[EscalationPattern]] = defaultdict(list)

        self.initialize_models()

    def initialize_models(self) -> None:
        """Register the default in-house models (idempotent across shared managers)."""
        defaults = (
            (self.settings.predictor_model_id, "prediction", "outcome_statistics", PREDICTOR_CAPABILITIES),
            (self.settings.classifier_model_id, "classification", "keyword_classifier", CLASSIFIER_CAPABILITIES),
            (self.settings.escalation_model_id, "escalation", "outcome_statistics", ESCALATION_CAPABILITIES),
        )
        for model_id, model_type, backend, capabilities in defaults:
            result = self.model_manager.ensure_in_house(
                model_id,
                InHouseModelConfig(
                    type=model_type, version="1.0.0", backend=backend, capabilities=capabilities
                ),
            )
            if not result.success:
                logger.warning(
                    "Default model unavailable", extra={"model_id": model_id, "error": result.error}
                )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def process_ticket_resolution(
        self, ticket_data: Mapping[str, Any], resolution_outcome: Mapping[str, Any]
    ) -> LearningResult:
        """
        Record a resolved ticket and fold it into the predictor and classifier.

        ``ticket_data`` carries ``id``, ``department``, ``category``, ``priority``
        and optionally ``content``/``description``. ``resolution_outcome`` carries
        ``resolved_by``, ``time_to_resolve`` (minutes), ``csat``,
        ``was_escalated``, ``was_reopened``, ``solution`` and optionally
        ``resolved_at``.
        """
        try:
            ensure_present(ticket_data.get("department"), "department")
            ensure_present(ticket_data.get("category"), "category")
            fields = {
                "ticket_id": _as_text(_first(ticket_data, "id", "ticket_id")),
                "department": ticket_data["department"],
                "category": ticket_data["category"],
                "priority": ticket_data.get("priority") or "medium",
                "agent_id": _as_text(_first(resolution_outcome, "resolved_by", "agent_id")),
                "resolution_time_minutes": _first(
                    resolution_outcome, "time_to_resolve", "resolution_time_minutes", default=0.0
                ),
                "csat": resolution_outcome.get("csat"),
                "escalated": bool(_first(resolution_outcome, "was_escalated", "escalated", default=False)),
                "reopened": bool(_first(resolution_outcome, "was_reopened", "reopened", default=False)),
                "solution_summary": _first(resolution_outcome, "solution", "solution_summary"),
                "ticket_text": _first(ticket_data, "content", "description", "title"),
            }
            if resolution_outcome.get("resolved_at"):
                fields["timestamp"] = resolution_outcome["resolved_at"]
            record = TrainingRecord(**fields)
        except (AttributeError, ValueError) as exc:
            logger.warning("Ticket resolution rejected", extra={"error": str(exc)})
            return LearningResult(success=False, error=str(exc))

        key = record.pattern_key
        successful = self._is_successful(record)
        with self._lock:
            self.training_records[key].append(record)
            if successful:
                self.successful_strategies[key].append(
                    {
                        "pattern": key,
                        "solution": record.solution_summary,
                        "ticket_text": record.ticket_text,
                        "resolution_time_minutes": record.resolution_time_minutes,
                        "csat": record.csat,
                        "agent_id": record.agent_id,
                    }
                )
            bucket = list(self.training_records[key])

        predictor = self.model_manager.incremental_train(self.settings.predictor_model_id, record)
        if record.ticket_text:
            self.model_manager.incremental_train(self.settings.classifier_model_id, record)

        logger.info(
            "Ticket resolution recorded",
            extra={"department": record.department, "pattern_key": key, "successful": successful},
        )
        return LearningResult(
            success=True,
            patterns_updated=True,
            model_updated=predictor.success,
            insights={
                "pattern_key": key,
                "similar_cases": len(bucket),
                "avg_resolution_time": round(mean(r.resolution_time_minutes for r in bucket), 2),
                "avg_csat": _rounded(_mean_or_none([r.csat for r in bucket if r.csat is not None])),
                "escalation_rate": round(sum(r.escalated for r in bucket) / len(bucket), 4),
                "successful_strategy": successful,
                "model_version": predictor.version,
            },
        )

    def process_agent_behavior(
        self,
        agent_id: str,
        department: str,
        ticket_id: Optional[str],
        actions: Iterable[Mapping[str, Any]],
        outcomes: Optional[Mapping[str, Any]] = None,
    ) -> LearningResult:
        """Update the agent's rolling profile and train their agent-specific model."""
        try:
            ensure_present(agent_id, "agent_id")
            ensure_present(department, "department")
            behavior = BehaviorRecord(
                agent_id=agent_id,
                department=department,
                ticket_id=_as_text(ticket_id),
                actions=[AgentAction.model_validate(dict(action)) for action in actions or []],
                outcomes=AgentOutcome.model_validate(dict(outcomes or {})),
            )
        except (TypeError, ValueError) as exc:
            logger.warning("Agent behavior rejected", extra={"agent_id": agent_id, "error": str(exc)})
            return LearningResult(success=False, error=str(exc))

        with self._lock:
            profile = self.agent_profiles.get(agent_id)
            if profile is None:
                profile = AgentProfile(agent_id=agent_id, department=department)
                self.agent_profiles[agent_id] = profile
            profile.behavior_patterns.append(behavior)
            self._analyze_behavior(profile)

            insight = self.department_insights[department]
            insight["actions"].update(action.type for action in behavior.actions)
            insight["outcomes"]["escalated" if behavior.outcomes.escalated else "handled"] += 1
            insights = {
                "agent_id": agent_id,
                "tickets_handled": profile.tickets_handled,
                "avg_resolution_time": round(profile.avg_resolution_time, 2),
                "avg_csat": round(profile.avg_csat, 2),
                "strengths": list(profile.strengths),
                "improvement_areas": list(profile.improvement_areas),
                "specializations": list(profile.specializations),
            }

        model_id = agent_model_id(agent_id)
        registration = self.model_manager.ensure_in_house(
            model_id,
            InHouseModelConfig(
                type="agent_performance",
                version="1.0.0",
                backend="outcome_statistics",
                capabilities=AGENT_MODEL_CAPABILITIES,
            ),
        )
        trained = registration.success and self.model_manager.incremental_train(
            model_id,
            {
                "department": department,
                "category": behavior.outcomes.category or "general",
                "resolution_time_minutes": behavior.outcomes.resolution_time_minutes or 0.0,
                "csat": behavior.outcomes.csat,
                "escalated": behavior.outcomes.escalated,
            },
        ).success

        insights["agent_model_id"] = model_id
        return LearningResult(
            success=True, insights=insights, patterns_updated=True, model_updated=bool(trained)
        )

    def _analyze_behavior(self, profile: AgentProfile) -> None:
        outcomes = [behavior.outcomes for behavior in profile.behavior_patterns]
        times = [o.resolution_time_minutes for o in outcomes if o.resolution_time_minutes is not None]
        csats = [o.csat for o in outcomes if o.csat is not None]
        profile.tickets_handled = len(outcomes)
        profile.avg_resolution_time = mean(times) if times else 0.0
        profile.avg_csat = mean(csats) if csats else 0.0

        successes = Counter(
            o.category
            for o in outcomes
            if o.category and not o.escalated and (o.csat or 0) >= self.settings.csat_success_threshold
        )
        profile.specializations = [category for category, count in successes.most_common() if count >= 2]

        effectiveness: Dict[str, List[float]] = defaultdict(list)
        for behavior in profile.behavior_patterns:
            for action in behavior.actions:
                if action.effectiveness is not None:
                    effectiveness[action.type].append(action.effectiveness)

        strengths: List[str] = []
        improvement_areas: List[str] = []
        for action_type, scores in sorted(effectiveness.items()):
            average = mean(scores)
            if average >= 0.7:
                strengths.append(f"Effective {action_type}")
            elif average <= 0.4:
                improvement_areas.append(f"Improve {action_type}")
        if csats and profile.avg_csat >= self.settings.csat_success_threshold:
            strengths.append("High customer satisfaction")
        if outcomes and sum(o.escalated for o in outcomes) / len(outcomes) > 0.3:
            improvement_areas.append("Escalation avoidance")
        profile.strengths = strengths
        profile.improvement_areas = improvement_areas

    def process_escalation_pattern(self, escalation_data: Mapping[str, Any]) -> LearningResult:
        """Record an escalation, train the escalation model and suggest prevention."""
        try:
            pattern = EscalationPattern.model_validate(dict(escalation_data))
        except (TypeError, ValueError) as exc:
            logger.warning("Escalation pattern rejected", extra={"error": str(exc)})
            return LearningResult(success=False, error=str(exc))

        with self._lock:
            history = self.escalation_patterns[pattern.department]
            history.append(pattern)
            reasons = Counter(p.reason for p in history)
            triggers = Counter(t for p in history for t in p.trigger_events)
            times = [p.time_to_escalation_minutes for p in history if p.time_to_escalation_minutes is not None]
            total = len(history)

        trained = self.model_manager.incremental_train(
            self.settings.escalation_model_id, self._escalation_record(pattern)
        )
        strategies = self._prevention_strategies(pattern, reasons)
        return LearningResult(
            success=True,
            patterns_updated=True,
            model_updated=trained.success,
            prevention_strategies=strategies,
            insights={
                "department": pattern.department,
                "total_escalations": total,
                "top_reasons": [reason for reason, _ in reasons.most_common(3)],
                "top_triggers": [trigger for trigger, _ in triggers.most_common(3)],
                "avg_time_to_escalation": _rounded(_mean_or_none(times)),
            },
        )

    @staticmethod
    def _escalation_record(pattern: EscalationPattern) -> Dict[str, Any]:
        return {
            "department": pattern.department,
            "category": pattern.reason,
            "escalated": True,
            "resolution_time_minutes": pattern.resolution_time_minutes or 0.0,
        }

    @staticmethod
    def _prevention_strategies(pattern: EscalationPattern, reasons: Counter) -> List[str]:
        strategies: List[str] = []
        if pattern.original_agent:
            strategies.append(f"Review the '{pattern.reason}' escalation with {pattern.original_agent}")
        if pattern.time_to_escalation_minutes is not None and pattern.time_to_escalation_minutes < 30:
            strategies.append("Route similar tickets to senior agents at intake")
        for trigger in pattern.trigger_events[:3]:
            strategies.append(f"Watch for early signal: {trigger}")
        if str(pattern.customer_profile.get("tier", "")).lower() == "enterprise":
            strategies.append("Assign enterprise accounts a named escalation contact")
        if reasons[pattern.reason] >= 3:
            strategies.append(f"Create a runbook for recurring escalations: {pattern.reason}")
        return strategies or ["Acknowledge concerns early and set clear expectations"]

    def _is_successful(self, record: TrainingRecord) -> bool:
        return (
            record.csat is not None
            and record.csat > self.settings.csat_success_threshold
            and not record.escalated
        )

    # ------------------------------------------------------------------
    # Recommendations and analytics
    # ------------------------------------------------------------------

    def get_agent_recommendations(
        self, agent_id: str, department: str, ticket_context: Optional[Mapping[str, Any]] = None
    ) -> AgentRecommendations:
        """Blend the agent's profile, similar successful cases and the predictor's estimate."""
        try:
            ticket_context = dict(ticket_context or {})
            category = ticket_context.get("category") or "general"
            key = f"{department}_{category}"
            with self._lock:
                profile = self.agent_profiles.get(agent_id)
                similar = sorted(
                    self.successful_strategies.get(key, []),
                    key=lambda case: -(case["csat"] or 0),
                )

            prediction = self.model_manager.predict(
                self.settings.predictor_model_id,
                {"ticket": {"department": department, "category": category}},
            )
            output = prediction.output if not prediction.is_default else {}

            solutions = list(dict.fromkeys(case["solution"] for case in similar if case["solution"]))
            suggested = [f"Apply proven fix: {solution}" for solution in solutions[:3]]
            if profile and category in profile.specializations:
                suggested.append(f"Lean on your {category} specialization")
            if not suggested:
                suggested = list(DEFAULT_SUGGESTED_ACTIONS)

            escalation_risk = float(output.get("escalation_risk", 0.3))
            alternatives = [f"Alternative fix: {solution}" for solution in solutions[3:6]]
            if escalation_risk > 0.5:
                alternatives.append("Loop in a senior agent early")
            if profile and profile.improvement_areas:
                alternatives.append(f"Pair with a peer on: {profile.improvement_areas[0]}")

            content = _first(ticket_context, "content", "description", "title", default="")
            articles = self.suggest_knowledge_articles(content) if content else []

            return AgentRecommendations(
                suggested_actions=suggested,
                estimated_resolution_time=float(
                    output.get("resolution_time_minutes")
                    or (profile.avg_resolution_time if profile and profile.avg_resolution_time else 120.0)
                ),
                confidence_level=prediction.confidence,
                alternative_approaches=alternatives,
                knowledge_base_suggestions=[article["title"] for article in articles[:5]],
                escalation_risk=clamp(escalation_risk),
                customer_satisfaction_prediction=clamp(float(output.get("csat", 4.0)), 0.0, 5.0),
                similar_cases=len(similar),
            )
        except Exception:
            logger.exception(
                "Agent recommendations failed", extra={"agent_id": agent_id, "department": department}
            )
            return AgentRecommendations(suggested_actions=list(DEFAULT_SUGGESTED_ACTIONS))

    def get_department_analytics(self, department: str, time_range: Any = None) -> DepartmentAnalytics:
        """Aggregate the department's records inside the window; empty windows yield the default shape."""
        try:
            window = TimeRange.parse(time_range)
        except ValueError as exc:
            logger.warning("Invalid time range; using last 30 days", extra={"error": str(exc)})
            window = TimeRange.last()

        try:
            with self._lock:
                records = [
                    record
                    for bucket in self.training_records.values()
                    for record in bucket
                    if record.department == department and window.contains(record.timestamp)
                ]
                profiles = [p for p in self.agent_profiles.values() if p.department == department]
                reasons = Counter(p.reason for p in self.escalation_patterns.get(department, []))
            if not records:
                return DepartmentAnalytics(department=department, time_range=window)

            metrics = _metrics(records)
            return DepartmentAnalytics(
                department=department,
                time_range=window,
                performance_metrics=metrics,
                trend_analysis=self._trend_analysis(records, window),
                agent_performance=self._agent_performance(records),
                common_issues=self._common_issues(records),
                resolution_patterns=self._resolution_patterns(records),
                improvement_opportunities=self._improvement_opportunities(records, metrics),
                training_recommendations=self._training_recommendations(profiles, reasons),
            )
        except Exception:
            logger.exception("Department analytics failed", extra={"department": department})
            return DepartmentAnalytics(department=department, time_range=window)

    @staticmethod
    def _trend_analysis(records: List[TrainingRecord], window: TimeRange) -> Dict[str, str]:
        midpoint = window.start + (window.end - window.start) / 2
        earlier = [r for r in records if r.timestamp < midpoint]
        recent = [r for r in records if r.timestamp >= midpoint]

        def average(rows, attribute):
            values = [getattr(r, attribute) for r in rows if getattr(r, attribute) is not None]
            return _mean_or_none([float(v) for v in values])

        return {
            "resolution_time": _trend(
                average(earlier, "resolution_time_minutes"), average(recent, "resolution_time_minutes"), True
            ),
            "csat": _trend(average(earlier, "csat"), average(recent, "csat"), False),
            "escalation_rate": _trend(average(earlier, "escalated"), average(recent, "escalated"), True),
        }

    @staticmethod
    def _agent_performance(records: List[TrainingRecord]) -> Dict[str, Dict[str, Any]]:
        by_agent: Dict[str, List[TrainingRecord]] = defaultdict(list)
        for record in records:
            if record.agent_id:
                by_agent[record.agent_id].append(record)
        return {agent_id: _metrics(rows).model_dump() for agent_id, rows in sorted(by_agent.items())}

    @staticmethod
    def _common_issues(records: List[TrainingRecord]) -> List[Dict[str, Any]]:
        counts = Counter(record.category for record in records)
        return [
            {"category": category, "count": count, "share": round(count / len(records), 4)}
            for category, count in counts.most_common(5)
        ]

    @staticmethod
    def _resolution_patterns(records: List[TrainingRecord]) -> Dict[str, Dict[str, Any]]:
        by_category: Dict[str, List[TrainingRecord]] = defaultdict(list)
        for record in records:
            by_category[record.category].append(record)
        patterns = {}
        for category, rows in sorted(by_category.items()):
            metrics = _metrics(rows)
            solutions = Counter(r.solution_summary for r in rows if r.solution_summary)
            patterns[category] = {
                "count": metrics.ticket_count,
                "avg_resolution_time": metrics.avg_resolution_time,
                "avg_csat": metrics.avg_csat,
                "top_solutions": [solution for solution, _ in solutions.most_common(3)],
            }
        return patterns

    def _improvement_opportunities(
        self, records: List[TrainingRecord], metrics: PerformanceMetrics
    ) -> List[str]:
        opportunities = [
            template.format(getattr(metrics, field))
            for field, limit, template in RATE_OPPORTUNITIES
            if getattr(metrics, field) > limit
        ]
        if metrics.avg_csat is not None and metrics.avg_csat < self.settings.csat_success_threshold:
            opportunities.append(f"Raise satisfaction: average CSAT is {metrics.avg_csat:.1f}")
        for category, pattern in self._resolution_patterns(records).items():
            if metrics.avg_resolution_time and pattern["avg_resolution_time"] > 1.5 * metrics.avg_resolution_time:
                opportunities.append(
                    f"Streamline {category} resolutions (avg {pattern['avg_resolution_time']:.0f} min)"
                )
        return opportunities

    def _training_recommendations(self, profiles: List[AgentProfile], reasons: Counter) -> List[str]:
        recommendations: List[str] = []
        areas = Counter(area for profile in profiles for area in profile.improvement_areas)
        for area, count in areas.most_common(3):
            recommendations.append(f"Team training: {area} ({count} agents)")
        for reason, _ in reasons.most_common(2):
            recommendations.append(f"Escalation handling for '{reason}'")
        for profile in profiles:
            if profile.avg_csat and profile.avg_csat < self.settings.csat_success_threshold - 1:
                recommendations.append(f"Customer communication coaching for {profile.agent_id}")
        return recommendations

    def generate_proactive_suggestions(
        self, context: Optional[Mapping[str, Any]] = None
    ) -> ProactiveSuggestions:
        """
        Heuristic suggestions from current trends and resource stress.

        ``context`` may carry ``department``, ``open_tickets`` and
        ``available_agents``; ``now`` overrides the clock for trend windows.
        """
        try:
            context = dict(context or {})
            department = context.get("department")
            now = context.get("now") or datetime.now(timezone.utc)
            with self._lock:
                records = [
                    record
                    for bucket in self.training_records.values()
                    for record in bucket
                    if department is None or record.department == department
                ]
                profiles = [
                    p for p in self.agent_profiles.values() if department is None or p.department == department
                ]
                triggers = Counter(
                    trigger
                    for dept, patterns in self.escalation_patterns.items()
                    if department is None or dept == department
                    for p in patterns
                    for trigger in p.trigger_events
                )

            suggestions = ProactiveSuggestions()
            rising = self._rising_issues(records, now)
            for category, count in rising:
                suggestions.preventive_actions.append(
                    f"Prepare for rising '{category}' volume ({count} tickets in the last {TREND_WINDOW_DAYS} days)"
                )
            for trigger, _ in triggers.most_common(2):
                suggestions.preventive_actions.append(f"Proactively address recurring escalation trigger '{trigger}'")

            stress = self._resource_stress(context, profiles)
            if stress > self.settings.resource_stress_threshold:
                suggestions.resource_optimization.append(
                    f"Rebalance queues: workload at {stress:.0%} of agent capacity"
                )
                if stress > 1.0:
                    suggestions.resource_optimization.append("Bring in overflow staff or defer low-priority work")
                for category, _ in rising:
                    specialists = [p.agent_id for p in profiles if category in p.specializations]
                    if specialists:
                        suggestions.resource_optimization.append(
                            f"Route '{category}' tickets to {', '.join(sorted(specialists))}"
                        )

            suggestions.process_improvements.extend(self._process_improvements(records))

            areas = Counter(area for profile in profiles for area in profile.improvement_areas)
            suggestions.training_needs.extend(f"Team training: {area}" for area, _ in areas.most_common(3))

            suggestions.system_optimizations.extend(self._system_optimizations())
            return suggestions
        except Exception:
            logger.exception("Proactive suggestions failed")
            return ProactiveSuggestions()

    @staticmethod
    def _rising_issues(records: List[TrainingRecord], now: datetime) -> List[Tuple[str, int]]:
        now = as_utc(now)
        recent_start = now - timedelta(days=TREND_WINDOW_DAYS)
        prior_start = recent_start - timedelta(days=TREND_WINDOW_DAYS)
        recent = Counter(r.category for r in records if recent_start <= r.timestamp <= now)
        prior = Counter(r.category for r in records if prior_start <= r.timestamp < recent_start)
        return [
            (category, count)
            for category, count in recent.most_common()
            if count >= RISING_ISSUE_MIN_COUNT and count >= RISING_ISSUE_GROWTH * prior.get(category, 0)
        ]

    def _resource_stress(self, context: Dict[str, Any], profiles: List[AgentProfile]) -> float:
        open_tickets = context.get("open_tickets")
        if open_tickets is None:
            return 0.0
        agents = context.get("available_agents")
        if isinstance(agents, (list, tuple)):
            agents = len(agents)
        agents = agents if agents is not None else len(profiles)
        capacity = max(1, int(agents)) * self.settings.agent_ticket_capacity
        return float(open_tickets) / capacity

    @staticmethod
    def _process_improvements(records: List[TrainingRecord]) -> List[str]:
        by_category: Dict[str, List[TrainingRecord]] = defaultdict(list)
        for record in records:
            by_category[record.category].append(record)
        improvements: List[str] = []
        for category, rows in sorted(by_category.items()):
            metrics = _metrics(rows)
            improvements.extend(
                template.format(category)
                for field, limit, template in CATEGORY_PROCESS_FIXES
                if getattr(metrics, field) > limit
            )
        return improvements

    def _system_optimizations(self) -> List[str]:
        optimizations: List[str] = []
        for registration in self.model_manager.list_models():
            if registration.status == ModelStatus.ERROR:
                optimizations.append(
                    f"Restore model '{registration.model_id}': {registration.status_reason or 'unknown error'}"
                )
            elif registration.performance.error_rate > 0.2:
                optimizations.append(
                    f"Investigate model '{registration.model_id}' error rate "
                    f"({registration.performance.error_rate:.0%})"
                )
        return optimizations

    # ------------------------------------------------------------------
    # Retraining
    # ------------------------------------------------------------------

    def retrain_models(self) -> Dict[str, Any]:
        """Fully retrain every default model from stored records, then refresh remote models."""
        with self._lock:
            records = [record for bucket in self.training_records.values() for record in bucket]
            escalations = [
                self._escalation_record(pattern)
                for patterns in self.escalation_patterns.values()
                for pattern in patterns
            ]

        results: Dict[str, Any] = {"models_retrained": [], "improvements": {}, "errors": []}
        datasets = (
            (self.settings.predictor_model_id, records),
            (self.settings.classifier_model_id, [r for r in records if r.ticket_text]),
            (self.settings.escalation_model_id, escalations),
        )
        for model_id, dataset in datasets:
            outcome = self.model_manager.retrain(model_id, dataset)
            if outcome.success:
                results["models_retrained"].append(model_id)
                results["improvements"][model_id] = outcome.improvement
            else:
                results["errors"].append({"model": model_id, "error": outcome.error})

        results["refreshed"] = [
            refresh.model_dump() for refresh in self.model_manager.refresh_external_models()
        ]
        return results

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def predict_optimal_classification(
        self, ticket_content: str, historical_data: Optional[Sequence[Mapping[str, Any]]] = None
    ) -> ClassificationPrediction:
        """Best-confidence pick across the classifier, an external model and history."""
        try:
            ensure_present(ticket_content, "ticket_content")
            payload = {"content": ticket_content}
            candidates: List[Dict[str, Any]] = []
            for source, prediction in (
                ("in_house", self.model_manager.predict(self.settings.classifier_model_id, payload)),
                ("external", self.model_manager.predict_via_capability("classification", payload)),
            ):
                candidate = _classification_candidate(source, prediction)
                if candidate:
                    candidates.append(candidate)
            historical = self._historical_match(ticket_content, historical_data)
            if historical:
                candidates.append(historical)
            if not candidates:
                return ClassificationPrediction()

            candidates.sort(key=lambda c: -c["confidence"])
            best = candidates[0]
            priority = best.get("priority") or "medium"
            return ClassificationPrediction(
                category=best["category"],
                priority=priority,
                urgency=self._urgency(ticket_content, priority),
                confidence=clamp(best["confidence"]),
                alternative_classifications=[
                    {k: c[k] for k in ("category", "priority", "confidence", "source")} for c in candidates[1:]
                ],
                reasoning=f"{best['source']} prediction selected with confidence {best['confidence']:.2f}",
            )
        except Exception:
            logger.exception("Classification prediction failed")
            return ClassificationPrediction()

    def _historical_match(
        self, content: str, historical_data: Optional[Sequence[Mapping[str, Any]]]
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            stored = [
                {"content": r.ticket_text, "category": r.category, "priority": r.priority}
                for bucket in self.training_records.values()
                for r in bucket
                if r.ticket_text
            ]
        tokens = set(tokenize(content))
        best: Optional[Dict[str, Any]] = None
        for example in list(historical_data or []) + stored:
            example_tokens = set(tokenize(str(example.get("content") or "")))
            if not tokens or not example_tokens or not example.get("category"):
                continue
            overlap = len(tokens & example_tokens) / len(tokens | example_tokens)
            if overlap > 0 and (best is None or overlap > best["confidence"]):
                best = {
                    "category": example["category"],
                    "priority": example.get("priority") or "medium",
                    "confidence": overlap,
                    "source": "historical",
                }
        return best

    def _urgency(self, content: str, priority: str) -> str:
        if priority in ("critical", "high"):
            return "high"
        if self._extractor.calculate_emotional_factors(content).urgency > 0.5:
            return "high"
        return "normal"

    def recommend_best_agent(
        self, ticket_data: Mapping[str, Any], available_agents: Sequence[Mapping[str, Any]]
    ) -> List[AgentMatch]:
        """Rank known agents by match, expected CSAT and spare capacity."""
        try:
            category = ticket_data.get("category") or "general"
            department = ticket_data.get("department") or "general"
            prediction = self.model_manager.predict(
                self.settings.predictor_model_id,
                {"ticket": {"department": department, "category": category}},
            )
            output = prediction.output if not prediction.is_default else {}

            matches: List[AgentMatch] = []
            for agent in available_agents:
                agent_id = _as_text(_first(agent, "id", "agent_id"))
                with self._lock:
                    profile = self.agent_profiles.get(agent_id)
                    profile = profile.model_copy(deep=True) if profile else None
                if profile is None:
                    continue

                match_score = 0.0
                if category in profile.specializations:
                    match_score += 0.5
                if profile.department == department:
                    match_score += 0.2
                match_score += 0.3 * (profile.avg_csat / 5 if profile.avg_csat else 0.5)

                estimated_time = float(output.get("resolution_time_minutes", 120.0))
                if profile.avg_resolution_time:
                    estimated_time = (estimated_time + profile.avg_resolution_time) / 2
                estimated_csat = profile.avg_csat or float(output.get("csat", 4.0))
                workload = agent.get("current_workload")
                if workload is None:
                    workload = float(agent.get("open_tickets", 0)) / self.settings.agent_ticket_capacity

                matches.append(
                    AgentMatch(
                        agent_id=agent_id,
                        match_score=clamp(match_score),
                        estimated_resolution_time=round(estimated_time, 2),
                        estimated_csat=round(clamp(estimated_csat, 0.0, 5.0), 2),
                        workload=clamp(float(workload)),
                        specializations=profile.specializations,
                        reasoning=_agent_reasoning(category, profile, match_score),
                    )
                )

            matches.sort(
                key=lambda m: -(0.4 * m.match_score + 0.3 * (m.estimated_csat / 5) + 0.3 * (1 - m.workload))
            )
            return matches
        except Exception:
            logger.exception("Agent recommendation failed")
            return []

    def estimate_resolution_time(
        self, ticket_data: Mapping[str, Any], agent_profile: Optional[Any] = None
    ) -> ResolutionEstimate:
        """Weighted blend: 0.5 model, 0.3 history, 0.2 complexity."""
        try:
            department = ticket_data.get("department") or "general"
            category = ticket_data.get("category") or "general"
            prediction = self.model_manager.predict(
                self.settings.predictor_model_id,
                {"ticket": {"department": department, "category": category}},
            )
            model_estimate = float(
                prediction.output.get("resolution_time_minutes", 120.0) if not prediction.is_default else 120.0
            )

            with self._lock:
                bucket = list(self.training_records.get(f"{department}_{category}", []))
            history = [r.resolution_time_minutes for r in bucket]
            agent_average = _profile_value(agent_profile, "avg_resolution_time")
            if agent_average:
                history.append(float(agent_average))
            historical_average = mean(history) if history else model_estimate

            complexity = self._complexity(ticket_data)
            estimate = (
                0.5 * model_estimate
                + 0.3 * historical_average
                + 0.2 * COMPLEXITY_MINUTES[complexity]
            )
            sample_confidence = min(1.0, len(bucket) / 20)
            return ResolutionEstimate(
                estimated_time=int(round(estimate)),
                confidence=clamp(0.5 * prediction.confidence + 0.5 * max(sample_confidence, 0.3)),
                factors={
                    "ticket_complexity": complexity,
                    "agent_experience": _profile_value(agent_profile, "tickets_handled") or "unknown",
                    "historical_average": round(historical_average, 2),
                    "model_prediction": model_estimate,
                },
            )
        except Exception:
            logger.exception("Resolution time estimate failed")
            return ResolutionEstimate()

    def _complexity(self, ticket_data: Mapping[str, Any]) -> str:
        text = " ".join(
            str(ticket_data.get(field) or "") for field in ("title", "description", "content")
        ).strip()
        features = self._extractor.extract(text)
        levels = ["low", "medium", "high"]
        level = 0 if features.word_count < 50 else 1 if features.word_count < 150 else 2
        if features.technical:
            level += 1
        if (ticket_data.get("priority") or "").lower() == "critical":
            level += 1
        return levels[min(level, 2)]

    def predict_csat(
        self,
        ticket_data: Mapping[str, Any],
        proposed_response: str,
        response_sentiment: Optional[SentimentResult] = None,
    ) -> CsatPrediction:
        """Predict CSAT from the ticket bucket's history and the draft reply's quality."""
        try:
            ensure_present(proposed_response, "proposed_response")
            analysis = _response_analysis(proposed_response)
            prediction = self.model_manager.predict(
                self.settings.predictor_model_id,
                {
                    "ticket": {
                        "department": ticket_data.get("department") or "general",
                        "category": ticket_data.get("category") or "general",
                    }
                },
            )
            base = float(prediction.output.get("csat", 3.5)) if not prediction.is_default else 3.5

            timeliness = 1.0
            age_hours = float(ticket_data.get("ticket_age_hours") or 0.0)
            if age_hours > 48:
                timeliness = 0.5
            elif age_hours > 24:
                timeliness = 0.75

            predicted = base + (analysis["quality"] - 0.5) - 0.6 * (1 - timeliness)
            tone = None
            if response_sentiment is not None:
                tone = response_sentiment.recommended_tone.value
                if response_sentiment.primary_emotion in NEGATIVE_EMOTIONS:
                    predicted -= 0.5

            return CsatPrediction(
                predicted_csat=round(clamp(predicted, 1.0, 5.0), 2),
                confidence=prediction.confidence,
                factors={
                    "response_quality": analysis["quality"],
                    "tone": tone or Tone.PROFESSIONAL.value,
                    "completeness": analysis["completeness"],
                    "timeliness": timeliness,
                },
                improvements=analysis["improvements"],
            )
        except Exception:
            logger.exception("CSAT prediction failed")
            return CsatPrediction()

    def suggest_knowledge_articles(self, ticket_content: str) -> List[Dict[str, Any]]:
        """Top matches from successful resolutions plus any knowledge-retrieval model."""
        try:
            tokens = set(tokenize(ticket_content or ""))
            if not tokens:
                return []
            with self._lock:
                strategies = [s for bucket in self.successful_strategies.values() for s in bucket]

            suggestions: List[Dict[str, Any]] = []
            for strategy in strategies:
                if not strategy["solution"]:
                    continue
                strategy_tokens = set(
                    tokenize(f"{strategy['ticket_text'] or ''} {strategy['solution']}")
                )
                overlap = len(tokens & strategy_tokens) / len(tokens) if strategy_tokens else 0.0
                if overlap > 0:
                    suggestions.append(
                        {
                            "title": strategy["solution"],
                            "source": "resolution_history",
                            "pattern": strategy["pattern"],
                            "score": round(overlap, 4),
                        }
                    )

            retrieval = self.model_manager.predict_via_capability(
                "knowledge_retrieval", {"content": ticket_content}
            )
            if not retrieval.is_default:
                for article in retrieval.output.get("articles") or []:
                    title = article.get("title") if isinstance(article, dict) else str(article)
                    score = article.get("score", retrieval.confidence) if isinstance(article, dict) else retrieval.confidence
                    if title:
                        suggestions.append(
                            {"title": title, "source": retrieval.model_id, "score": float(score)}
                        )

            ranked: Dict[str, Dict[str, Any]] = {}
            for suggestion in sorted(suggestions, key=lambda s: -s["score"]):
                ranked.setdefault(suggestion["title"], suggestion)
            return list(ranked.values())[:MAX_KNOWLEDGE_SUGGESTIONS]
        except Exception:
            logger.exception("Knowledge article suggestion failed")
            return []


def _rounded(value: Optional[float], digits: int = 2) -> Optional[float]:
    return round(value, digits) if value is not None else None


def _metrics(records: Sequence[TrainingRecord]) -> PerformanceMetrics:
    count = len(records)
    csats = [r.csat for r in records if r.csat is not None]
    return PerformanceMetrics(
        ticket_count=count,
        avg_resolution_time=round(mean(r.resolution_time_minutes for r in records), 2) if count else 0.0,
        avg_csat=_rounded(_mean_or_none(csats)),
        escalation_rate=round(sum(r.escalated for r in records) / count, 4) if count else 0.0,
        reopen_rate=round(sum(r.reopened for r in records) / count, 4) if count else 0.0,
    )


def _profile_value(profile: Any, field: str) -> Any:
    if profile is None:
        return None
    if isinstance(profile, Mapping):
        return profile.get(field)
    return getattr(profile, field, None)


def _classification_candidate(source: str, prediction: PredictionResult) -> Optional[Dict[str, Any]]:
    if prediction.is_default or not prediction.output.get("category"):
        return None
    return {
        "category": str(prediction.output["category"]),
        "priority": prediction.output.get("priority") or "medium",
        "confidence": prediction.confidence,
        "source": source,
    }


def _agent_reasoning(category: str, profile: AgentProfile, match_score: float) -> str:
    reasons = []
    if category in profile.specializations:
        reasons.append(f"specializes in {category}")
    if profile.avg_csat:
        reasons.append(f"average CSAT {profile.avg_csat:.1f}")
    if profile.tickets_handled:
        reasons.append(f"{profile.tickets_handled} tickets handled")
    summary = ", ".join(reasons) if reasons else "no recorded history"
    return f"Match {match_score:.2f}: {summary}"


def _response_analysis(response: str) -> Dict[str, Any]:
    lower = response.lower()
    words = len(response.split())
    checks = {
        "greeting": any(contains_phrase(lower, marker) for marker in GREETING_MARKERS),
        "empathy": any(contains_phrase(lower, marker) for marker in EMPATHY_MARKERS),
        "steps": any(marker in lower for marker in STEP_MARKERS),
        "closing": any(contains_phrase(lower, marker) for marker in CLOSING_MARKERS),
        "substance": words >= 20,
    }
    improvements = [
        RESPONSE_IMPROVEMENTS[name]
        for name, passed in checks.items()
        if not passed and name in RESPONSE_IMPROVEMENTS
    ]

    completeness = sum(checks[k] for k in ("steps", "closing", "substance")) / 3
    quality = sum(checks.values()) / len(checks)
    return {
        "quality": round(quality, 4),
        "completeness": round(completeness, 4),
        "improvements": improvements,
    }
