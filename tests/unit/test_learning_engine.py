"""
Learning engine tests against a real model manager with the in-house backends.

Run with: pytest tests/unit/test_learning_engine.py -v
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

SRC_PATH = Path(__file__).parent.parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from config.settings import EngineSettings
from models.learning import (
    DEFAULT_SUGGESTED_ACTIONS,
    ClassificationPrediction,
    CsatPrediction,
    ProactiveSuggestions,
    ResolutionEstimate,
)
from models.registry import ModelStatus
from services.learning_engine import LearningEngine, agent_model_id
from services.sentiment_service import SentimentAnalysisEngine

GOOD_REPLY = (
    "Hi Sam, I'm sorry for the trouble. First, open Settings, then choose Billing and "
    "click Refund. Let me know if you have any questions and I'm happy to help further."
)


def _ticket(ticket_id="T-1", category="refund", content="Refund for my duplicate invoice", **extra):
    ticket = {
        "id": ticket_id,
        "department": "billing",
        "category": category,
        "priority": "high",
        "content": content,
    }
    ticket.update(extra)
    return ticket


def _outcome(csat=5, minutes=30, escalated=False, agent="a1", solution="Reissued the invoice"):
    return {
        "resolved_by": agent,
        "time_to_resolve": minutes,
        "csat": csat,
        "was_escalated": escalated,
        "was_reopened": False,
        "solution": solution,
    }


def _behavior(category="refund", csat=5, effectiveness=0.9):
    actions = [{"type": "apology", "effectiveness": effectiveness}]
    outcomes = {"category": category, "csat": csat, "resolution_time_minutes": 20}
    return actions, outcomes


@pytest.fixture
def engine():
    engine = LearningEngine()
    yield engine
    engine.model_manager.shutdown()


class TestRecording:
    """Outcome, behavior and escalation recording."""

    def test_default_models_registered(self, engine):
        """The predictor, classifier and escalation models start ready."""
        settings = engine.settings
        for model_id in (
            settings.predictor_model_id,
            settings.classifier_model_id,
            settings.escalation_model_id,
        ):
            assert engine.model_manager.get_model(model_id).status == ModelStatus.READY

    def test_ticket_resolution(self, engine):
        """A resolution is stored, marked successful and trains the predictor."""
        result = engine.process_ticket_resolution(_ticket(), _outcome())
        assert result.success is True
        assert result.model_updated is True
        assert result.insights["pattern_key"] == "billing_refund"
        assert result.insights["similar_cases"] == 1
        assert result.insights["successful_strategy"] is True
        assert result.insights["model_version"] == 1
        assert engine.model_manager.get_model(engine.settings.classifier_model_id).version == 1

    def test_success_threshold_is_strict(self, engine):
        """A CSAT equal to the threshold is not a success."""
        result = engine.process_ticket_resolution(_ticket(), _outcome(csat=4))
        assert result.insights["successful_strategy"] is False

    def test_escalated_is_never_successful(self, engine):
        """Escalated tickets are excluded from successful strategies."""
        result = engine.process_ticket_resolution(_ticket(), _outcome(escalated=True))
        assert result.insights["successful_strategy"] is False

    @pytest.mark.parametrize(
        "ticket,outcome",
        [
            ({"category": "refund"}, {}),
            ({"department": "billing", "category": "refund"}, {"csat": 9}),
            ("not a ticket", {}),
        ],
    )
    def test_invalid_resolution(self, engine, ticket, outcome):
        """Bad input is a failed result, never an exception."""
        result = engine.process_ticket_resolution(ticket, outcome)
        assert result.success is False
        assert result.error

    def test_agent_behavior_builds_profile(self, engine):
        """Repeated successes become a specialization and strengths."""
        for ticket_id in ("T-1", "T-2"):
            actions, outcomes = _behavior()
            result = engine.process_agent_behavior("a1", "billing", ticket_id, actions, outcomes)

        assert result.success is True
        assert result.model_updated is True
        assert result.insights["tickets_handled"] == 2
        assert result.insights["specializations"] == ["refund"]
        assert "Effective apology" in result.insights["strengths"]
        assert "High customer satisfaction" in result.insights["strengths"]

        agent_model = engine.model_manager.get_model(agent_model_id("a1"))
        assert agent_model.status == ModelStatus.READY
        assert agent_model.version == 2

    def test_agent_behavior_improvement_areas(self, engine):
        """Ineffective actions and frequent escalations are flagged."""
        actions = [{"type": "canned reply", "effectiveness": 0.2}]
        result = engine.process_agent_behavior(
            "a2", "billing", 7, actions, {"category": "refund", "escalated": True}
        )
        assert "Improve canned reply" in result.insights["improvement_areas"]
        assert "Escalation avoidance" in result.insights["improvement_areas"]

    def test_agent_behavior_requires_agent(self, engine):
        """A missing agent id is rejected."""
        result = engine.process_agent_behavior("", "billing", None, [], {})
        assert result.success is False

    def test_escalation_pattern(self, engine):
        """Escalations produce prevention strategies and train the escalation model."""
        data = {
            "ticket_id": "T-9",
            "original_agent": "a1",
            "reason": "billing dispute",
            "trigger_events": ["refund denied"],
            "time_to_escalation_minutes": 10,
            "department": "billing",
            "customer_profile": {"tier": "enterprise"},
        }
        first = engine.process_escalation_pattern(data)
        assert first.success is True
        assert first.model_updated is True
        assert "Review the 'billing dispute' escalation with a1" in first.prevention_strategies
        assert "Route similar tickets to senior agents at intake" in first.prevention_strategies
        assert "Watch for early signal: refund denied" in first.prevention_strategies
        assert "Assign enterprise accounts a named escalation contact" in first.prevention_strategies

        engine.process_escalation_pattern(data)
        third = engine.process_escalation_pattern(data)
        assert "Create a runbook for recurring escalations: billing dispute" in third.prevention_strategies
        assert third.insights["total_escalations"] == 3
        assert third.insights["top_reasons"] == ["billing dispute"]

    def test_invalid_escalation_pattern(self, engine):
        """Out-of-range values are rejected."""
        result = engine.process_escalation_pattern({"time_to_escalation_minutes": -5})
        assert result.success is False


class TestRecommendations:
    """Recommendation bundles and analytics."""

    def test_agent_recommendations_without_history(self, engine):
        """No history yields the default actions and prior estimates."""
        bundle = engine.get_agent_recommendations("a1", "billing", {"category": "refund"})
        assert bundle.suggested_actions == DEFAULT_SUGGESTED_ACTIONS
        assert bundle.estimated_resolution_time == 120.0
        assert bundle.similar_cases == 0
        assert bundle.confidence_level == pytest.approx(0.3)

    def test_agent_recommendations_with_history(self, engine):
        """Successful similar cases become suggested actions."""
        engine.process_ticket_resolution(_ticket(), _outcome(minutes=30))
        bundle = engine.get_agent_recommendations(
            "a1", "billing", {"category": "refund", "content": "duplicate invoice refund"}
        )
        assert bundle.suggested_actions == ["Apply proven fix: Reissued the invoice"]
        assert bundle.similar_cases == 1
        assert bundle.estimated_resolution_time == 30.0
        assert bundle.knowledge_base_suggestions == ["Reissued the invoice"]

    def test_recommendations_degrade_on_failure(self):
        """A failing model manager yields the default bundle."""
        manager = MagicMock()
        manager.predict.side_effect = RuntimeError("boom")
        engine = LearningEngine(model_manager=manager, settings=EngineSettings())

        bundle = engine.get_agent_recommendations("a1", "billing", {})
        assert bundle.suggested_actions == DEFAULT_SUGGESTED_ACTIONS
        assert engine.recommend_best_agent({"category": "refund"}, [{"id": "a1"}]) == []
        assert engine.estimate_resolution_time({"category": "refund"}) == ResolutionEstimate()

    def test_department_analytics_empty(self, engine):
        """No data in the window gives the default shape."""
        analytics = engine.get_department_analytics("billing", "7d")
        assert analytics.department == "billing"
        assert analytics.performance_metrics.ticket_count == 0
        assert analytics.common_issues == []
        assert analytics.trend_analysis == {}

    def test_department_analytics_bad_range(self, engine):
        """An unparseable range falls back to the last 30 days."""
        analytics = engine.get_department_analytics("billing", "forever")
        span = analytics.time_range.end - analytics.time_range.start
        assert span.days == 30

    def test_department_analytics_with_data(self, engine):
        """Stored records aggregate into metrics, issues and opportunities."""
        engine.process_ticket_resolution(_ticket("T-1"), _outcome(minutes=30))
        engine.process_ticket_resolution(_ticket("T-2"), _outcome(minutes=90, escalated=True, agent="a2"))
        engine.process_ticket_resolution(
            {"id": "T-3", "department": "sales", "category": "demo"}, _outcome()
        )

        analytics = engine.get_department_analytics("billing", "30d")
        metrics = analytics.performance_metrics
        assert metrics.ticket_count == 2
        assert metrics.avg_resolution_time == 60.0
        assert metrics.escalation_rate == 0.5
        assert analytics.common_issues == [{"category": "refund", "count": 2, "share": 1.0}]
        assert set(analytics.agent_performance) == {"a1", "a2"}
        assert analytics.resolution_patterns["refund"]["count"] == 2
        assert "Reduce escalations: 50% of tickets escalated" in analytics.improvement_opportunities
        assert analytics.trend_analysis["csat"] == "insufficient_data"

    def test_department_analytics_explicit_naive_window(self, engine):
        """Naive window bounds and resolution times are read as UTC."""
        engine.process_ticket_resolution(
            {"id": "V-1", "department": "it", "category": "vpn"},
            {"time_to_resolve": 45, "resolved_at": datetime(2026, 3, 1, 12)},
        )

        analytics = engine.get_department_analytics(
            "it", {"start": datetime(2026, 1, 1), "end": datetime(2026, 12, 31)}
        )
        assert analytics.performance_metrics.ticket_count == 1
        assert analytics.time_range.start.tzinfo == timezone.utc

        record = engine.training_records["it_vpn"][0]
        assert record.timestamp == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)

    def test_proactive_suggestions_empty(self, engine):
        """Without data every list is empty but the shape is fixed."""
        assert engine.generate_proactive_suggestions({}) == ProactiveSuggestions()

    def test_proactive_resource_stress(self, engine):
        """Open tickets beyond agent capacity trigger resource hints."""
        suggestions = engine.generate_proactive_suggestions(
            {"open_tickets": 100, "available_agents": 2}
        )
        assert suggestions.resource_optimization[0].startswith("Rebalance queues")
        assert "Bring in overflow staff or defer low-priority work" in suggestions.resource_optimization

    def test_proactive_rising_issue(self, engine):
        """A burst of one category this week is flagged."""
        for index in range(3):
            engine.process_ticket_resolution(
                {"id": f"L-{index}", "department": "it", "category": "login"}, _outcome()
            )
        suggestions = engine.generate_proactive_suggestions({"department": "it"})
        assert "Prepare for rising 'login' volume (3 tickets in the last 7 days)" in suggestions.preventive_actions

    def test_proactive_process_improvements(self, engine):
        """Categories that reopen or escalate often get process fixes."""
        for index in range(2):
            engine.process_ticket_resolution(
                {"id": f"V-{index}", "department": "it", "category": "vpn"},
                {"time_to_resolve": 20, "was_reopened": True, "was_escalated": True},
            )
        suggestions = engine.generate_proactive_suggestions({"department": "it"})
        assert suggestions.process_improvements == [
            "Add a verification step before closing 'vpn' tickets",
            "Clarify the 'vpn' escalation path and first-line runbook",
        ]

    def test_proactive_flags_broken_models(self, engine):
        """Models in error show up as system optimizations."""
        engine.model_manager.register_in_house(
            "broken", {"type": "x", "version": "1", "backend": "outcome_statistics", "capabilities": ["a"]}
        )
        engine.model_manager._entries["broken"].status = ModelStatus.ERROR
        engine.model_manager._entries["broken"].status_reason = "disk full"
        suggestions = engine.generate_proactive_suggestions()
        assert suggestions.system_optimizations == ["Restore model 'broken': disk full"]


class TestRetrainAndPredictions:
    """Full retraining and the prediction helpers."""

    def test_retrain_models(self, engine):
        """Models with data retrain; empty datasets are reported as errors."""
        engine.process_ticket_resolution(_ticket(), _outcome())
        results = engine.retrain_models()

        settings = engine.settings
        assert results["models_retrained"] == [settings.predictor_model_id, settings.classifier_model_id]
        assert [error["model"] for error in results["errors"]] == [settings.escalation_model_id]
        assert results["refreshed"] == []
        assert engine.model_manager.get_model(settings.predictor_model_id).version == 2

    def test_classification_prefers_confident_model(self, engine):
        """The trained classifier wins over weaker historical matches."""
        engine.process_ticket_resolution(_ticket(content="refund my invoice charge"), _outcome())
        engine.process_ticket_resolution(
            _ticket("T-2", category="account", content="password login reset", priority="low"),
            _outcome(),
        )

        prediction = engine.predict_optimal_classification("My invoice charge is wrong")
        assert prediction.category == "refund"
        assert prediction.priority == "high"
        assert prediction.urgency == "high"
        assert prediction.confidence == pytest.approx(1.0)
        assert prediction.reasoning.startswith("in_house")
        assert prediction.alternative_classifications[0]["source"] == "historical"

    def test_classification_uses_supplied_history(self, engine):
        """Caller-supplied examples are matched when no model knows the text."""
        prediction = engine.predict_optimal_classification(
            "parcel delivery delayed",
            [{"content": "parcel delivery late", "category": "shipping", "priority": "low"}],
        )
        assert prediction.category == "shipping"
        assert prediction.priority == "low"
        assert prediction.confidence == pytest.approx(0.5)

    def test_classification_empty_content(self, engine):
        """Blank content returns the default classification."""
        assert engine.predict_optimal_classification("") == ClassificationPrediction()

    def test_recommend_best_agent(self, engine):
        """Specialists with spare capacity rank first; unknown agents are skipped."""
        for _ in range(2):
            actions, outcomes = _behavior(category="refund", csat=5)
            engine.process_agent_behavior("a1", "billing", None, actions, outcomes)
        actions, outcomes = _behavior(category="general", csat=3, effectiveness=0.5)
        engine.process_agent_behavior("a2", "billing", None, actions, outcomes)

        matches = engine.recommend_best_agent(
            {"department": "billing", "category": "refund"},
            [
                {"id": "a2", "current_workload": 0.2},
                {"id": "a1", "current_workload": 0.5},
                {"id": "ghost"},
            ],
        )
        assert [match.agent_id for match in matches] == ["a1", "a2"]
        assert matches[0].match_score == pytest.approx(1.0)
        assert matches[0].specializations == ["refund"]
        assert matches[0].estimated_csat == 5.0

    def test_estimate_resolution_time(self, engine):
        """0.5 model + 0.3 history + 0.2 complexity, with priors when empty."""
        ticket = {"department": "billing", "category": "refund", "description": "Short text"}
        estimate = engine.estimate_resolution_time(ticket)
        assert estimate.estimated_time == 108
        assert estimate.factors["ticket_complexity"] == "low"

        with_agent = engine.estimate_resolution_time(ticket, {"avg_resolution_time": 60})
        assert with_agent.estimated_time == 90

    def test_predict_csat(self, engine):
        """Complete, empathetic replies score higher than curt ones."""
        ticket = {"department": "billing", "category": "refund"}
        good = engine.predict_csat(ticket, GOOD_REPLY)
        poor = engine.predict_csat(ticket, "No.")

        assert good.predicted_csat == pytest.approx(4.5)
        assert good.improvements == []
        assert poor.predicted_csat == pytest.approx(3.5)
        assert len(poor.improvements) == 4
        assert good.predicted_csat > poor.predicted_csat

    def test_predict_csat_penalizes_negative_reply(self, engine):
        """A reply that itself reads as angry loses half a point."""
        reply_sentiment = SentimentAnalysisEngine().analyze_sentiment("This is unacceptable and terrible")
        ticket = {"department": "billing", "category": "refund"}
        result = engine.predict_csat(ticket, GOOD_REPLY, reply_sentiment)
        assert result.predicted_csat == pytest.approx(4.0)
        assert result.factors["tone"] == "empathetic"

    def test_predict_csat_empty_reply(self, engine):
        """An empty reply yields the default prediction."""
        assert engine.predict_csat({}, "") == CsatPrediction()

    def test_knowledge_articles(self, engine):
        """Successful solutions are suggested by token overlap."""
        engine.process_ticket_resolution(
            _ticket(content="Refund for my duplicate invoice"),
            _outcome(solution="Reissued the invoice and refunded the duplicate charge"),
        )
        articles = engine.suggest_knowledge_articles("refund duplicate invoice please")
        assert articles[0]["title"] == "Reissued the invoice and refunded the duplicate charge"
        assert articles[0]["source"] == "resolution_history"
        assert articles[0]["score"] == pytest.approx(0.75)
        assert engine.suggest_knowledge_articles("") == []
