"""
Engine configuration settings.

Heuristic constants are plausibly tunable rather than load-bearing, so they
live here instead of being hard-coded in the analyzers.
"""

from dataclasses import dataclass
import os
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


@dataclass
class EngineSettings:
    """Tunable heuristics, model ids and dispatch limits."""

    # Customer profiling
    churn_base_risk: float = 0.3
    churn_two_negative_bonus: float = 0.3
    churn_one_negative_bonus: float = 0.15
    churn_executive_bonus: float = 0.2
    satisfaction_negative_cap: float = 0.4
    satisfaction_recency_floor: float = 0.5
    trend_threshold: float = 0.2
    executive_word_count: int = 50

    # Learning
    csat_success_threshold: float = 4.0
    resource_stress_threshold: float = 0.7
    agent_ticket_capacity: int = 8
    predictor_model_id: str = "ticket-predictor"
    classifier_model_id: str = "ticket-classifier"
    escalation_model_id: str = "escalation-predictor"

    # Model dispatch
    external_timeout_seconds: float = 10.0
    dispatch_workers: int = 8
    cache_max_size: Optional[int] = None
    bedrock_region: str = "eu-west-2"

    @classmethod
    def from_environment(cls) -> "EngineSettings":
        """Load settings from environment variables."""
        defaults = cls()
        region = (
            os.environ.get("BEDROCK_REGION")
            or os.environ.get("AWS_REGION")
            or defaults.bedrock_region
        )
        return cls(
            churn_base_risk=_env_float("SENTIMENT_CHURN_BASE_RISK", defaults.churn_base_risk),
            satisfaction_negative_cap=_env_float(
                "SENTIMENT_SATISFACTION_NEGATIVE_CAP", defaults.satisfaction_negative_cap
            ),
            trend_threshold=_env_float("SENTIMENT_TREND_THRESHOLD", defaults.trend_threshold),
            csat_success_threshold=_env_float(
                "SENTIMENT_CSAT_SUCCESS_THRESHOLD", defaults.csat_success_threshold
            ),
            external_timeout_seconds=_env_float(
                "SENTIMENT_EXTERNAL_TIMEOUT_SECONDS", defaults.external_timeout_seconds
            ),
            dispatch_workers=_env_int("SENTIMENT_DISPATCH_WORKERS", defaults.dispatch_workers),
            cache_max_size=_env_int("SENTIMENT_CACHE_MAX_SIZE", defaults.cache_max_size),
            bedrock_region=region,
        )
