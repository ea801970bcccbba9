"""Pydantic models for model registration, routing and training outcomes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BackendKind(str, Enum):
    IN_HOUSE = "in_house"
    EXTERNAL = "external"
    MCP = "mcp"


class ModelStatus(str, Enum):
    """Lifecycle: registered -> ready <-> training, or -> error."""

    REGISTERED = "registered"
    READY = "ready"
    TRAINING = "training"
    ERROR = "error"


class PredictionSource(str, Enum):
    IN_HOUSE = "in_house"
    EXTERNAL = "external"
    MCP = "mcp"
    CACHE = "cache"
    DEFAULT = "default"


class ThrottlePolicy(str, Enum):
    """What an external dispatch does when its rate limit is exhausted."""

    QUEUE = "queue"
    FAIL = "fail"


class RateLimits(BaseModel):
    requests_per_minute: Optional[int] = Field(default=None, gt=0)
    tokens_per_minute: Optional[int] = Field(default=None, gt=0)


class PerformanceBaseline(BaseModel):
    accuracy: float = Field(default=0.0, ge=0, le=1)
    f1: float = Field(default=0.0, ge=0, le=1)


class _CapabilityConfig(BaseModel):
    capabilities: List[str]
    baseline: PerformanceBaseline = Field(default_factory=PerformanceBaseline)

    @field_validator("capabilities")
    @classmethod
    def validate_capabilities(cls, value: List[str]) -> List[str]:
        """A model nobody can route to is a setup mistake."""
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("capabilities must list at least one capability")
        return cleaned


class InHouseModelConfig(_CapabilityConfig):
    """Config for a model whose artifact lives in this process."""

    type: str
    version: str
    backend: str = "outcome_statistics"
    options: Dict[str, Any] = Field(default_factory=dict)


class ExternalModelConfig(_CapabilityConfig):
    """Config for a third-party hosted model API."""

    provider: str
    model: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    region: Optional[str] = None
    rate_limits: RateLimits = Field(default_factory=RateLimits)
    on_throttle: ThrottlePolicy = ThrottlePolicy.FAIL
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_endpoint(self) -> "ExternalModelConfig":
        """Bedrock resolves its endpoint from the region; every other provider needs one."""
        if self.provider != "bedrock" and not self.endpoint:
            raise ValueError(f"endpoint is required for provider {self.provider}")
        return self


class McpServerConfig(_CapabilityConfig):
    """Config for a remote capability-routing RPC server."""

    endpoint: str
    authentication: str = "none"
    credential: Optional[str] = None
    version: str = "1.0.0"
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_auth(self) -> "McpServerConfig":
        if self.authentication not in ("none", "bearer", "api_key"):
            raise ValueError("authentication must be none, bearer or api_key")
        if self.authentication != "none" and not self.credential:
            raise ValueError(f"credential is required for {self.authentication} auth")
        return self


class ModelPerformance(BaseModel):
    accuracy: float = Field(default=0.0, ge=0, le=1)
    f1: float = Field(default=0.0, ge=0, le=1)
    latency_ms: float = 0.0
    error_rate: float = Field(default=0.0, ge=0, le=1)
    total_predictions: int = 0
    failed_predictions: int = 0


class ModelRegistration(BaseModel):
    """Point-in-time snapshot of one registry entry."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    backend_kind: BackendKind
    config: Dict[str, Any]
    status: ModelStatus
    status_reason: Optional[str] = None
    version: int = 0
    performance: ModelPerformance = Field(default_factory=ModelPerformance)
    usage_count: int = 0
    last_used: Optional[datetime] = None
    last_trained: Optional[datetime] = None
    in_flight: int = 0


class RegistrationResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    success: bool
    model_id: str
    status: Optional[ModelStatus] = None
    error: Optional[str] = None


class PredictOptions(BaseModel):
    bypass_cache: bool = False
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    capability: Optional[str] = None


class PredictionResult(BaseModel):
    """Model output labeled with the artifact version that produced it."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    output: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.5, ge=0, le=1)
    source: PredictionSource
    model_version: Optional[int] = None
    latency_ms: float = 0.0
    error: Optional[str] = None

    @property
    def is_default(self) -> bool:
        return self.source == PredictionSource.DEFAULT


class TrainingResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    success: bool
    model_id: str
    previous_accuracy: Optional[float] = None
    new_accuracy: Optional[float] = None
    improvement: Optional[float] = None
    version: Optional[int] = None
    samples: int = 0
    error: Optional[str] = None


class RefreshResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    status: ModelStatus
    error: Optional[str] = None
