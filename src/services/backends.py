"""
Pluggable model backends.

Every registered model is bound to one backend implementing load, predict,
test_connection and train. The model manager owns routing, caching, rate
limiting and lifecycle; backends only know how to talk to their model.

In-house artifacts are plain dicts so the manager can snapshot them with
``copy.deepcopy`` and train the copy while the original keeps serving.
"""

from __future__ import annotations

import itertools
import json
import re
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from models.registry import (
    BackendKind,
    ExternalModelConfig,
    InHouseModelConfig,
    McpServerConfig,
)
from utils.error_handling import BackendError, ConfigurationError
from utils.logging_config import get_logger
from utils.validators import clamp

logger = get_logger(__name__)

DEFAULT_EXTERNAL_CONFIDENCE = 0.7
DEFAULT_RESOLUTION_MINUTES = 120.0
DEFAULT_CSAT = 4.0
DEFAULT_ESCALATION_RISK = 0.3
FULL_CONFIDENCE_SAMPLES = 20
MIN_CONFIDENCE = 0.3

_TOKEN_PATTERN = re.compile(r"[a-z0-9']+")
_STOPWORDS = frozenset(
    "the and for with that this have from your you are was not but can our has its".split()
)

Prediction = Tuple[Dict[str, Any], float]


@dataclass
class TrainingOutcome:
    """A freshly trained artifact plus its evaluation."""

    artifact: Any
    accuracy: float
    f1: float
    samples: int


def as_mapping(record: Any) -> Dict[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump()
    if isinstance(record, Mapping):
        return dict(record)
    raise BackendError(f"Unsupported training record type: {type(record).__name__}")


def tokenize(text: str) -> List[str]:
    return [
        token
        for token in _TOKEN_PATTERN.findall((text or "").lower())
        if len(token) > 2 and token not in _STOPWORDS
    ]


class ModelBackend(ABC):
    """Capability seam between the router and a concrete model."""

    kind: BackendKind

    def load(self, model_id: str, config: BaseModel) -> Any:
        """Return the artifact (in-house) or client handle (remote) for this model."""
        return None

    def test_connection(self, artifact: Any, config: BaseModel) -> Dict[str, Any]:
        """Raise BackendError when the model cannot serve; return handshake details otherwise."""
        return {"connected": True}

    def preprocess(self, payload: Dict[str, Any], config: BaseModel) -> Dict[str, Any]:
        return payload

    @abstractmethod
    def predict(
        self,
        artifact: Any,
        payload: Dict[str, Any],
        config: BaseModel,
        timeout: Optional[float] = None,
    ) -> Prediction:
        """Return ``(output, confidence)``."""

    def postprocess(self, output: Dict[str, Any], config: BaseModel) -> Dict[str, Any]:
        return output

    def train(self, artifact: Any, batch: Iterable[Any], incremental: bool = True) -> TrainingOutcome:
        raise BackendError(f"{type(self).__name__} does not support training")

    def close(self, artifact: Any) -> None:
        """Release network resources held by the artifact."""


# ----------------------------------------------------------------------
# In-house backends
# ----------------------------------------------------------------------


def _empty_bucket() -> Dict[str, float]:
    return {
        "count": 0,
        "resolution_total": 0.0,
        "csat_total": 0.0,
        "csat_count": 0,
        "escalations": 0,
        "reopens": 0,
    }


class OutcomeStatisticsBackend(ModelBackend):
    """
    Running outcome aggregates per department + category.

    Predicts resolution time, CSAT and escalation likelihood for a ticket from
    the outcomes of past tickets in the same bucket, falling back to global
    aggregates. Accuracy is prequential: each record is scored on escalation
    before it is folded into the aggregates.
    """

    kind = BackendKind.IN_HOUSE

    def load(self, model_id: str, config: BaseModel) -> Dict[str, Any]:
        return self._empty_artifact()

    def test_connection(self, artifact: Any, config: BaseModel) -> Dict[str, Any]:
        if not isinstance(artifact, dict) or "buckets" not in artifact:
            raise BackendError("Outcome statistics artifact is malformed")
        return {"connected": True, "buckets": len(artifact["buckets"])}

    def preprocess(self, payload: Dict[str, Any], config: BaseModel) -> Dict[str, Any]:
        ticket = payload
        for nested in ("ticket", "ticket_data", "ticket_context"):
            if isinstance(payload.get(nested), Mapping):
                ticket = payload[nested]
                break
        department = ticket.get("department") or payload.get("department") or "general"
        category = ticket.get("category") or payload.get("category") or "general"
        return {"key": f"{department}_{category}"}

    def predict(
        self,
        artifact: Dict[str, Any],
        payload: Dict[str, Any],
        config: BaseModel,
        timeout: Optional[float] = None,
    ) -> Prediction:
        bucket = artifact["buckets"].get(payload["key"])
        scope = "bucket"
        if not bucket or not bucket["count"]:
            bucket, scope = artifact["global"], "global"

        count = bucket["count"]
        if not count:
            output = {
                "resolution_time_minutes": DEFAULT_RESOLUTION_MINUTES,
                "csat": DEFAULT_CSAT,
                "escalation_risk": DEFAULT_ESCALATION_RISK,
                "sample_size": 0,
                "scope": "prior",
            }
            return output, MIN_CONFIDENCE

        csat = bucket["csat_total"] / bucket["csat_count"] if bucket["csat_count"] else DEFAULT_CSAT
        output = {
            "resolution_time_minutes": round(bucket["resolution_total"] / count, 2),
            "csat": round(csat, 2),
            "escalation_risk": round(bucket["escalations"] / count, 4),
            "reopen_rate": round(bucket["reopens"] / count, 4),
            "sample_size": count,
            "scope": scope,
        }
        return output, max(MIN_CONFIDENCE, min(1.0, count / FULL_CONFIDENCE_SAMPLES))

    def train(self, artifact: Any, batch: Iterable[Any], incremental: bool = True) -> TrainingOutcome:
        model = artifact if incremental and artifact else self._empty_artifact()
        records = [as_mapping(record) for record in batch]

        for record in records:
            key = f"{record.get('department') or 'general'}_{record.get('category') or 'general'}"
            bucket = model["buckets"].setdefault(key, _empty_bucket())
            escalated = bool(record.get("escalated"))
            self._score(model, bucket, escalated)
            for target in (bucket, model["global"]):
                target["count"] += 1
                target["resolution_total"] += float(record.get("resolution_time_minutes") or 0.0)
                if record.get("csat") is not None:
                    target["csat_total"] += float(record["csat"])
                    target["csat_count"] += 1
                target["escalations"] += int(escalated)
                target["reopens"] += int(bool(record.get("reopened")))

        return TrainingOutcome(
            artifact=model,
            accuracy=self._accuracy(model),
            f1=self._f1(model),
            samples=len(records),
        )

    @staticmethod
    def _score(model: Dict[str, Any], bucket: Dict[str, float], escalated: bool) -> None:
        reference = bucket if bucket["count"] else model["global"]
        if not reference["count"]:
            return
        predicted = reference["escalations"] / reference["count"] > 0.5
        evaluation = model["evaluation"]
        if predicted and escalated:
            evaluation["tp"] += 1
        elif predicted:
            evaluation["fp"] += 1
        elif escalated:
            evaluation["fn"] += 1
        else:
            evaluation["tn"] += 1

    @staticmethod
    def _accuracy(model: Dict[str, Any]) -> float:
        evaluation = model["evaluation"]
        total = sum(evaluation.values())
        return (evaluation["tp"] + evaluation["tn"]) / total if total else 0.0

    @staticmethod
    def _f1(model: Dict[str, Any]) -> float:
        evaluation = model["evaluation"]
        denominator = 2 * evaluation["tp"] + evaluation["fp"] + evaluation["fn"]
        return 2 * evaluation["tp"] / denominator if denominator else 0.0

    @staticmethod
    def _empty_artifact() -> Dict[str, Any]:
        return {
            "buckets": {},
            "global": _empty_bucket(),
            "evaluation": {"tp": 0, "fp": 0, "fn": 0, "tn": 0},
        }


class KeywordClassifierBackend(ModelBackend):
    """Token-frequency category and priority classifier trained on ticket text."""

    kind = BackendKind.IN_HOUSE

    def load(self, model_id: str, config: BaseModel) -> Dict[str, Any]:
        return self._empty_artifact()

    def test_connection(self, artifact: Any, config: BaseModel) -> Dict[str, Any]:
        if not isinstance(artifact, dict) or "categories" not in artifact:
            raise BackendError("Keyword classifier artifact is malformed")
        return {"connected": True, "categories": len(artifact["categories"])}

    def preprocess(self, payload: Dict[str, Any], config: BaseModel) -> Dict[str, Any]:
        text = payload.get("content") or payload.get("ticket_text") or ""
        return {"tokens": tokenize(str(text))}

    def predict(
        self,
        artifact: Dict[str, Any],
        payload: Dict[str, Any],
        config: BaseModel,
        timeout: Optional[float] = None,
    ) -> Prediction:
        tokens = payload["tokens"]
        category, category_confidence, ranked = self._best(artifact["categories"], tokens)
        priority, _, _ = self._best(artifact["priorities"], tokens)
        if category is None:
            return {"category": "general", "priority": "medium", "alternatives": []}, MIN_CONFIDENCE

        output = {
            "category": category,
            "priority": priority or "medium",
            "alternatives": [{"category": name, "score": round(score, 4)} for name, score in ranked[1:4]],
        }
        return output, clamp(category_confidence)

    def train(self, artifact: Any, batch: Iterable[Any], incremental: bool = True) -> TrainingOutcome:
        model = artifact if incremental and artifact else self._empty_artifact()
        records = [as_mapping(record) for record in batch]

        for record in records:
            tokens = tokenize(str(record.get("ticket_text") or record.get("content") or ""))
            category = record.get("category")
            if not tokens or not category:
                continue
            predicted, _, _ = self._best(model["categories"], tokens)
            if predicted is not None:
                model["evaluated"] += 1
                model["correct"] += int(predicted == category)
            model["categories"].setdefault(category, Counter()).update(tokens)
            if record.get("priority"):
                model["priorities"].setdefault(record["priority"], Counter()).update(tokens)

        accuracy = model["correct"] / model["evaluated"] if model["evaluated"] else 0.0
        # Single-label micro-F1 equals accuracy.
        return TrainingOutcome(artifact=model, accuracy=accuracy, f1=accuracy, samples=len(records))

    @staticmethod
    def _best(
        table: Dict[str, Counter], tokens: List[str]
    ) -> Tuple[Optional[str], float, List[Tuple[str, float]]]:
        scores: Dict[str, float] = {}
        for label, counts in table.items():
            total = sum(counts.values())
            if total:
                score = sum(counts[token] for token in tokens) / total
                if score > 0:
                    scores[label] = score
        if not scores:
            return None, 0.0, []
        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return ranked[0][0], ranked[0][1] / sum(scores.values()), ranked

    @staticmethod
    def _empty_artifact() -> Dict[str, Any]:
        return {"categories": {}, "priorities": {}, "correct": 0, "evaluated": 0}


IN_HOUSE_BACKENDS: Dict[str, Type[ModelBackend]] = {
    "outcome_statistics": OutcomeStatisticsBackend,
    "keyword_classifier": KeywordClassifierBackend,
}


def in_house_backend_for(config: InHouseModelConfig) -> ModelBackend:
    backend_cls = IN_HOUSE_BACKENDS.get(config.backend)
    if backend_cls is None:
        raise ConfigurationError(f"Unknown in-house backend: {config.backend}")
    return backend_cls()


# ----------------------------------------------------------------------
# External API backends
# ----------------------------------------------------------------------


def _output_from_text(text: str) -> Dict[str, Any]:
    """Models are prompted for JSON; anything else is passed through verbatim."""
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"prediction": text}
    return parsed if isinstance(parsed, dict) else {"prediction": parsed}


def _confidence_from(output: Dict[str, Any]) -> float:
    try:
        return clamp(float(output.get("confidence", DEFAULT_EXTERNAL_CONFIDENCE)))
    except (TypeError, ValueError):
        return DEFAULT_EXTERNAL_CONFIDENCE


class BedrockBackend(ModelBackend):
    """Amazon Bedrock foundation model via ``bedrock-runtime`` ``invoke_model``."""

    kind = BackendKind.EXTERNAL

    def __init__(self, default_region: str = "eu-west-2", default_timeout: float = 10.0):
        self.default_region = default_region
        self.default_timeout = default_timeout

    def load(self, model_id: str, config: ExternalModelConfig) -> Dict[str, Any]:
        region = config.region or self.default_region
        timeout = config.timeout_seconds or self.default_timeout
        # Retries belong to the caller; the SDK must not retry behind our timeout.
        client_config = Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        return {
            "runtime": boto3.client("bedrock-runtime", region_name=region, config=client_config),
            "control": boto3.client("bedrock", region_name=region, config=client_config),
        }

    def test_connection(self, artifact: Dict[str, Any], config: ExternalModelConfig) -> Dict[str, Any]:
        try:
            response = artifact["control"].get_foundation_model(modelIdentifier=config.model)
        except (BotoCoreError, ClientError) as exc:
            raise BackendError(f"Bedrock model {config.model} unreachable: {exc}") from exc
        details = response.get("modelDetails", {})
        return {"connected": True, "model_arn": details.get("modelArn")}

    def preprocess(self, payload: Dict[str, Any], config: ExternalModelConfig) -> Dict[str, Any]:
        prompt = payload.get("prompt") or payload.get("content")
        if not prompt:
            prompt = json.dumps(payload, sort_keys=True, default=str)
        return {
            "messages": [{"role": "user", "content": [{"type": "text", "text": str(prompt)}]}],
            "max_tokens": int(payload.get("max_tokens", 300)),
            "temperature": 0.2,
        }

    def predict(
        self,
        artifact: Dict[str, Any],
        payload: Dict[str, Any],
        config: ExternalModelConfig,
        timeout: Optional[float] = None,
    ) -> Prediction:
        try:
            response = artifact["runtime"].invoke_model(
                modelId=config.model,
                contentType="application/json",
                accept="application/json",
                body=json.dumps(payload),
            )
            body = json.loads(response["body"].read())
        except (BotoCoreError, ClientError, ValueError) as exc:
            raise BackendError(f"Bedrock invocation failed: {exc}") from exc

        output = _output_from_text(self._text_from(body))
        return output, _confidence_from(output)

    @staticmethod
    def _text_from(body: Dict[str, Any]) -> str:
        """Anthropic models return ``content``; Nova models nest it under ``output``."""
        content = body.get("content") or body.get("output", {}).get("message", {}).get("content")
        if not content:
            content = body.get("output", {}).get("content") or []
        texts = [block.get("text", "") for block in content if isinstance(block, dict)]
        if not texts:
            raise BackendError("Bedrock response carried no text content")
        return "".join(texts)


class HttpApiBackend(ModelBackend):
    """Generic JSON-over-HTTP model API (OpenAI-style gateways, inference endpoints)."""

    kind = BackendKind.EXTERNAL

    def __init__(self, default_timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.default_timeout = default_timeout
        self.transport = transport

    def load(self, model_id: str, config: ExternalModelConfig) -> httpx.Client:
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return httpx.Client(
            headers=headers,
            timeout=config.timeout_seconds or self.default_timeout,
            transport=self.transport,
        )

    def test_connection(self, artifact: httpx.Client, config: ExternalModelConfig) -> Dict[str, Any]:
        """Any answer short of a server error or auth rejection counts as reachable."""
        try:
            response = artifact.get(config.endpoint)
        except httpx.HTTPError as exc:
            raise BackendError(f"Endpoint {config.endpoint} unreachable: {exc}") from exc
        if response.status_code in (401, 403):
            raise BackendError(f"Endpoint {config.endpoint} rejected credentials")
        if response.status_code >= 500:
            raise BackendError(f"Endpoint {config.endpoint} returned {response.status_code}")
        return {"connected": True, "status_code": response.status_code}

    def preprocess(self, payload: Dict[str, Any], config: ExternalModelConfig) -> Dict[str, Any]:
        return {"model": config.model, "input": payload}

    def predict(
        self,
        artifact: httpx.Client,
        payload: Dict[str, Any],
        config: ExternalModelConfig,
        timeout: Optional[float] = None,
    ) -> Prediction:
        try:
            response = artifact.post(
                config.endpoint,
                json=payload,
                timeout=timeout or config.timeout_seconds or self.default_timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise BackendError(f"{config.provider} call failed: {exc}") from exc

        if not isinstance(body, dict):
            body = {"prediction": body}
        output = body.get("output") or body.get("data") or body
        if not isinstance(output, dict):
            output = {"prediction": output}
        return output, _confidence_from(body if "confidence" in body else output)

    def close(self, artifact: Any) -> None:
        if isinstance(artifact, httpx.Client):
            artifact.close()


def external_backend_for(config: ExternalModelConfig, region: str, timeout: float) -> ModelBackend:
    if config.provider == "bedrock":
        return BedrockBackend(default_region=region, default_timeout=timeout)
    return HttpApiBackend(default_timeout=timeout)


# ----------------------------------------------------------------------
# Remote protocol (MCP) backend
# ----------------------------------------------------------------------


class McpBackend(ModelBackend):
    """
    JSON-RPC 2.0 over HTTP capability server.

    Methods: ``initialize`` (handshake returning advertised capabilities),
    ``ping`` (liveness) and ``predict`` with params
    ``{"model_id", "capability", "input", "options"}``.
    """

    kind = BackendKind.MCP

    def __init__(self, default_timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.default_timeout = default_timeout
        self.transport = transport
        self._ids = itertools.count(1)

    def load(self, model_id: str, config: McpServerConfig) -> httpx.Client:
        headers = {"Content-Type": "application/json"}
        if config.authentication == "bearer":
            headers["Authorization"] = f"Bearer {config.credential}"
        elif config.authentication == "api_key":
            headers["X-API-Key"] = str(config.credential)
        return httpx.Client(
            headers=headers,
            timeout=config.timeout_seconds or self.default_timeout,
            transport=self.transport,
        )

    def test_connection(self, artifact: httpx.Client, config: McpServerConfig) -> Dict[str, Any]:
        handshake = self.call(
            artifact, config, "initialize", {"client_version": config.version}
        )
        self.call(artifact, config, "ping", {})
        advertised = handshake.get("capabilities") if isinstance(handshake, dict) else None
        return {
            "connected": True,
            "capabilities": list(advertised or config.capabilities),
            "server_version": (handshake or {}).get("version"),
        }

    def predict(
        self,
        artifact: httpx.Client,
        payload: Dict[str, Any],
        config: McpServerConfig,
        timeout: Optional[float] = None,
    ) -> Prediction:
        result = self.call(artifact, config, "predict", payload, timeout=timeout)
        output = result if isinstance(result, dict) else {"prediction": result}
        return output, _confidence_from(output)

    def call(
        self,
        client: httpx.Client,
        config: McpServerConfig,
        method: str,
        params: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        envelope = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = client.post(
                config.endpoint,
                json=envelope,
                timeout=timeout or config.timeout_seconds or self.default_timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise BackendError(f"MCP {method} to {config.endpoint} failed: {exc}") from exc

        if not isinstance(body, dict):
            raise BackendError(f"MCP {method} returned a non-object response")
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise BackendError(f"MCP {method} error: {message}")
        return body.get("result")

    def close(self, artifact: Any) -> None:
        if isinstance(artifact, httpx.Client):
            artifact.close()
