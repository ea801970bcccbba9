"""
Model registry and prediction router.

Each registered model is bound to a backend (in-house, external API or remote
capability server) and carries its own lock, limiter and performance
counters. There is no global lock across models: the registry map has a short
membership lock and every other mutation is serialized per model.

Retraining is zero-downtime. A training run snapshots the artifact, trains the
copy outside the model lock, then swaps it in and bumps the version under the
lock. Predictions issued meanwhile are served by the previous artifact and
labeled with its version.
"""

from __future__ import annotations

import copy
import hashlib
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as DispatchTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from config.settings import EngineSettings
from models.registry import (
    BackendKind,
    ExternalModelConfig,
    InHouseModelConfig,
    McpServerConfig,
    ModelPerformance,
    ModelRegistration,
    ModelStatus,
    PredictionResult,
    PredictionSource,
    PredictOptions,
    RefreshResult,
    RegistrationResult,
    ThrottlePolicy,
    TrainingResult,
)
from services.backends import (
    McpBackend,
    ModelBackend,
    external_backend_for,
    in_house_backend_for,
)
from utils.cache_service import LRUCache
from utils.error_handling import (
    BackendError,
    EngineError,
    ModelNotFoundError,
    ModelStateError,
)
from utils.logging_config import get_logger
from utils.rate_limiter import SlidingWindowRateLimiter
from utils.validators import ensure_present

logger = get_logger(__name__)

DEFAULT_MCP_CAPABILITY = "custom_models"
SERVING_STATES = (ModelStatus.READY, ModelStatus.TRAINING)
SECRET_FIELDS = {"api_key", "credential"}

ConfigInput = Union[BaseModel, Mapping[str, Any]]
OptionsInput = Union[PredictOptions, Mapping[str, Any], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def input_hash(payload: Any) -> str:
    """Deterministic digest of a prediction input."""
    content = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.md5(content.encode()).hexdigest()


def estimate_tokens(payload: Any) -> int:
    return len(json.dumps(payload, default=str)) // 4


@dataclass
class _ModelEntry:
    model_id: str
    kind: BackendKind
    config: BaseModel
    backend: ModelBackend
    capabilities: List[str]
    artifact: Any = None
    version: int = 0
    status: ModelStatus = ModelStatus.REGISTERED
    status_reason: Optional[str] = None
    limiter: Optional[SlidingWindowRateLimiter] = None
    accuracy: float = 0.0
    f1: float = 0.0
    latency_ms: float = 0.0
    total_predictions: int = 0
    failed_predictions: int = 0
    usage_count: int = 0
    last_used: Optional[datetime] = None
    last_trained: Optional[datetime] = None
    in_flight: int = 0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def snapshot(self) -> ModelRegistration:
        with self.lock:
            total = self.total_predictions
            return ModelRegistration(
                model_id=self.model_id,
                backend_kind=self.kind,
                config=self.config.model_dump(exclude=SECRET_FIELDS),
                status=self.status,
                status_reason=self.status_reason,
                version=self.version,
                performance=ModelPerformance(
                    accuracy=self.accuracy,
                    f1=self.f1,
                    latency_ms=self.latency_ms,
                    error_rate=self.failed_predictions / total if total else 0.0,
                    total_predictions=total,
                    failed_predictions=self.failed_predictions,
                ),
                usage_count=self.usage_count,
                last_used=self.last_used,
                last_trained=self.last_trained,
                in_flight=self.in_flight,
            )


class ModelManager:
    """Registry, router and lifecycle owner for named predictive models."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        cache: Optional[LRUCache] = None,
    ):
        self.settings = settings or EngineSettings()
        self.cache = cache or LRUCache(max_size=self.settings.cache_max_size)
        self._entries: Dict[str, _ModelEntry] = {}
        self._registry_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.dispatch_workers, thread_name_prefix="model-dispatch"
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_in_house(
        self, model_id: str, config: ConfigInput, backend: Optional[ModelBackend] = None
    ) -> RegistrationResult:
        """Validate, load and self-test an in-house model. Never raises."""
        try:
            ensure_present(model_id, "model_id")
            parsed = _parse(InHouseModelConfig, config)
            backend = backend or in_house_backend_for(parsed)
        except (ValueError, EngineError) as exc:
            return self._rejected(model_id, BackendKind.IN_HOUSE, exc)
        return self._register(model_id, BackendKind.IN_HOUSE, parsed, backend)

    def register_external(
        self, model_id: str, config: ConfigInput, backend: Optional[ModelBackend] = None
    ) -> RegistrationResult:
        """Validate an external API model and test its connection. Never raises."""
        try:
            ensure_present(model_id, "model_id")
            parsed = _parse(ExternalModelConfig, config)
            backend = backend or external_backend_for(
                parsed, self.settings.bedrock_region, self.settings.external_timeout_seconds
            )
        except (ValueError, EngineError) as exc:
            return self._rejected(model_id, BackendKind.EXTERNAL, exc)
        return self._register(model_id, BackendKind.EXTERNAL, parsed, backend)

    def register_mcp(
        self, server_id: str, config: ConfigInput, backend: Optional[ModelBackend] = None
    ) -> RegistrationResult:
        """Connect to a remote capability server. Never raises."""
        try:
            ensure_present(server_id, "server_id")
            parsed = _parse(McpServerConfig, config)
            backend = backend or McpBackend(default_timeout=self.settings.external_timeout_seconds)
        except (ValueError, EngineError) as exc:
            return self._rejected(server_id, BackendKind.MCP, exc)
        return self._register(server_id, BackendKind.MCP, parsed, backend)

    def ensure_in_house(self, model_id: str, config: ConfigInput) -> RegistrationResult:
        """Register an in-house model only if the id is not already taken."""
        existing = self._lookup(model_id)
        if existing is not None:
            with existing.lock:
                return RegistrationResult(
                    success=existing.status in SERVING_STATES,
                    model_id=model_id,
                    status=existing.status,
                    error=existing.status_reason,
                )
        return self.register_in_house(model_id, config)

    def _rejected(self, model_id: str, kind: BackendKind, exc: Exception) -> RegistrationResult:
        logger.warning(
            "Model registration rejected",
            extra={"model_id": model_id, "backend_kind": kind.value, "error": str(exc)},
        )
        return RegistrationResult(success=False, model_id=model_id or "", error=str(exc))

    def _register(
        self, model_id: str, kind: BackendKind, config: BaseModel, backend: ModelBackend
    ) -> RegistrationResult:
        existing = self._lookup(model_id)
        if existing is not None and existing.status == ModelStatus.TRAINING:
            return self._busy(model_id)

        entry = _ModelEntry(
            model_id=model_id,
            kind=kind,
            config=config,
            backend=backend,
            capabilities=list(config.capabilities),
            limiter=self._limiter_for(model_id, config),
            accuracy=config.baseline.accuracy,
            f1=config.baseline.f1,
        )

        # Load and self-test happen before the entry is visible to callers.
        try:
            entry.artifact = backend.load(model_id, config)
            handshake = backend.test_connection(entry.artifact, config)
            if kind == BackendKind.MCP and handshake.get("capabilities"):
                entry.capabilities = list(handshake["capabilities"])
            entry.status = ModelStatus.READY
        except Exception as exc:
            entry.status = ModelStatus.ERROR
            entry.status_reason = str(exc)
            logger.warning(
                "Model failed load or connection test",
                extra={"model_id": model_id, "backend_kind": kind.value, "error": str(exc)},
            )

        with self._registry_lock:
            current = self._entries.get(model_id)
            if current is not None:
                with current.lock:
                    if current.status == ModelStatus.TRAINING:
                        backend.close(entry.artifact)
                        return self._busy(model_id)
                    self._entries[model_id] = entry
            else:
                self._entries[model_id] = entry

        if current is not None:
            self.cache.delete_prefix(f"{model_id}:")
            current.backend.close(current.artifact)

        logger.info(
            "Model registered",
            extra={"model_id": model_id, "backend_kind": kind.value, "status": entry.status.value},
        )
        return RegistrationResult(
            success=entry.status == ModelStatus.READY,
            model_id=model_id,
            status=entry.status,
            error=entry.status_reason,
        )

    @staticmethod
    def _busy(model_id: str) -> RegistrationResult:
        return RegistrationResult(
            success=False,
            model_id=model_id,
            status=ModelStatus.TRAINING,
            error=f"Model {model_id} is training; retry after it completes",
        )

    @staticmethod
    def _limiter_for(model_id: str, config: BaseModel) -> Optional[SlidingWindowRateLimiter]:
        limits = getattr(config, "rate_limits", None)
        if limits is None or (
            limits.requests_per_minute is None and limits.tokens_per_minute is None
        ):
            return None
        return SlidingWindowRateLimiter(
            model_id,
            requests_per_minute=limits.requests_per_minute,
            tokens_per_minute=limits.tokens_per_minute,
        )

    def deregister(self, model_id: str) -> RegistrationResult:
        """Remove a model and flush its cache entries; rejected while training."""
        with self._registry_lock:
            entry = self._entries.get(model_id)
            if entry is None:
                return RegistrationResult(
                    success=False, model_id=model_id, error=str(ModelNotFoundError(model_id))
                )
            with entry.lock:
                if entry.status == ModelStatus.TRAINING:
                    return self._busy(model_id)
                del self._entries[model_id]

        self.cache.delete_prefix(f"{model_id}:")
        entry.backend.close(entry.artifact)
        logger.info("Model deregistered", extra={"model_id": model_id})
        return RegistrationResult(success=True, model_id=model_id)

    # ------------------------------------------------------------------
    # Registry views
    # ------------------------------------------------------------------

    def _lookup(self, model_id: str) -> Optional[_ModelEntry]:
        with self._registry_lock:
            return self._entries.get(model_id)

    def _all(self) -> List[_ModelEntry]:
        with self._registry_lock:
            return list(self._entries.values())

    def get_model(self, model_id: str) -> Optional[ModelRegistration]:
        entry = self._lookup(model_id)
        return entry.snapshot() if entry else None

    def list_models(self, kind: Optional[BackendKind] = None) -> List[ModelRegistration]:
        return [entry.snapshot() for entry in self._all() if kind is None or entry.kind == kind]

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(
        self, model_id: str, payload: Dict[str, Any], options: OptionsInput = None
    ) -> PredictionResult:
        """
        Route a prediction by model id, then by capability.

        Order: the registered model itself; otherwise a remote server
        advertising ``options.capability`` (default ``custom_models``);
        otherwise an external model advertising that capability (or the id
        used as a capability name); otherwise a default prediction. Errors
        are logged and converted to the default, never raised.
        """
        try:
            opts = _options(options)
        except ValueError as exc:
            return self._default(model_id, str(exc))

        entry = self._lookup(model_id)
        try:
            if entry is not None:
                return self._dispatch(entry, payload, opts, model_id)

            mcp_capability = opts.capability or DEFAULT_MCP_CAPABILITY
            server = self._select(BackendKind.MCP, mcp_capability)
            if server is not None:
                return self._dispatch(server, payload, opts, model_id, mcp_capability)

            external = self._select(BackendKind.EXTERNAL, opts.capability or model_id)
            if external is not None:
                return self._dispatch(external, payload, opts, model_id)
        except EngineError as exc:
            logger.warning(
                "Prediction failed; returning default",
                extra={"model_id": model_id, "error": str(exc)},
            )
            return self._default(model_id, str(exc))
        except Exception as exc:
            logger.exception("Unexpected prediction failure", extra={"model_id": model_id})
            return self._default(model_id, str(exc))

        return self._default(model_id, f"No model available for {model_id}")

    def predict_via_capability(
        self, capability: str, payload: Dict[str, Any], options: OptionsInput = None
    ) -> PredictionResult:
        """Route to the least-loaded ready external model advertising ``capability``."""
        try:
            opts = _options(options)
            external = self._select(BackendKind.EXTERNAL, capability)
            if external is None:
                return self._default(capability, f"No external model found for capability: {capability}")
            return self._dispatch(external, payload, opts, external.model_id)
        except EngineError as exc:
            logger.warning(
                "Capability prediction failed; returning default",
                extra={"capability": capability, "error": str(exc)},
            )
            return self._default(capability, str(exc))
        except Exception as exc:
            logger.exception("Unexpected capability prediction failure", extra={"capability": capability})
            return self._default(capability, str(exc))

    def _select(self, kind: BackendKind, capability: str) -> Optional[_ModelEntry]:
        """Fewest in-flight requests first, then lowest average latency."""
        candidates = []
        for entry in self._all():
            with entry.lock:
                if (
                    entry.kind == kind
                    and entry.status == ModelStatus.READY
                    and capability in entry.capabilities
                ):
                    candidates.append((entry.in_flight, entry.latency_ms, entry.model_id, entry))
        if not candidates:
            return None
        return min(candidates, key=lambda item: item[:3])[3]

    def _dispatch(
        self,
        entry: _ModelEntry,
        payload: Dict[str, Any],
        options: PredictOptions,
        requested_id: str,
        capability: Optional[str] = None,
    ) -> PredictionResult:
        if entry.kind == BackendKind.IN_HOUSE:
            return self._predict_in_house(entry, payload, options)
        if entry.kind == BackendKind.EXTERNAL:
            return self._predict_remote(entry, payload, options, PredictionSource.EXTERNAL)
        params = {
            "model_id": requested_id,
            "capability": capability or (options.capability or DEFAULT_MCP_CAPABILITY),
            "input": payload,
            "options": options.model_dump(exclude_none=True),
        }
        return self._predict_remote(entry, params, options, PredictionSource.MCP)

    def _predict_in_house(
        self, entry: _ModelEntry, payload: Dict[str, Any], options: PredictOptions
    ) -> PredictionResult:
        with entry.lock:
            if entry.status not in SERVING_STATES:
                raise ModelStateError(
                    f"In-house model {entry.model_id} is {entry.status.value}", entry.model_id
                )
            artifact, version = entry.artifact, entry.version
            entry.in_flight += 1

        started = time.perf_counter()
        cache_key = f"{entry.model_id}:v{version}:{input_hash(payload)}"
        try:
            if not options.bypass_cache:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    return cached.model_copy(
                        update={
                            "source": PredictionSource.CACHE,
                            "latency_ms": (time.perf_counter() - started) * 1000,
                        }
                    )

            try:
                processed = entry.backend.preprocess(payload, entry.config)
                output, confidence = entry.backend.predict(artifact, processed, entry.config)
                output = entry.backend.postprocess(output, entry.config)
            except Exception as exc:
                self._record(entry, started, success=False)
                raise BackendError(
                    f"In-house model {entry.model_id} failed: {exc}", entry.model_id
                ) from exc

            result = PredictionResult(
                model_id=entry.model_id,
                output=output,
                confidence=confidence,
                source=PredictionSource.IN_HOUSE,
                model_version=version,
                latency_ms=(time.perf_counter() - started) * 1000,
            )
            with entry.lock:
                # A swap during inference flushed this version; do not repopulate it.
                if entry.version == version:
                    self.cache.set(cache_key, result)
            self._record(entry, started, success=True)
            return result
        finally:
            with entry.lock:
                entry.in_flight -= 1

    def _predict_remote(
        self,
        entry: _ModelEntry,
        payload: Dict[str, Any],
        options: PredictOptions,
        source: PredictionSource,
    ) -> PredictionResult:
        with entry.lock:
            if entry.status != ModelStatus.READY:
                raise ModelStateError(
                    f"{entry.kind.value} model {entry.model_id} is {entry.status.value}",
                    entry.model_id,
                )
            artifact, version = entry.artifact, entry.version
            entry.in_flight += 1

        timeout = (
            options.timeout_seconds
            or getattr(entry.config, "timeout_seconds", None)
            or self.settings.external_timeout_seconds
        )
        started = time.perf_counter()
        try:
            if entry.limiter is not None:
                queue = getattr(entry.config, "on_throttle", None) == ThrottlePolicy.QUEUE
                entry.limiter.acquire(estimate_tokens(payload), block=queue, timeout=timeout)

            processed = entry.backend.preprocess(payload, entry.config)
            future = self._executor.submit(
                entry.backend.predict, artifact, processed, entry.config, timeout
            )
            try:
                output, confidence = future.result(timeout=timeout)
            except DispatchTimeout as exc:
                future.cancel()
                raise BackendError(
                    f"{entry.model_id} timed out after {timeout}s", entry.model_id
                ) from exc
            output = entry.backend.postprocess(output, entry.config)
        except EngineError:
            self._record(entry, started, success=False)
            raise
        except Exception as exc:
            self._record(entry, started, success=False)
            raise BackendError(f"{entry.model_id} failed: {exc}", entry.model_id) from exc
        finally:
            with entry.lock:
                entry.in_flight -= 1

        self._record(entry, started, success=True)
        return PredictionResult(
            model_id=entry.model_id,
            output=output,
            confidence=confidence,
            source=source,
            model_version=version,
            latency_ms=(time.perf_counter() - started) * 1000,
        )

    def _record(self, entry: _ModelEntry, started: float, success: bool) -> None:
        latency = (time.perf_counter() - started) * 1000
        with entry.lock:
            entry.total_predictions += 1
            entry.latency_ms += (latency - entry.latency_ms) / entry.total_predictions
            if success:
                entry.usage_count += 1
                entry.last_used = _utcnow()
            else:
                entry.failed_predictions += 1

    @staticmethod
    def _default(model_id: str, error: str) -> PredictionResult:
        return PredictionResult(
            model_id=model_id,
            output={"prediction": "unknown"},
            confidence=0.5,
            source=PredictionSource.DEFAULT,
            error=error,
        )

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def incremental_train(self, model_id: str, batch: Any) -> TrainingResult:
        """Fold a small batch into the current artifact."""
        return self._train(model_id, batch, incremental=True)

    def retrain(self, model_id: str, dataset: Any) -> TrainingResult:
        """Rebuild the artifact from the full dataset and swap it in atomically."""
        return self._train(model_id, dataset, incremental=False)

    def _train(self, model_id: str, batch: Any, incremental: bool) -> TrainingResult:
        records = _as_batch(batch)
        entry = self._lookup(model_id)
        try:
            if entry is None:
                raise ModelNotFoundError(model_id)
            if not records:
                raise ModelStateError(f"Training batch for {model_id} is empty", model_id)
            with entry.lock:
                # Plain read: entry locks are never held while taking the registry lock.
                if self._entries.get(model_id) is not entry:
                    raise ModelNotFoundError(model_id)
                if entry.kind != BackendKind.IN_HOUSE:
                    raise ModelStateError(
                        f"Model {model_id} is {entry.kind.value}; only in-house models train",
                        model_id,
                    )
                if entry.status != ModelStatus.READY:
                    raise ModelStateError(
                        f"Model {model_id} is {entry.status.value}; training requires ready",
                        model_id,
                    )
                entry.status = ModelStatus.TRAINING
                snapshot = copy.deepcopy(entry.artifact)
                previous_accuracy, previous_version = entry.accuracy, entry.version
        except EngineError as exc:
            logger.warning("Training rejected", extra={"model_id": model_id, "error": str(exc)})
            return TrainingResult(success=False, model_id=model_id, error=str(exc))

        try:
            outcome = entry.backend.train(snapshot, records, incremental=incremental)
        except Exception as exc:
            with entry.lock:
                entry.status = ModelStatus.ERROR
                entry.status_reason = f"Training failed: {exc}"
            logger.warning(
                "Training failed",
                extra={"model_id": model_id, "incremental": incremental, "error": str(exc)},
            )
            return TrainingResult(
                success=False, model_id=model_id, samples=len(records), error=str(exc)
            )

        with entry.lock:
            entry.artifact = outcome.artifact
            entry.version = previous_version + 1
            entry.accuracy = outcome.accuracy
            entry.f1 = outcome.f1
            entry.last_trained = _utcnow()
            entry.status = ModelStatus.READY
            entry.status_reason = None
            flushed = self.cache.delete_prefix(f"{model_id}:v{previous_version}:")

        logger.info(
            "Model trained",
            extra={
                "model_id": model_id,
                "incremental": incremental,
                "version": entry.version,
                "samples": outcome.samples,
                "cache_entries_flushed": flushed,
            },
        )
        return TrainingResult(
            success=True,
            model_id=model_id,
            previous_accuracy=previous_accuracy,
            new_accuracy=outcome.accuracy,
            improvement=outcome.accuracy - previous_accuracy,
            version=previous_version + 1,
            samples=outcome.samples,
        )

    # ------------------------------------------------------------------
    # Remote health
    # ------------------------------------------------------------------

    def refresh_external_models(self) -> List[RefreshResult]:
        """Re-test every external model and remote server; failures demote to error."""
        results: List[RefreshResult] = []
        for entry in self._all():
            if entry.kind == BackendKind.IN_HOUSE:
                continue
            try:
                artifact = entry.artifact
                if artifact is None:
                    artifact = entry.backend.load(entry.model_id, entry.config)
                handshake = entry.backend.test_connection(artifact, entry.config)
                with entry.lock:
                    entry.artifact = artifact
                    entry.status = ModelStatus.READY
                    entry.status_reason = None
                    if entry.kind == BackendKind.MCP and handshake.get("capabilities"):
                        entry.capabilities = list(handshake["capabilities"])
                results.append(RefreshResult(model_id=entry.model_id, status=ModelStatus.READY))
            except Exception as exc:
                with entry.lock:
                    entry.status = ModelStatus.ERROR
                    entry.status_reason = str(exc)
                logger.warning(
                    "Model connection refresh failed",
                    extra={"model_id": entry.model_id, "error": str(exc)},
                )
                results.append(
                    RefreshResult(model_id=entry.model_id, status=ModelStatus.ERROR, error=str(exc))
                )
        return results

    def shutdown(self) -> None:
        """Stop the dispatch pool and close remote clients."""
        self._executor.shutdown(wait=False)
        for entry in self._all():
            entry.backend.close(entry.artifact)


def _parse(config_cls: type, config: ConfigInput) -> BaseModel:
    if isinstance(config, config_cls):
        return config
    if isinstance(config, BaseModel):
        config = config.model_dump()
    if not isinstance(config, Mapping):
        raise ValueError(f"{config_cls.__name__} must be a mapping")
    return config_cls.model_validate(dict(config))


def _options(options: OptionsInput) -> PredictOptions:
    if options is None:
        return PredictOptions()
    if isinstance(options, PredictOptions):
        return options
    return PredictOptions.model_validate(dict(options))


def _as_batch(batch: Any) -> List[Any]:
    if batch is None:
        return []
    if isinstance(batch, (Mapping, BaseModel)):
        return [batch]
    return list(batch)
