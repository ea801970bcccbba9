"""
Model manager tests: registration, routing, caching, rate limiting and the
training lifecycle, using fake backends so no network or AWS is touched.

Run with: pytest tests/unit/test_model_manager.py -v
"""

import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

SRC_PATH = Path(__file__).parent.parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from config.settings import EngineSettings
from models.registry import (
    BackendKind,
    ModelStatus,
    PredictionSource,
)
from services.backends import HttpApiBackend, ModelBackend, TrainingOutcome
from services.model_manager import ModelManager, input_hash
from utils.error_handling import BackendError

IN_HOUSE_CONFIG = {"type": "prediction", "version": "1.0.0", "capabilities": ["resolution_time"]}


def _external_config(capability="sentiment_analysis", **extra):
    config = {
        "provider": "custom",
        "model": "sentiment-large",
        "endpoint": "https://models.test/v1",
        "capabilities": [capability],
    }
    config.update(extra)
    return config


class CountingBackend(ModelBackend):
    """In-house backend whose artifact is a counter."""

    kind = BackendKind.IN_HOUSE

    def __init__(self):
        self.predict_calls = 0
        self.train_started = threading.Event()
        self.release = threading.Event()
        self.release.set()
        self.fail_training = False

    def load(self, model_id, config):
        return {"value": 1}

    def predict(self, artifact, payload, config, timeout=None):
        self.predict_calls += 1
        return {"value": artifact["value"]}, 0.9

    def train(self, artifact, batch, incremental=True):
        self.train_started.set()
        self.release.wait(5)
        if self.fail_training:
            raise RuntimeError("optimizer diverged")
        return TrainingOutcome(
            artifact={"value": artifact["value"] + 1}, accuracy=0.8, f1=0.7, samples=len(batch)
        )


class BrokenLoadBackend(CountingBackend):
    def load(self, model_id, config):
        raise RuntimeError("artifact missing")


class FakeExternalBackend(ModelBackend):
    kind = BackendKind.EXTERNAL

    def __init__(self, label="remote", delay=0.0):
        self.label = label
        self.delay = delay
        self.reachable = True

    def load(self, model_id, config):
        return object()

    def test_connection(self, artifact, config):
        if not self.reachable:
            raise BackendError("endpoint down")
        return {"connected": True}

    def predict(self, artifact, payload, config, timeout=None):
        if self.delay:
            time.sleep(self.delay)
        return {"label": self.label}, 0.6


class FakeMcpBackend(ModelBackend):
    kind = BackendKind.MCP

    def __init__(self):
        self.payloads = []

    def test_connection(self, artifact, config):
        return {"connected": True, "capabilities": ["custom_models", "knowledge_retrieval"]}

    def predict(self, artifact, payload, config, timeout=None):
        self.payloads.append(payload)
        return {"label": "mcp"}, 0.65


@pytest.fixture
def manager():
    manager = ModelManager(EngineSettings(dispatch_workers=4))
    yield manager
    manager.shutdown()


class TestRegistration:
    """Registration never raises and records failures as state."""

    def test_register_in_house(self, manager):
        """A valid config loads, self-tests and becomes ready."""
        result = manager.register_in_house("predictor", IN_HOUSE_CONFIG)
        assert result.success is True
        registration = manager.get_model("predictor")
        assert registration.status == ModelStatus.READY
        assert registration.backend_kind == BackendKind.IN_HOUSE
        assert registration.version == 0

    @pytest.mark.parametrize(
        "model_id,config",
        [
            ("m", {"type": "prediction", "version": "1", "capabilities": []}),
            ("m", {"version": "1", "capabilities": ["a"]}),
            ("m", {"type": "prediction", "version": "1", "backend": "nope", "capabilities": ["a"]}),
            ("", IN_HOUSE_CONFIG),
            ("m", "not a mapping"),
        ],
    )
    def test_invalid_config_rejected(self, manager, model_id, config):
        """Config errors come back as a failed result and nothing is stored."""
        result = manager.register_in_house(model_id, config)
        assert result.success is False
        assert result.error
        assert manager.get_model("m") is None

    def test_load_failure_is_error_state(self, manager):
        """A failing load leaves the model registered in error."""
        result = manager.register_in_house("m", IN_HOUSE_CONFIG, backend=BrokenLoadBackend())
        assert result.success is False
        assert result.status == ModelStatus.ERROR
        registration = manager.get_model("m")
        assert registration.status == ModelStatus.ERROR
        assert "artifact missing" in registration.status_reason

    def test_unreachable_external_is_error(self, manager):
        """An unreachable endpoint marks the model error without raising."""

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = HttpApiBackend(transport=httpx.MockTransport(refuse))
        result = manager.register_external("ext", _external_config(), backend=backend)
        assert result.success is False
        assert manager.get_model("ext").status == ModelStatus.ERROR

    def test_external_requires_endpoint(self, manager):
        """Non-bedrock providers need an endpoint."""
        config = _external_config()
        del config["endpoint"]
        result = manager.register_external("ext", config)
        assert result.success is False
        assert "endpoint" in result.error

    def test_mcp_requires_credential(self, manager):
        """Bearer auth without a credential is a configuration error."""
        result = manager.register_mcp(
            "srv",
            {"endpoint": "https://mcp.test", "authentication": "bearer", "capabilities": ["custom_models"]},
        )
        assert result.success is False

    def test_secrets_hidden_from_snapshots(self, manager):
        """API keys never appear in registry snapshots."""
        manager.register_external(
            "ext", _external_config(api_key="secret"), backend=FakeExternalBackend()
        )
        assert "api_key" not in manager.get_model("ext").config

    def test_list_models_by_kind(self, manager):
        """Listing can filter by backend kind."""
        manager.register_in_house("a", IN_HOUSE_CONFIG)
        manager.register_external("b", _external_config(), backend=FakeExternalBackend())
        assert [m.model_id for m in manager.list_models(BackendKind.EXTERNAL)] == ["b"]
        assert len(manager.list_models()) == 2

    def test_deregister(self, manager):
        """Deregistration removes the model; a second attempt fails."""
        manager.register_in_house("a", IN_HOUSE_CONFIG)
        assert manager.deregister("a").success is True
        assert manager.get_model("a") is None
        assert manager.deregister("a").success is False

    def test_ensure_in_house_keeps_existing(self, manager):
        """A second ensure does not replace a trained model."""
        backend = CountingBackend()
        manager.register_in_house("a", IN_HOUSE_CONFIG, backend=backend)
        manager.incremental_train("a", {"x": 1})
        result = manager.ensure_in_house("a", IN_HOUSE_CONFIG)
        assert result.success is True
        assert manager.get_model("a").version == 1


class TestPrediction:
    """Routing, caching and failure conversion."""

    def test_in_house_cache(self, manager):
        """The second identical call is served from cache."""
        backend = CountingBackend()
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=backend)

        first = manager.predict("m", {"q": 1})
        second = manager.predict("m", {"q": 1})
        bypass = manager.predict("m", {"q": 1}, {"bypass_cache": True})

        assert first.source == PredictionSource.IN_HOUSE
        assert second.source == PredictionSource.CACHE
        assert second.output == first.output
        assert bypass.source == PredictionSource.IN_HOUSE
        assert backend.predict_calls == 2
        assert first.model_version == 0
        assert manager.get_model("m").usage_count == 2

    def test_cache_key_is_order_independent(self):
        """Inputs hash the same regardless of key order."""
        assert input_hash({"a": 1, "b": 2}) == input_hash({"b": 2, "a": 1})

    def test_unknown_model_returns_default(self, manager):
        """Nothing to route to yields the declared default."""
        result = manager.predict("missing", {"q": 1})
        assert result.source == PredictionSource.DEFAULT
        assert result.output == {"prediction": "unknown"}
        assert result.confidence == 0.5
        assert result.error

    def test_capability_fallback_to_external(self, manager):
        """An unknown id that names a capability routes to an external model."""
        manager.register_external("ext", _external_config(), backend=FakeExternalBackend())
        result = manager.predict("sentiment_analysis", {"content": "hi"})
        assert result.source == PredictionSource.EXTERNAL
        assert result.model_id == "ext"
        assert result.output == {"label": "remote"}

    def test_predict_via_capability(self, manager):
        """Explicit capability routing."""
        manager.register_external("ext", _external_config("classification"), backend=FakeExternalBackend())
        assert manager.predict_via_capability("classification", {}).source == PredictionSource.EXTERNAL
        assert manager.predict_via_capability("translation", {}).is_default

    def test_mcp_routing(self, manager):
        """Unknown ids go to an MCP server advertising the capability."""
        backend = FakeMcpBackend()
        manager.register_mcp(
            "srv", {"endpoint": "https://mcp.test", "capabilities": ["custom_models"]}, backend=backend
        )
        assert manager.get_model("srv").status == ModelStatus.READY

        result = manager.predict("churn-model", {"customer": "c-1"})
        assert result.source == PredictionSource.MCP
        assert backend.payloads[0]["model_id"] == "churn-model"
        assert backend.payloads[0]["capability"] == "custom_models"
        assert backend.payloads[0]["input"] == {"customer": "c-1"}

    def test_least_loaded_external_wins(self, manager):
        """Fewest in-flight requests first, then model id."""
        manager.register_external("ext-a", _external_config(), backend=FakeExternalBackend("a"))
        manager.register_external("ext-b", _external_config(), backend=FakeExternalBackend("b"))
        assert manager.predict_via_capability("sentiment_analysis", {}).output == {"label": "a"}

        manager._entries["ext-a"].in_flight = 3
        assert manager.predict_via_capability("sentiment_analysis", {}).output == {"label": "b"}

    def test_rate_limit_fail_fast(self, manager):
        """With on_throttle=fail the second call in the window is a flagged default."""
        config = _external_config(rate_limits={"requests_per_minute": 1})
        manager.register_external("ext", config, backend=FakeExternalBackend())

        assert manager.predict("ext", {}).source == PredictionSource.EXTERNAL
        throttled = manager.predict("ext", {})
        assert throttled.is_default
        assert "Rate limit" in throttled.error
        assert manager.get_model("ext").performance.failed_predictions == 1

    def test_external_timeout(self, manager):
        """Slow backends are abandoned at the caller's timeout."""
        manager.register_external("ext", _external_config(), backend=FakeExternalBackend(delay=0.5))
        result = manager.predict("ext", {}, {"timeout_seconds": 0.05})
        assert result.is_default
        assert "timed out" in result.error

    def test_error_model_is_not_served(self, manager):
        """Models in error state yield defaults."""
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=BrokenLoadBackend())
        assert manager.predict("m", {}).is_default


class TestTraining:
    """Training lifecycle and zero-downtime swaps."""

    def test_incremental_train_bumps_version_and_flushes_cache(self, manager):
        """A finished training run serves the new artifact under a new version."""
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=CountingBackend())
        manager.predict("m", {"q": 1})
        assert manager.predict("m", {"q": 1}).source == PredictionSource.CACHE

        result = manager.incremental_train("m", [{"x": 1}, {"x": 2}])
        assert result.success is True
        assert result.version == 1
        assert result.samples == 2
        assert result.improvement == pytest.approx(0.8)

        after = manager.predict("m", {"q": 1})
        assert after.source == PredictionSource.IN_HOUSE
        assert after.model_version == 1
        assert after.output == {"value": 2}
        assert manager.get_model("m").status == ModelStatus.READY

    @pytest.mark.parametrize("batch", [[], None])
    def test_empty_batch_rejected(self, manager, batch):
        """Empty batches are state errors; the registry is unchanged."""
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=CountingBackend())
        result = manager.incremental_train("m", batch)
        assert result.success is False
        assert manager.get_model("m").version == 0
        assert manager.get_model("m").status == ModelStatus.READY

    def test_unregistered_model_rejected(self, manager):
        """Training an unknown id fails descriptively."""
        result = manager.retrain("missing", [{"x": 1}])
        assert result.success is False
        assert "not registered" in result.error

    def test_replaced_entry_is_not_trained(self, manager):
        """A retrain holding an entry that re-registration replaced is rejected."""
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=CountingBackend())
        stale = manager._entries["m"]
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=CountingBackend())

        with patch.object(manager, "_lookup", return_value=stale):
            result = manager.retrain("m", [{"x": 1}])

        assert result.success is False
        assert "not registered" in result.error
        assert stale.status == ModelStatus.READY
        assert stale.version == 0
        assert manager.get_model("m").version == 0

    def test_deregistered_entry_is_not_trained(self, manager):
        """A retrain holding an entry removed by deregister is rejected."""
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=CountingBackend())
        stale = manager._entries["m"]
        assert manager.deregister("m").success is True

        with patch.object(manager, "_lookup", return_value=stale):
            result = manager.incremental_train("m", [{"x": 1}])

        assert result.success is False
        assert stale.status == ModelStatus.READY
        assert manager.get_model("m") is None

    def test_external_model_cannot_train(self, manager):
        """Only in-house models train."""
        manager.register_external("ext", _external_config(), backend=FakeExternalBackend())
        result = manager.incremental_train("ext", [{"x": 1}])
        assert result.success is False
        assert manager.get_model("ext").status == ModelStatus.READY

    def test_training_failure_sets_error(self, manager):
        """A backend exception during training moves the model to error."""
        backend = CountingBackend()
        backend.fail_training = True
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=backend)

        result = manager.retrain("m", [{"x": 1}])
        assert result.success is False
        registration = manager.get_model("m")
        assert registration.status == ModelStatus.ERROR
        assert "optimizer diverged" in registration.status_reason

    def test_predictions_during_training_use_previous_artifact(self, manager):
        """Concurrent predictions mid-retrain all come from the old version, never errors."""
        backend = CountingBackend()
        backend.release.clear()
        manager.register_in_house("m", IN_HOUSE_CONFIG, backend=backend)

        with ThreadPoolExecutor(max_workers=16) as pool:
            training = pool.submit(manager.retrain, "m", [{"x": 1}])
            assert backend.train_started.wait(5)
            assert manager.get_model("m").status == ModelStatus.TRAINING

            # Concurrent writers are rejected while training.
            assert manager.incremental_train("m", [{"x": 2}]).success is False
            assert manager.register_in_house("m", IN_HOUSE_CONFIG).success is False
            assert manager.deregister("m").success is False

            futures = [
                pool.submit(manager.predict, "m", {"q": 1}, {"bypass_cache": i % 2 == 0})
                for i in range(60)
            ]
            during = [future.result(5) for future in futures]

            backend.release.set()
            trained = training.result(5)

        assert all(not result.is_default for result in during)
        assert {result.model_version for result in during} == {0}
        assert {result.output["value"] for result in during} == {1}

        assert trained.success is True
        after = manager.predict("m", {"q": 1})
        assert after.model_version == 1
        assert after.output == {"value": 2}


class TestRefresh:
    """Connection refresh for remote models."""

    def test_refresh_demotes_and_recovers(self, manager):
        """Failures demote to error without removing the model; recovery restores ready."""
        backend = FakeExternalBackend()
        manager.register_external("ext", _external_config(), backend=backend)
        manager.register_in_house("local", IN_HOUSE_CONFIG)

        backend.reachable = False
        results = manager.refresh_external_models()
        assert [r.model_id for r in results] == ["ext"]
        assert results[0].status == ModelStatus.ERROR
        assert manager.get_model("ext").status == ModelStatus.ERROR
        assert manager.predict("ext", {}).is_default

        backend.reachable = True
        results = manager.refresh_external_models()
        assert results[0].status == ModelStatus.READY
        assert manager.predict("ext", {}).source == PredictionSource.EXTERNAL
