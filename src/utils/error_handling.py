"""Exception taxonomy shared by the model manager, backends and learning engine."""

from typing import Optional


class EngineError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, model_id: Optional[str] = None):
        super().__init__(message)
        self.model_id = model_id


class ConfigurationError(EngineError):
    """Raised when a model registration carries an invalid or incomplete config."""


class ModelNotFoundError(EngineError):
    """Raised when a model id is not in the registry."""

    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} is not registered", model_id=model_id)


class ModelStateError(EngineError):
    """Raised when an operation is not valid for the model's lifecycle state."""


class BackendError(EngineError):
    """Raised when a backend fails to load, connect, predict or train."""


class RateLimitExceeded(BackendError):
    """Raised when an external model's request or token budget is exhausted."""

    def __init__(self, model_id: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded for {model_id}; retry in {retry_after:.1f}s",
            model_id=model_id,
        )
        self.retry_after = retry_after
