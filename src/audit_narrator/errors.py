from __future__ import annotations

from typing import Optional


class GenerationError(Exception):
    """Base class for failures raised at the adapter boundary."""


class RateLimited(GenerationError):
    def __init__(self, message: str = "Rate limited", retry_after_ms: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class TransientNetworkError(GenerationError):
    pass


class FatalError(GenerationError):
    pass


class ModelUnavailable(FatalError):
    """The backend does not serve the requested model id (retired or unknown)."""


class ParseFailure(GenerationError, ValueError):
    pass


class UnknownModel(KeyError):
    pass


class RegistryLoadError(RuntimeError):
    pass


class NoUsableAdapter(RuntimeError):
    pass
