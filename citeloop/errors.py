from __future__ import annotations


class CiteloopError(Exception):
    """Base class for pipeline errors that reach the caller."""


class PreconditionError(CiteloopError):
    """Raised when a run cannot start or a pass has nothing to work with."""


class SynthesisError(CiteloopError):
    """LLM failure while writing a draft; the control loop falls back to the last draft."""

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class ProviderError(CiteloopError):
    """A single search or enrichment provider could not serve a request."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
