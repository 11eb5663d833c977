"""
Error taxonomy for the support pipeline.

Only ConfigurationError may halt the process. Every other error is isolated
to the message whose run raised it.
"""


class SupportAgentError(Exception):
    """Base exception for support pipeline errors."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


class ValidationError(SupportAgentError):
    """Malformed upstream event; rejected at the boundary before any run starts."""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class ClassificationError(SupportAgentError):
    """Oracle unreachable or its answer unparsable. Recovered into a fallback verdict."""


class ContextLookupError(SupportAgentError):
    """An account or billing read failed. Recovered into a degraded context."""

    def __init__(self, message: str, source: str = "unknown"):
        super().__init__(message)
        self.source = source


class ActionExecutionError(SupportAgentError):
    """A billing or messaging call failed after a decision was reached."""

    def __init__(self, message: str, action: str, cause: Exception | None = None):
        super().__init__(message)
        self.action = action
        self.cause = cause


class ConfigurationError(SupportAgentError):
    """Required configuration is missing or invalid at startup."""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)
