"""Exceptions raised by kgagent."""


class KGAgentError(Exception):
    """Base exception for kgagent."""


class ProviderError(KGAgentError):
    """Transport failure talking to a model provider.

    Raised for non-success HTTP statuses and missing response bodies.
    Fatal for the current request.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(KGAgentError):
    """Invalid or incomplete provider configuration."""


class MarkupError(KGAgentError):
    """A tool-invocation block could not be parsed."""


class OrchestratorError(KGAgentError):
    """Orchestrator misuse."""


class OrchestratorBusyError(OrchestratorError):
    """A request was started while another one is still in flight."""

    def __init__(self, phase: str):
        super().__init__(
            f"Cannot start a new request while the orchestrator is {phase}"
        )
        self.phase = phase


class NoProviderError(OrchestratorError):
    """No model provider has been bound to the orchestrator."""

    def __init__(self):
        super().__init__("No LLM provider configured")
