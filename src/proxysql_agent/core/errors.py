"""
Error taxonomy for the ProxySQL agent.

Reconciliation failures are terminal at the log, request-scoped failures
(probes, ping) propagate to their caller, and startup failures are fatal.
Each kind has its own class so operators and the HTTP layer can tell them
apart.
"""


class AgentError(Exception):
    """Base class for all agent errors."""


class ConfigurationError(AgentError):
    """Configuration is invalid or incomplete."""


class AdminConnectionError(AgentError):
    """The ProxySQL admin interface could not be reached."""


class CommandError(AgentError):
    """A single admin statement failed."""

    def __init__(self, command: str, cause: BaseException | None = None):
        self.command = command
        self.cause = cause
        message = f"failed to execute command '{command}'"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class FeedError(AgentError):
    """The orchestration API returned an error or could not be reached."""


class CacheSyncTimeoutError(FeedError):
    """Timed out waiting for the initial membership sync."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"timed out after {timeout:.1f}s waiting for pod cache to sync")


class ProbeError(AgentError):
    """Health could not be determined (as opposed to determined unhealthy)."""


class PhaseTransitionError(AgentError):
    """Attempted to move the shutdown phase backwards."""
