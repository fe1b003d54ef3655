"""Error taxonomy for provisioning, build and rollout failures."""
from typing import Optional


class DeployError(Exception):
    """Base error. Every failure names the step (resource or phase) it came from."""

    def __init__(self, step: str, message: str):
        self.step = step
        self.message = message
        super().__init__(f"{step}: {message}")


class ConfigError(DeployError):
    """Invalid deployment config or resource graph. Raised before any mutation."""

    def __init__(self, message: str, step: str = "config"):
        super().__init__(step, message)


class ProviderError(DeployError):
    """An AWS API call failed."""

    def __init__(self, step: str, message: str, code: Optional[str] = None,
                 transient: bool = False):
        self.code = code
        self.transient = transient
        super().__init__(step, message)


class ConflictError(DeployError):
    """A resource exists with configuration that cannot be updated in place."""

    def __init__(self, step: str, field: str, expected, actual):
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(
            step,
            f"existing resource has {field}={actual!r}, declared {expected!r}; "
            f"reconcile manually or destroy it first"
        )


class RolloutTimeoutError(DeployError):
    """A new deployment never reached a healthy steady state."""

    def __init__(self, service: str, timeout: float, detail: str = ""):
        self.timeout = timeout
        message = f"rollout did not stabilise within {timeout:.0f}s"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(service, message)
