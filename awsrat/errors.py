"""Exception hierarchy for aws-rat.

Every error the menu loop knows how to report derives from ``RatError``.
Tunnel errors carry the captured output of the background SSM process so
the operator can see why a session never came up.
"""
from __future__ import annotations

from typing import Optional


class RatError(Exception):
    """Base class for errors reported back to the operator."""


class PrerequisiteError(RatError):
    """A required local tool or credential source is missing."""


class SelectionCancelled(RatError):
    """The operator went back or there was nothing to choose from."""

    def __init__(self, what: str, reason: str = "no selection made"):
        self.what = what
        self.reason = reason
        super().__init__(f"{what}: {reason}")


class AWSCallError(RatError):
    """A boto3 call failed (permissions, credentials, throttling ...)."""

    def __init__(self, operation: str, error: Exception):
        self.operation = operation
        self.error = error
        super().__init__(f"AWS call failed ({operation}): {error}")


class DeploymentFailed(RatError):
    """An ECS deployment rolled back or did not stabilise in time."""


class TunnelError(RatError):
    """Base class for port-forwarding tunnel failures."""

    def __init__(self, message: str, output: Optional[str] = None):
        super().__init__(message)
        self.output = output or ""

    def __str__(self) -> str:
        msg = super().__str__()
        if self.output:
            return f"{msg}\n--- session output ---\n{self.output.rstrip()}"
        return msg


class PortAllocationExhausted(TunnelError):
    """No free local port was found within the attempt budget."""


class LaunchFailure(TunnelError):
    """The forwarding process could not start or exited before readiness."""


class TunnelTimeout(TunnelError):
    """The local port never accepted connections before the deadline."""


class TunnelCancelled(TunnelError):
    """The readiness wait was interrupted through its cancel channel."""


class TerminationFailure(TunnelError):
    """Tearing down the forwarding process failed. Logged, never raised."""
