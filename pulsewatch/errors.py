"""Error taxonomy shared by the probe, incident and notification layers."""

from __future__ import annotations


class PulsewatchError(Exception):
    """Base class for all pulsewatch errors."""


class ProbeExecutionError(PulsewatchError):
    """A probe could not talk to its target. Always converted into an Unhealthy result."""


class PersistenceError(PulsewatchError):
    """A repository call failed."""


class DeliveryError(PulsewatchError):
    """An email or webhook could not be delivered."""


class SchedulingError(PulsewatchError):
    """A per-check job could not be installed."""


class NotFoundError(PulsewatchError):
    """A referenced check, incident or subscription does not exist."""

    def __init__(self, kind: str, ident: str) -> None:
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")
