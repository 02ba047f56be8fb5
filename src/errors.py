"""Exception types raised across the alert pipeline."""


class AlertBotError(Exception):
    """Base class for alert bot errors."""


class TransportError(AlertBotError):
    """A relay connection dropped or could not be established."""


class CollaboratorUnavailable(AlertBotError):
    """Storage or dispatch failed while processing a single event."""

    def __init__(self, collaborator: str, cause: Exception):
        super().__init__(f"{collaborator} unavailable: {cause}")
        self.collaborator = collaborator
        self.cause = cause


class InvariantViolation(AlertBotError):
    """Internal state broke an invariant; the current operation is aborted."""


class AlertLimitExceeded(AlertBotError):
    """A free-tier user tried to create more alerts than allowed."""
