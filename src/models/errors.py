"""
Error types raised across the classification, retrieval and evaluation layers.
"""

from typing import Optional


class SignalDeskError(Exception):
    """Base class for all application errors."""


class ValidationError(SignalDeskError):
    """Input failed shape or content checks. Never retried."""


class CapabilityUnavailable(SignalDeskError):
    """A required external capability is not configured."""

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(f"Missing capability: {capability}")


class ClassificationError(SignalDeskError):
    """Model output could not be turned into a valid analysis."""

    def __init__(self, reason: str, unavailable: bool = False):
        self.reason = reason
        self.unavailable = unavailable
        super().__init__(reason)


class EmbeddingError(SignalDeskError):
    """The embedding capability produced no usable vector."""


class VectorIndexError(SignalDeskError):
    """The retrieval index rejected a read or write."""


class StoreError(SignalDeskError):
    """The record store failed a read or write."""


class FeedbackNotFoundError(SignalDeskError):
    """No feedback record exists for the requested id."""

    def __init__(self, feedback_id: Optional[str]):
        self.feedback_id = feedback_id
        super().__init__(f"Feedback not found: {feedback_id}")
