"""
Error taxonomy shared by detection, resolution and merge
"""

from typing import Any, Dict, Optional


class DedupError(Exception):
    """Base class for all engine errors"""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(DedupError):
    """Malformed input (missing mandatory fingerprint fields, bad decisions)"""

    status_code = 422


class NotFoundError(DedupError):
    """Candidate or patient id does not exist"""

    status_code = 404


class ConflictError(DedupError):
    """Invalid state transition, or a patient is locked by a concurrent merge or edit"""

    status_code = 409


class MergeFailure(DedupError):
    """
    A merge step failed and the whole merge was rolled back.

    ``step`` and ``category`` locate the point of failure; ``outcome`` is the
    failed MergeOutcome returned to the caller.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        step: str,
        category: Optional[str] = None,
        outcome: Any = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.step = step
        self.category = category
        self.outcome = outcome

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["step"] = self.step
        data["category"] = self.category
        if self.outcome is not None and hasattr(self.outcome, "model_dump"):
            data["outcome"] = self.outcome.model_dump(mode="json")
        return data
