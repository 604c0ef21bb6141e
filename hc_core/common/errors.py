# hc_core/common/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class MatchingError(Exception):
    """
    Base for every error raised by the recommendation & matching core.

    `code` is stable and safe to surface to callers; `details` carries the
    structured context (field, operator, capability id, ...).
    """
    code = "matching_error"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ConfigurationError(MatchingError):
    """
    Malformed rule tree, unknown operator/field, or a violated template
    version invariant. Raised at write/admin time; must never be persisted.
    """
    code = "configuration_error"


class EvaluationFault(MatchingError):
    """
    A single candidate could not be evaluated (e.g. depth ceiling exceeded).
    Matchers catch this per candidate and flag it in the trace.
    """
    code = "evaluation_fault"


class CapacityExhausted(MatchingError):
    """
    The compare-and-update on provider capacity lost (or would overbook).
    Callers may retry against a fresh ranking.
    """
    code = "capacity_exhausted"
    retryable = True


class OutcomeAlreadyRecorded(MatchingError):
    code = "outcome_already_recorded"


class ImmutableRecordError(MatchingError):
    code = "immutable_record"
