"""
Typed domain errors. Translated to HTTP responses by handlers in factory.py.
"""

from typing import Optional


class TenderDeskError(Exception):
    """Base for errors that carry a stable code and an HTTP status."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or code or self.code)
        if code:
            self.code = code
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ── Entitlements ─────────────────────────────────────────────────────

class PlanError(TenderDeskError):
    """
    Entitlement denial. Expected control flow, not a fault.

    Codes: TRIAL_EXPIRED, FEATURE_NOT_AVAILABLE, PLAN_LIMIT_REACHED,
    TRIAL_LIMIT, TENDER_BRIEF_LIMIT, PREVIEW_LIMIT, UPGRADE_REQUIRED.
    """

    status_code = 403

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or PLAN_MESSAGES.get(code, code), code=code)


PLAN_MESSAGES = {
    "TRIAL_EXPIRED": "Your free trial has ended. Upgrade to continue.",
    "FEATURE_NOT_AVAILABLE": "This feature is not included in your plan.",
    "PLAN_LIMIT_REACHED": "You have used all AI actions for this month.",
    "TRIAL_LIMIT": "You have reached the free trial limit.",
    "TENDER_BRIEF_LIMIT": "The brief for this tender has already been generated on the trial.",
    "PREVIEW_LIMIT": "Upgrade to view the rest of this document.",
    "UPGRADE_REQUIRED": "Upgrade your plan to use this feature.",
}


# ── Resolution ───────────────────────────────────────────────────────

class ResolverError(TenderDeskError):
    """File reference could not be turned into an indexable document."""

    STATUS = {
        "NOT_FOUND": 404,
        "UNSUPPORTED_FILE_TYPE": 415,
        "FORBIDDEN": 403,
    }

    def __init__(self, code: str, message: str = ""):
        super().__init__(message, code=code)
        self.status_code = self.STATUS.get(code, 400)


class NotFoundError(TenderDeskError):
    status_code = 404
    code = "NOT_FOUND"


# ── Pipeline / retrieval ─────────────────────────────────────────────

class IndexNotReadyError(TenderDeskError):
    """Retrieval attempted on a document that is not READY."""

    status_code = 422
    code = "INDEX_NOT_READY"

    def __init__(self, status: Optional[str], message: str = ""):
        super().__init__(message or f"Document index is not ready (status={status})")
        self.status = status

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "status": self.status}


class InvalidTransitionError(TenderDeskError):
    """A document was asked to move to a stage it cannot reach from its current one."""

    status_code = 409
    code = "INVALID_TRANSITION"


class GenerationError(TenderDeskError):
    """Model output could not be turned into a usable answer."""

    status_code = 502
    code = "GENERATION_FAILED"
