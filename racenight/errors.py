"""
Failure taxonomy for the checkout-to-order reconciliation pipeline.

Verification failures reject the request. Everything raised after a
confirmation event has been verified is a ReconcileError: it is logged
with enough context for an operator and the event is still
acknowledged.
"""
from __future__ import annotations
from typing import Any, Dict, Optional


# ----------------------------
# Verification (request is rejected)
# ----------------------------
class VerificationError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidMethod(VerificationError):
    status_code = 405


class InvalidSignature(VerificationError):
    status_code = 400


class InvalidPayload(VerificationError):
    status_code = 400


class Misconfigured(VerificationError):
    # the operator has to fix configuration; a 5xx makes the provider
    # redeliver once that happened
    status_code = 500


# ----------------------------
# Post-verification (logged, event is acknowledged)
# ----------------------------
class ReconcileError(Exception):
    def __init__(self, message: str, *, session_id: Optional[str] = None,
                 category: Optional[str] = None,
                 payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.session_id = session_id
        self.category = category
        self.payload = payload or {}

    def context(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "category": self.category,
            "payload": self.payload,
            "error": str(self),
        }


class ProviderError(ReconcileError):
    pass


class AllocationExhausted(ReconcileError):
    pass


class PersistenceFailure(ReconcileError):
    pass


class DuplicateSession(Exception):
    """An order for this provider session already exists."""

    def __init__(self, session_id: str, order_id: Optional[str] = None):
        super().__init__(f"session {session_id} already fulfilled")
        self.session_id = session_id
        self.order_id = order_id


class MetadataParseWarning(UserWarning):
    pass
