"""Core payment request and callback logic."""
from .exceptions import PaymentError, PaymentValidationError
from .orchestrator import PaymentRequestOrchestrator
from .reconciler import CallbackReconciler, ReconciliationOutcome, ReconciliationResult
from .token_cache import TokenCache

__all__ = [
    "CallbackReconciler",
    "PaymentError",
    "PaymentRequestOrchestrator",
    "PaymentValidationError",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "TokenCache",
]
