"""
Tasseo Engine - Business Services
"""

from .delivery import deliver_text, split_message
from .ledger import CreditLedger
from .sessions import SessionService, remaining_facets
from .validation_gate import ValidationGate, should_reject

__all__ = [
    "CreditLedger",
    "SessionService",
    "ValidationGate",
    "deliver_text",
    "remaining_facets",
    "should_reject",
    "split_message",
]
