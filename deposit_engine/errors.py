"""
Error Types Module

Typed exceptions raised by the deposit engine. Every error carries a
machine-readable code, an optional reason sub-code and structured details so
callers can tell "already posted" apart from "not yet eligible" apart from
"configuration broken" without parsing messages.
"""

from typing import Any, Dict, Optional


class DepositEngineError(Exception):
    """Base class for all deposit engine errors"""

    code: str = "deposit_engine_error"

    def __init__(self, message: str, reason: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.details = dict(details or {})
        if reason:
            self.details.setdefault('reason', reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'message': self.message,
            'details': self.details,
        }


class ValidationError(DepositEngineError):
    """Malformed input such as a bad quarter key or non-positive amount"""
    code = "validation_error"


class NotFoundError(DepositEngineError):
    """Missing party, account, product or batch"""
    code = "not_found"

    def __init__(self, entity: str, key: Any, message: Optional[str] = None):
        super().__init__(
            message or f"{entity} {key} not found",
            details={'entity': entity, 'key': str(key)}
        )
        self.entity = entity
        self.key = key


class StateConflictError(DepositEngineError):
    """The operation is well-formed but the current state does not allow it"""
    code = "state_conflict"


class ConfigurationError(DepositEngineError):
    """Product configuration is unusable even after self-healing"""
    code = "configuration_error"


# Reason sub-codes for StateConflictError
BATCH_ALREADY_POSTED = "batch_already_posted"
BATCH_ALREADY_REVERSED = "batch_already_reversed"
QUARTER_NOT_ENDED = "quarter_not_ended"
FD_NOT_MATURED = "fd_not_matured"
INSUFFICIENT_FUNDS = "insufficient_funds"
MINIMUM_BALANCE_BREACH = "minimum_balance_breach"
INACTIVE_PARTY = "inactive_party"
INACTIVE_ACCOUNT = "inactive_account"
INACTIVE_PRODUCT = "inactive_product"
DUPLICATE_ACCOUNT = "duplicate_account"
DUPLICATE_PARTY = "duplicate_party"
DUPLICATE_PRODUCT = "duplicate_product"
INELIGIBLE_PARTY = "ineligible_party"
INELIGIBLE_PRODUCT = "ineligible_product"
INVALID_PAYOUT_ACCOUNT = "invalid_payout_account"
NONZERO_BALANCE = "nonzero_balance"
CONCURRENT_UPDATE = "concurrent_update"
