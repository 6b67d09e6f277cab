"""Payout error taxonomy."""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PayoutError(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        code: int = PaymentCode.PAYOUT_ERROR,
        error_type: str = "PayoutError",
        payment_id: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> None:
        details = dict(details or {})
        if payment_id is not None:
            details.setdefault("payment_id", payment_id)
        super().__init__(code=code, message=message, error_type=error_type, details=details or None)
        self.payment_id = payment_id


class PayoutTransportError(PayoutError):
    """The payout provider could not be reached or answered with garbage."""

    def __init__(self, message: str = "Payout provider unavailable", **kwargs) -> None:
        kwargs.setdefault("code", PaymentCode.PAYOUT_TRANSPORT_ERROR)
        kwargs.setdefault("error_type", "PayoutTransportError")
        super().__init__(message, **kwargs)


class PayoutReconciliationError(PayoutError):
    """Provider data cannot be matched to a single payout state."""

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("code", PaymentCode.PAYOUT_RECONCILIATION_ERROR)
        kwargs.setdefault("error_type", "PayoutReconciliationError")
        super().__init__(message, **kwargs)
