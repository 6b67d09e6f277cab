"""
Charge processor error taxonomy.

Processor adapters translate SDK / transport failures into these so callers
never depend on which processor raised.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class ChargeProcessorError(BusinessException):
    def __init__(
        self,
        message: str = "Charge processor error",
        *,
        code: int = PaymentCode.PROCESSOR_UNAVAILABLE,
        error_type: str = "ChargeProcessorError",
        processor: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        details = dict(details or {})
        if processor:
            details.setdefault("processor", processor)
        if error_code:
            details.setdefault("error_code", error_code)
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=details or None,
        )
        self.processor = processor
        self.error_code = error_code


class ChargeProcessorInvalidRequestError(ChargeProcessorError):
    """The request was rejected as invalid (bad card / account data, illegal state)."""

    def __init__(self, message: str = "Invalid request", **kwargs) -> None:
        kwargs.setdefault("code", PaymentCode.PROCESSOR_INVALID_REQUEST)
        kwargs.setdefault("error_type", "ChargeProcessorInvalidRequest")
        super().__init__(message, **kwargs)


class ChargeProcessorUnavailableError(ChargeProcessorError):
    """Network failure, timeout or a 5xx from the processor."""

    def __init__(self, message: str = "Charge processor unavailable", **kwargs) -> None:
        kwargs.setdefault("code", PaymentCode.PROCESSOR_UNAVAILABLE)
        kwargs.setdefault("error_type", "ChargeProcessorUnavailable")
        super().__init__(message, **kwargs)


class ChargeProcessorCardError(ChargeProcessorError):
    """The instrument was declined. ``message`` is safe to show to the buyer."""

    def __init__(
        self,
        error_code: Optional[str],
        message: str = "Your card was declined.",
        *,
        charge_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        kwargs.setdefault("code", PaymentCode.PROCESSOR_CARD_DECLINED)
        kwargs.setdefault("error_type", "ChargeProcessorCardError")
        details = dict(kwargs.pop("details", None) or {})
        if charge_id:
            details["charge_id"] = charge_id
        super().__init__(message, error_code=error_code, details=details, **kwargs)
        self.charge_id = charge_id


class ChargeProcessorAlreadyRefundedError(ChargeProcessorError):
    def __init__(self, message: str = "Charge was already refunded", **kwargs) -> None:
        kwargs.setdefault("code", PaymentCode.PROCESSOR_ALREADY_REFUNDED)
        kwargs.setdefault("error_type", "ChargeProcessorAlreadyRefunded")
        super().__init__(message, **kwargs)


class ChargeProcessorSignatureError(ChargeProcessorError):
    def __init__(self, message: str = "Invalid webhook signature", **kwargs) -> None:
        kwargs.setdefault("code", PaymentCode.PROCESSOR_SIGNATURE_ERROR)
        kwargs.setdefault("error_type", "ChargeProcessorSignatureError")
        super().__init__(message, **kwargs)


class UnknownChargeProcessorError(BusinessException):
    def __init__(self, charge_processor_id: Optional[str]):
        super().__init__(
            code=PaymentCode.PROCESSOR_UNKNOWN,
            message=f"Unknown charge processor: {charge_processor_id}",
            error_type="UnknownChargeProcessor",
            details={"charge_processor_id": charge_processor_id},
        )


class MerchantAccountMismatchError(BusinessException):
    def __init__(self, order_id: str, purchase_ids: list):
        super().__init__(
            code=PaymentCode.MERCHANT_ACCOUNT_MISMATCH,
            message=f"Error charging order {order_id}: different merchant accounts in purchases {purchase_ids}",
            error_type="MerchantAccountMismatch",
            details={"order_id": order_id, "purchase_ids": purchase_ids},
        )
