"""Domain level business exceptions shared by domain and infrastructure.

The core layer only maps these to HTTP responses; the domain never imports core.
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """Base class of every business error."""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class NotFoundException(BusinessException):
    def __init__(self, resource: str, identifier: object):
        super().__init__(
            code=BusinessCode.NOT_FOUND,
            message=f"{resource} not found",
            error_type="NotFound",
            details={"resource": resource, "id": str(identifier)},
        )


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )
