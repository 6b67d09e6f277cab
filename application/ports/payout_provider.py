"""
Bulk payout provider port (PayPal classic NVP: MassPay / TransactionSearch).
"""
from __future__ import annotations

from typing import Mapping, Protocol, runtime_checkable


@runtime_checkable
class NvpClient(Protocol):
    """Posts a flat name/value form and returns the flat parsed response."""

    async def post(self, params: Mapping[str, str]) -> dict[str, str]: ...
