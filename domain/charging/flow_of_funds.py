"""
Flow of funds: the amounts recorded at each handoff money passes through.

issued    - what the buyer's issuer charged, in the buyer's currency
settled   - what the processor settled, in the settlement currency
gumroad   - what reached the platform's balance
merchant  - gross / net amounts on the merchant (connected) account, if any
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Amount:
    currency: str
    cents: int

    def negate(self) -> "Amount":
        return Amount(self.currency, -self.cents)


@dataclass(frozen=True)
class FlowOfFunds:
    issued_amount: Optional[Amount] = None
    settled_amount: Optional[Amount] = None
    gumroad_amount: Optional[Amount] = None
    merchant_account_gross_amount: Optional[Amount] = None
    merchant_account_net_amount: Optional[Amount] = None

    @classmethod
    def build_simple(cls, currency: str, cents: int) -> "FlowOfFunds":
        """Same amount at every handoff (no conversion, no merchant account)."""
        amount = Amount(currency, cents)
        return cls(issued_amount=amount, settled_amount=amount, gumroad_amount=amount)

    def to_dict(self) -> dict:
        out = {}
        for name in (
            "issued_amount",
            "settled_amount",
            "gumroad_amount",
            "merchant_account_gross_amount",
            "merchant_account_net_amount",
        ):
            value = getattr(self, name)
            if value is not None:
                out[name] = {"currency": value.currency, "cents": value.cents}
        return out
