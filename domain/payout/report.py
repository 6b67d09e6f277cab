"""Per-item payout results accumulated into a batch report."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .entity import PayoutState


@dataclass
class PayoutResult:
    payment_id: Optional[int]
    user_id: int
    ok: bool
    state: PayoutState
    correlation_id: Optional[str] = None
    split: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class PayoutBatchReport:
    results: list[PayoutResult] = field(default_factory=list)

    def add(self, result: PayoutResult) -> None:
        self.results.append(result)

    def extend(self, results) -> None:
        self.results.extend(results)

    @property
    def succeeded(self) -> list[PayoutResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[PayoutResult]:
        return [r for r in self.results if not r.ok]

    def __len__(self) -> int:
        return len(self.results)

    def summary(self) -> dict:
        return {
            "payments": len(self.results),
            "succeeded": [r.payment_id for r in self.succeeded],
            "failed": {str(r.payment_id): r.errors for r in self.failed},
        }
