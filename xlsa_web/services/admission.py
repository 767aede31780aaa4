from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

from xlsa_web.config.ini_config import CostTable
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome
from xlsa_web.ports import CreditLedger
from xlsa_web.services.tier_policy import canonical_tier

logger = logging.getLogger(__name__)


@dataclass
class Admission:
    """
    A passed admission check: `reserved` credits are held for the owner until
    settle/release. Either one closes it: a later release is a no-op and a
    second settle raises.
    """
    owner_id: int
    tier: str
    reserved: int
    closed: bool = field(default=False, compare=False)


@dataclass
class AdmissionController:
    """
    Credit admission control.

    The estimate (checked before work) and the billed cost (charged after
    work) are separate formulas and can differ; see billed_cost().
    """
    costs: CostTable
    ledger: CreditLedger

    def _base(self, tier: str) -> int:
        return self.costs.base_cost[canonical_tier(tier)]

    def estimate_cost(self, tier: str, file_size_bytes: int, request_text: str = "") -> int:
        size_mb = file_size_bytes / (1024 * 1024)
        size_cost = math.ceil(size_mb * self.costs.credits_per_mb)
        complexity_cost = self.costs.long_request_surcharge if len(request_text or "") > self.costs.long_request_chars else 0
        return self._base(tier) + size_cost + complexity_cost

    def billed_cost(self, tier: str, units: int) -> int:
        credits = self._base(tier) + max(units, 0) * self.costs.per_unit_surcharge
        return min(credits, self.costs.ceiling[canonical_tier(tier)])

    def check(self, tier: str, owner_id: int, file_size_bytes: int, request_text: str = "") -> Outcome[Admission]:
        if canonical_tier(tier) not in self.costs.base_cost:
            return Err(AppError.invalid_tier(tier))

        account = self.ledger.get(owner_id)
        if account is None:
            return Err(AppError.not_found("Account", owner_id))

        required = self.estimate_cost(tier, file_size_bytes, request_text)
        if account.balance < required:
            return Err(AppError.insufficient_credits(required=required, available=account.balance))

        # Another request from the same owner may hold credits already
        if not self.ledger.reserve(owner_id, required):
            return Err(AppError.insufficient_credits(required=required, available=self.ledger.available(owner_id)))

        logger.info("Admitted owner=%s tier=%s reserved=%s", owner_id, tier, required)
        return Ok(Admission(owner_id=owner_id, tier=canonical_tier(tier), reserved=required))

    def settle(self, admission: Admission, units: int) -> int:
        """Debit the billed cost for successful work and drop the hold. Returns credits charged."""
        if admission.closed:
            raise ValueError(f"Admission for owner {admission.owner_id} is already closed")
        admission.closed = True
        billed = self.billed_cost(admission.tier, units)
        charged = self.ledger.settle(admission.owner_id, admission.reserved, billed)
        if charged != billed:
            logger.warning(
                "Owner %s could not cover billed cost %s; charged reserved %s instead",
                admission.owner_id, billed, charged,
            )
        return charged

    def release(self, admission: Admission) -> None:
        """The gated work failed: drop the hold without charging."""
        if admission.closed:
            return
        admission.closed = True
        self.ledger.release(admission.owner_id, admission.reserved)
        logger.info("Released %s credits held for owner=%s", admission.reserved, admission.owner_id)
