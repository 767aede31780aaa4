from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Iterable, Optional

from xlsa_web.config.ini_config import TierPolicy
from xlsa_web.domain.models import CreditAccount, TierProfile
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome
from xlsa_web.services.tier_policy import canonical_tier, entitled_tiers, recommend_tier

logger = logging.getLogger(__name__)


class ProviderRouter:
    """
    Maps a cost/quality tier to the configured AI backend profile.
    The profile table is fixed at construction.
    """

    def __init__(self, profiles: Iterable[TierProfile], policy: TierPolicy):
        self._profiles = MappingProxyType({p.tier_id: p for p in profiles})
        self.policy = policy

    @property
    def tiers(self) -> list[str]:
        return list(self._profiles)

    def resolve(self, tier: Optional[str]) -> Outcome[TierProfile]:
        profile = self._profiles.get(canonical_tier(tier) or "")
        if profile is None:
            return Err(AppError.invalid_tier(tier))
        return Ok(profile)

    def resolve_automatic(
        self,
        file_size_bytes: int,
        request_text: str,
        account: CreditAccount,
        requested_tier: Optional[str] = None,
    ) -> TierProfile:
        """Never fails: an unconfigured recommendation degrades to the cheapest configured entitled tier."""
        size_mb = file_size_bytes / (1024 * 1024)
        tier = recommend_tier(size_mb, request_text, account, self.policy, requested_tier)

        profile = self._profiles.get(tier)
        if profile is not None:
            return profile

        for candidate in entitled_tiers(account, self.policy):
            if candidate in self._profiles:
                logger.warning("Tier %s is not configured; degrading to %s", tier, candidate)
                return self._profiles[candidate]

        # the table is never empty in a valid configuration
        return next(iter(self._profiles.values()))
