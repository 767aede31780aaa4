from __future__ import annotations

from typing import Optional

from xlsa_web.config.ini_config import TierPolicy
from xlsa_web.domain.models import BALANCED, QUALITY, SPEED, CreditAccount

SIMPLE = "simple"
MODERATE = "moderate"
COMPLEX = "complex"

TIER_ALIASES = {
    "cost_effective": SPEED,
    "premium": QUALITY,
}

# Korean and English indicators; matched as substrings of the lower-cased request
COMPLEX_KEYWORDS = (
    "복잡한", "정밀한", "상세한", "분석", "검증",
    "complex", "detailed", "analyze", "validate",
    "여러", "다수", "전체", "multiple", "entire",
)

SIMPLE_KEYWORDS = (
    "간단한", "빠른", "기본",
    "simple", "quick", "basic",
    "하나", "단순", "single",
)

LONG_REQUEST_CHARS = 200
SHORT_REQUEST_CHARS = 50


def canonical_tier(tier: Optional[str]) -> Optional[str]:
    if tier is None:
        return None
    t = str(tier).strip().lower()
    if not t:
        return None
    return TIER_ALIASES.get(t, t)


def classify_request(text: str) -> str:
    text = text or ""
    lowered = text.lower()

    complex_count = sum(1 for word in COMPLEX_KEYWORDS if word in lowered)
    simple_count = sum(1 for word in SIMPLE_KEYWORDS if word in lowered)

    if len(text) > LONG_REQUEST_CHARS or complex_count > 1:
        return COMPLEX
    if simple_count > 0 or len(text) < SHORT_REQUEST_CHARS:
        return SIMPLE
    return MODERATE


def entitled_tiers(account: CreditAccount, policy: TierPolicy) -> tuple:
    """Tiers the account may use, cheapest first. Speed is always included."""
    if not policy.subscription_required:
        return (SPEED, BALANCED, QUALITY)

    tiers = [SPEED]
    if account.balance >= policy.balanced_min_balance:
        tiers.append(BALANCED)
    if account.balance >= policy.quality_min_balance and account.entitlement_tier in policy.quality_plans:
        tiers.append(QUALITY)
    return tuple(tiers)


def recommend_tier(
    file_size_mb: float,
    request_text: str,
    account: CreditAccount,
    policy: TierPolicy,
    requested_tier: Optional[str] = None,
) -> str:
    """
    Pure function of its arguments. Rules in order of precedence:

    1. an explicitly requested tier the account is entitled to
    2. small file + simple request + low balance -> speed
    3. pro/enterprise plan with enough balance and a complex request or large file -> quality
    4. enough balance for balanced -> balanced
    5. speed
    """
    entitled = entitled_tiers(account, policy)

    requested = canonical_tier(requested_tier)
    if requested and requested in entitled:
        return requested

    complexity = classify_request(request_text)
    balance = account.balance

    if file_size_mb < policy.small_file_mb and complexity == SIMPLE and balance < policy.speed_below_balance:
        return SPEED

    if (
        account.entitlement_tier in policy.quality_plans
        and balance >= policy.quality_recommend_balance
        and (complexity == COMPLEX or file_size_mb > policy.large_file_mb)
    ):
        return QUALITY

    if balance >= policy.balanced_min_balance:
        return BALANCED

    return SPEED
