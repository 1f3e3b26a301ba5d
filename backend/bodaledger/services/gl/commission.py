"""Commission distribution calculator.

Commission owed by the underwriter is 9% of the *pure* premium (the premium
net of levies, 3500/3565 of what riders paid).  It is distributed as:

- Platform O&M: 10000 cents per full-term rider
- Joint mobilization: 10000 cents per full-term rider, split KBA / Robs
- Joint portion: 400 cents per full-term rider, split KBA / Robs
- The remainder: split three ways (platform profit, KBA, Robs)

All arithmetic is integer cents.  Rounding residue always lands on the
platform profit share so the four shares sum to the total commission exactly.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bodaledger.models.gl import (
    GLAccount,
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    PAYMENT_RECEIPT_TYPES,
)
from bodaledger.models.settlement import PartnerType
from bodaledger.money import round_div, split_two, to_major
from bodaledger.services.gl.errors import ValidationFailure
from bodaledger.services.gl.posting_rules import AccountCode

logger = logging.getLogger(__name__)

PURE_PREMIUM_NUMERATOR = 3500
PURE_PREMIUM_DENOMINATOR = 3565
COMMISSION_RATE_PERCENT = 9
PLATFORM_OM_PER_RIDER = 10_000
JOINT_MOBILIZATION_PER_RIDER = 10_000
JOINT_PORTION_PER_RIDER = 400
FULL_TERM_DAYS = 31  # Day 1 deposit + 30 daily payments
ROUNDING_TOLERANCE = 1


def pure_premium_of(total_premium: int) -> int:
    return round_div(total_premium * PURE_PREMIUM_NUMERATOR, PURE_PREMIUM_DENOMINATOR)


def commission_of(pure_premium: int) -> int:
    return round_div(pure_premium * COMMISSION_RATE_PERCENT, 100)


@dataclass
class RiderPremium:
    """Premium a rider paid over the period."""
    rider_id: str
    total_premium: int
    days_completed: int = 0
    is_full_term: bool = False


@dataclass
class CommissionDistribution:
    platform_om: int
    platform_profit: int
    kba: int
    robs: int

    def total(self) -> int:
        return self.platform_om + self.platform_profit + self.kba + self.robs


@dataclass
class CommissionBreakdown:
    kba_mobilization: int
    robs_mobilization: int
    kba_joint_portion: int
    robs_joint_portion: int
    profit_share_per_party: int
    remaining_after_fixed: int


@dataclass
class CommissionResult:
    period_start: date
    period_end: date
    total_premium: int
    pure_premium: int
    total_commission: int
    distribution: CommissionDistribution
    breakdown: CommissionBreakdown
    full_term_riders: int
    partial_riders: int
    total_riders: int
    rounding_adjustment: int = 0

    def validate(self) -> list[str]:
        """Re-derive each figure; return discrepancies (empty when consistent)."""
        errors: list[str] = []

        distribution_total = self.distribution.total()
        if distribution_total != self.total_commission:
            errors.append(
                f"Distribution total ({distribution_total}) does not match "
                f"total commission ({self.total_commission})"
            )

        expected_pure = pure_premium_of(self.total_premium)
        if abs(self.pure_premium - expected_pure) > ROUNDING_TOLERANCE:
            errors.append(
                f"Pure premium ({self.pure_premium}) does not match expected ({expected_pure})"
            )

        expected_commission = commission_of(self.pure_premium)
        if abs(self.total_commission - expected_commission) > ROUNDING_TOLERANCE:
            errors.append(
                f"Total commission ({self.total_commission}) does not match "
                f"expected ({expected_commission})"
            )

        if self.full_term_riders + self.partial_riders != self.total_riders:
            errors.append(
                f"Rider counts don't add up: {self.full_term_riders} + "
                f"{self.partial_riders} != {self.total_riders}"
            )

        b = self.breakdown
        joint = (JOINT_MOBILIZATION_PER_RIDER + JOINT_PORTION_PER_RIDER) * self.full_term_riders
        if b.kba_mobilization + b.robs_mobilization + b.kba_joint_portion + b.robs_joint_portion != joint:
            errors.append("Joint components do not add up to the per-rider amounts")

        return errors

    def to_dict(self) -> dict:
        d = self.distribution
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_premium": self.total_premium,
            "pure_premium": self.pure_premium,
            "total_commission": self.total_commission,
            "distribution": {
                "platform_om": d.platform_om,
                "platform_profit": d.platform_profit,
                "kba": d.kba,
                "robs": d.robs,
            },
            "full_term_riders": self.full_term_riders,
            "partial_riders": self.partial_riders,
            "total_riders": self.total_riders,
            "rounding_adjustment": self.rounding_adjustment,
        }


@dataclass
class PartnerCommissionSummary:
    partner_type: PartnerType
    partner_name: str
    commission_amount: int
    components: list[dict] = field(default_factory=list)


def calculate_commission(
    riders: list[RiderPremium], period_start: date, period_end: date
) -> CommissionResult:
    """Compute the period's commission and its four-way distribution.

    Raises ``ValidationFailure`` (with the discrepancy list) if the result
    fails its own consistency check; nothing is returned half-valid.
    """
    total_premium = sum(r.total_premium for r in riders)
    pure_premium = pure_premium_of(total_premium)
    total_commission = commission_of(pure_premium)

    full_term = sum(1 for r in riders if r.is_full_term)
    partial = len(riders) - full_term

    platform_om = PLATFORM_OM_PER_RIDER * full_term
    joint_mobilization = JOINT_MOBILIZATION_PER_RIDER * full_term
    joint_portion = JOINT_PORTION_PER_RIDER * full_term

    kba_mobilization, robs_mobilization = split_two(joint_mobilization)
    kba_joint, robs_joint = split_two(joint_portion)

    remaining = total_commission - platform_om - joint_mobilization - joint_portion
    profit_share = round_div(remaining, 3)

    distribution = CommissionDistribution(
        platform_om=platform_om,
        platform_profit=profit_share,
        kba=kba_mobilization + kba_joint + profit_share,
        robs=robs_mobilization + robs_joint + profit_share,
    )
    adjustment = total_commission - distribution.total()
    if adjustment:
        distribution.platform_profit += adjustment
        logger.debug("Adjusted platform profit by %d cents for rounding", adjustment)

    result = CommissionResult(
        period_start=period_start,
        period_end=period_end,
        total_premium=total_premium,
        pure_premium=pure_premium,
        total_commission=total_commission,
        distribution=distribution,
        breakdown=CommissionBreakdown(
            kba_mobilization=kba_mobilization,
            robs_mobilization=robs_mobilization,
            kba_joint_portion=kba_joint,
            robs_joint_portion=robs_joint,
            profit_share_per_party=profit_share,
            remaining_after_fixed=remaining,
        ),
        full_term_riders=full_term,
        partial_riders=partial,
        total_riders=len(riders),
        rounding_adjustment=adjustment,
    )

    errors = result.validate()
    if errors:
        logger.error("Commission self-check failed for %s..%s: %s", period_start, period_end, errors)
        raise ValidationFailure("Commission calculation failed validation", errors)

    if remaining < 0:
        logger.warning(
            "Commission %s does not cover fixed components for %d full-term riders",
            to_major(total_commission), full_term,
        )

    logger.info(
        "Calculated commission: total=%s, full_term=%d, partial=%d",
        to_major(total_commission), full_term, partial,
    )
    return result


def partner_commission_summaries(result: CommissionResult) -> list[PartnerCommissionSummary]:
    d = result.distribution
    b = result.breakdown
    return [
        PartnerCommissionSummary(
            partner_type=PartnerType.ATRONACH,
            partner_name="Atronach K Ltd (Platform)",
            commission_amount=d.platform_om + d.platform_profit,
            components=[
                {"name": "O&M Fee", "amount": d.platform_om},
                {"name": "Profit Share", "amount": d.platform_profit},
            ],
        ),
        PartnerCommissionSummary(
            partner_type=PartnerType.KBA,
            partner_name="Kenya Bodaboda Association",
            commission_amount=d.kba,
            components=[
                {"name": "Mobilization Fee", "amount": b.kba_mobilization},
                {"name": "Joint Portion", "amount": b.kba_joint_portion},
                {"name": "Profit Share", "amount": b.profit_share_per_party},
            ],
        ),
        PartnerCommissionSummary(
            partner_type=PartnerType.ROBS_INSURANCE,
            partner_name="Robs Insurance Agency",
            commission_amount=d.robs,
            components=[
                {"name": "Mobilization Fee", "amount": b.robs_mobilization},
                {"name": "Joint Portion", "amount": b.robs_joint_portion},
                {"name": "Profit Share", "amount": b.profit_share_per_party},
            ],
        ),
    ]


# ---------------------------------------------------------------------------
# Period data
# ---------------------------------------------------------------------------

async def rider_premiums_for_period(
    db: AsyncSession, period_start: date, period_end: date
) -> list[RiderPremium]:
    """Net premium per rider from posted receipts and refunds in the period."""
    premium_account = await db.execute(
        select(GLAccount.id).where(
            GLAccount.account_code == AccountCode.PREMIUM_PAYABLE_DEFINITE
        )
    )
    premium_account_id = premium_account.scalar_one_or_none()
    if premium_account_id is None:
        return []

    result = await db.execute(
        select(JournalEntry)
        .where(
            JournalEntry.entry_type.in_(
                [*PAYMENT_RECEIPT_TYPES, JournalEntryType.REFUND_INITIATION]
            ),
            JournalEntry.status == JournalEntryStatus.POSTED,
            JournalEntry.rider_id.is_not(None),
            JournalEntry.entry_date >= period_start,
            JournalEntry.entry_date <= period_end,
        )
        .options(selectinload(JournalEntry.lines))
    )

    premiums: dict[str, int] = defaultdict(int)
    days: dict[str, int] = defaultdict(int)
    for entry in result.scalars().all():
        sign = -1 if entry.entry_type == JournalEntryType.REFUND_INITIATION else 1
        for ln in entry.lines:
            if ln.gl_account_id == premium_account_id:
                premiums[entry.rider_id] += ln.credit_amount - ln.debit_amount
        days[entry.rider_id] += sign * int((entry.metadata_ or {}).get("days_count", 1))

    return [
        RiderPremium(
            rider_id=rider_id,
            total_premium=total,
            days_completed=days[rider_id],
            is_full_term=days[rider_id] >= FULL_TERM_DAYS,
        )
        for rider_id, total in sorted(premiums.items())
        if total > 0
    ]
