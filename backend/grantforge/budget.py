"""Budget consistency enforcement.

Generator-written figures are approximate. A single deterministic pass scales
the top-level items onto the caller's target total and then fixes every
nested level by moving the whole difference onto its largest element, so each
correction stays traceable to one line item.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Sequence, TypeVar

from grantforge.amounts import extract_numeric_budget
from grantforge.config import settings
from grantforge.proposal import Activity, BreakdownEntry, BudgetItem, PartnerAllocation, ProposalDocument

logger = logging.getLogger("grantforge.budget")

SYNTHESIZED_ITEM_LABEL = "Project Implementation"
SYNTHESIZED_ITEM_DESCRIPTION = "Total project implementation costs as per target budget."
SYNTHESIZED_BREAKDOWN_LABEL = "Operational Costs"

T = TypeVar("T")


@dataclass(frozen=True)
class BudgetAdjustment:
    scope: str
    label: str
    delta: int

    def to_dict(self) -> dict[str, object]:
        return {"scope": self.scope, "label": self.label, "delta": self.delta}


@dataclass
class BudgetReport:
    target: int
    original_total: int
    scale_factor: float | None = None
    synthesized: bool = False
    adjustments: list[BudgetAdjustment] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "target": self.target,
            "original_total": self.original_total,
            "scale_factor": self.scale_factor,
            "synthesized": self.synthesized,
            "adjustments": [adjustment.to_dict() for adjustment in self.adjustments],
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def resolve_target_budget(*texts: str | None, fallback: int | None = None) -> int:
    """First money figure found in ``texts``; ``fallback`` or the configured default otherwise.

    Parsed figures below ``min_target_budget`` are treated as noise (durations,
    partner counts) and skipped. ``fallback`` is a caller-supplied target and is
    used as given.
    """
    for text in texts:
        value = extract_numeric_budget(text)
        if value is None or value < settings.min_target_budget:
            continue
        return value
    if fallback is not None and fallback >= 0:
        return fallback
    return settings.default_target_budget


def _largest(entries: Sequence[T], value_of: Callable[[T], int]) -> T:
    # max() keeps the first of equal values, which keeps the choice deterministic.
    return max(entries, key=value_of)


def _scale_items(items: list[BudgetItem], target: int, current_sum: int, report: BudgetReport) -> None:
    scale = target / current_sum
    report.scale_factor = round(scale, 6)
    running_total = 0
    for index, item in enumerate(items):
        previous = item.cost
        if index == len(items) - 1:
            item.cost = target - running_total
        else:
            item.cost = round_half_up(item.cost * scale)
            running_total += item.cost
        if item.cost != previous:
            report.adjustments.append(BudgetAdjustment("budget_item", item.label, item.cost - previous))


def _synthesize_item(document: ProposalDocument, target: int) -> BudgetItem:
    allocations: list[PartnerAllocation] = []
    partners = [partner for partner in document.partners if partner.name.strip()]
    if partners:
        share, remainder = divmod(target, len(partners))
        allocations = [
            PartnerAllocation(partner=partner.name, amount=share + (remainder if index == 0 else 0))
            for index, partner in enumerate(partners)
        ]
    return BudgetItem(
        label=SYNTHESIZED_ITEM_LABEL,
        cost=target,
        description=SYNTHESIZED_ITEM_DESCRIPTION,
        breakdown=[BreakdownEntry(subItem=SYNTHESIZED_BREAKDOWN_LABEL, quantity=1, unitCost=target, total=target)],
        partnerAllocations=allocations,
    )


def _settle_item(item: BudgetItem, report: BudgetReport) -> None:
    if item.breakdown:
        difference = item.cost - sum(entry.total for entry in item.breakdown)
        if difference:
            entry = _largest(item.breakdown, lambda candidate: candidate.total)
            entry.total += difference
            report.adjustments.append(BudgetAdjustment("breakdown", f"{item.label} / {entry.subItem}", difference))

    if item.partnerAllocations:
        difference = item.cost - sum(allocation.amount for allocation in item.partnerAllocations)
        if difference:
            allocation = _largest(item.partnerAllocations, lambda candidate: candidate.amount)
            allocation.amount += difference
            report.adjustments.append(
                BudgetAdjustment("partner_allocation", f"{item.label} / {allocation.partner}", difference)
            )


def _settle_activities(document: ProposalDocument, target: int, report: BudgetReport) -> None:
    activities: list[Activity] = [activity for package in document.workPackages for activity in package.activities]
    if not activities:
        return
    difference = target - sum(activity.estimatedBudget for activity in activities)
    if not difference:
        return
    activity = _largest(activities, lambda candidate: candidate.estimatedBudget)
    activity.estimatedBudget += difference
    report.adjustments.append(BudgetAdjustment("activity", activity.name, difference))


def enforce_budget(document: ProposalDocument, target: int) -> BudgetReport:
    """Establish every budget invariant on ``document`` in place. Never raises."""
    target = max(0, int(target))
    items = document.budget
    current_sum = sum(item.cost for item in items)
    report = BudgetReport(target=target, original_total=current_sum)

    if current_sum > 0 and current_sum != target:
        _scale_items(items, target, current_sum, report)
    elif current_sum <= 0 and target > 0:
        document.budget = [_synthesize_item(document, target)]
        report.synthesized = True
        report.adjustments.append(BudgetAdjustment("budget_item", SYNTHESIZED_ITEM_LABEL, target))
    elif items and current_sum != target:
        # Only reachable with a zero target over items that net out negative.
        last = items[-1]
        difference = target - current_sum
        last.cost += difference
        report.adjustments.append(BudgetAdjustment("budget_item", last.label, difference))

    for item in document.budget:
        _settle_item(item, report)
    _settle_activities(document, target, report)

    logger.info(
        "budget_rebalanced",
        extra={
            "event": "budget_rebalanced",
            "target": target,
            "original_total": current_sum,
            "scale_factor": report.scale_factor,
            "synthesized": report.synthesized,
            "adjustment_count": len(report.adjustments),
        },
    )
    return report
