"""
Dynamic goal progress.

Goals linked to a data source take their current value from the user's
transactions or assets instead of a manually entered number.
"""

import calendar
from datetime import date
from typing import Dict, Iterable, List, Optional

from household_ledger.models import (
    Asset,
    Goal,
    GoalDataSource,
    GoalPeriodType,
    GoalProgress,
    Transaction,
    TransactionType,
)


def current_asset_total(assets: Iterable[Asset]) -> float:
    """Sum of the most recent value of each asset category."""
    latest: Dict[str, Asset] = {}
    for asset in assets:
        seen = latest.get(asset.category)
        if seen is None or asset.date > seen.date:
            latest[asset.category] = asset
    return sum(a.value for a in latest.values())


def _period_bounds(goal: Goal, today: date):
    if goal.period_type == GoalPeriodType.MONTHLY:
        last_day = calendar.monthrange(today.year, today.month)[1]
        return today.replace(day=1), today.replace(day=last_day)
    if goal.period_type == GoalPeriodType.YEARLY:
        return date(today.year, 1, 1), date(today.year, 12, 31)
    if goal.period_type == GoalPeriodType.CUSTOM and goal.period_start and goal.period_end:
        return date.fromisoformat(goal.period_start), date.fromisoformat(goal.period_end)
    return None


def _by_person(goal: Goal, transactions: List[Transaction]) -> List[Transaction]:
    if not goal.person_ids:
        return transactions
    people = set(goal.person_ids)
    return [t for t in transactions if t.person_id in people]


def current_value(
    goal: Goal,
    transactions: List[Transaction],
    assets: List[Asset],
    today: date,
) -> Optional[float]:
    """Value a dynamic goal currently stands at; the stored value for manual goals."""
    if goal.data_source is None:
        return goal.current_value

    if goal.data_source == GoalDataSource.ASSET:
        return current_asset_total(assets)

    selected = _by_person(goal, transactions)

    if goal.data_source == GoalDataSource.INCOME:
        selected = [t for t in selected if t.type == TransactionType.INCOME]
        bounds = _period_bounds(goal, today)
        if bounds is not None:
            start, end = bounds
            selected = [t for t in selected if start <= date.fromisoformat(t.date) <= end]
        return sum(t.amount for t in selected)

    return sum(t.amount if t.type == TransactionType.INCOME else -t.amount for t in selected)


def calculate_progress(goal: Goal) -> float:
    """
    Percentage (0-100) of a dynamic goal.

    Income goals compare the current value with the target directly. Asset
    and balance goals measure growth from the baseline towards the target;
    the ``evolution`` and ``remaining`` modes share that formula and differ
    only in how they are presented.
    """
    if goal.data_source is None or not goal.target_value:
        return 0.0

    current = goal.current_value or 0.0
    baseline = goal.baseline_value or 0.0
    target = goal.target_value

    if goal.data_source == GoalDataSource.INCOME:
        return min(100.0, current / target * 100)

    growth_needed = target - baseline
    if growth_needed <= 0:
        return 100.0 if current >= target else 0.0

    growth_achieved = current - baseline
    return max(0.0, min(100.0, growth_achieved / growth_needed * 100))


def enrich_goals(
    goals: Iterable[Goal],
    transactions: List[Transaction],
    assets: List[Asset],
    today: Optional[date] = None,
) -> List[GoalProgress]:
    today = today or date.today()
    enriched = []
    for goal in goals:
        updated = goal.model_copy(
            update={"current_value": current_value(goal, transactions, assets, today)}
        )
        enriched.append(GoalProgress(goal=updated, progress=calculate_progress(updated)))
    return enriched
