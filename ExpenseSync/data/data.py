"""Spending analytics over mirrored expenses.

All functions are pure: they take the entities read from the
:class:`~ExpenseSync.core.mirror.LocalMirrorStore` and return pandas objects or plain
values. Dates are handled in UTC.
"""
import dataclasses
import datetime
import enum
import logging
from typing import Dict, Optional, Sequence, Tuple

import pandas as pd

from ..core.model import Budget, Expense, now, to_datetime
from ..settings import locale

FRAME_COLUMNS = ['id', 'date', 'amount', 'description', 'category_id', 'category', 'color']


class Period(enum.StrEnum):
    Week = 'week'
    Month = 'month'
    Year = 'year'
    All = 'all'
    Custom = 'custom'


def to_frame(expenses: Sequence[Expense]) -> pd.DataFrame:
    """Return the expenses as a DataFrame with one row per expense.

    Args:
        expenses: Expenses, typically from the local mirror.

    Returns:
        pd.DataFrame: Columns ``id``, ``date`` (UTC), ``amount``, ``description``,
        ``category_id``, ``category`` and ``color``.
    """
    rows = [
        {
            'id': e.id,
            'date': to_datetime(e.date),
            'amount': float(e.amount),
            'description': e.description,
            'category_id': e.category.id,
            'category': e.category.name,
            'color': e.category.color,
        }
        for e in expenses
    ]
    df = pd.DataFrame(rows, columns=FRAME_COLUMNS)
    df['date'] = pd.to_datetime(df['date'], utc=True)
    df['amount'] = pd.to_numeric(df['amount'], errors='coerce').fillna(0.0).astype(float)
    return df


def period_range(period: Period | str, start: Optional[datetime.datetime] = None,
                 end: Optional[datetime.datetime] = None,
                 today: Optional[datetime.datetime] = None) -> Tuple[Optional[pd.Timestamp], Optional[pd.Timestamp]]:
    """Resolve a period to an inclusive (start, end) range.

    ``week``, ``month`` and ``year`` reach back one week, month or year from today and
    are open-ended. ``custom`` uses the explicit start and end. ``all`` is unbounded.

    Raises:
        ValueError: If the period is unknown, or custom bounds are missing.
    """
    period = Period(period)
    today = pd.Timestamp(to_datetime(today or now()))

    if period == Period.Week:
        return today - pd.DateOffset(weeks=1), None
    if period == Period.Month:
        return today - pd.DateOffset(months=1), None
    if period == Period.Year:
        return today - pd.DateOffset(years=1), None
    if period == Period.Custom:
        if start is None or end is None:
            raise ValueError('A custom period needs both a start and an end date.')
        return pd.Timestamp(to_datetime(start)), pd.Timestamp(to_datetime(end))
    return None, None


def filter_period(df: pd.DataFrame, period: Period | str = Period.Month,
                  start: Optional[datetime.datetime] = None, end: Optional[datetime.datetime] = None,
                  today: Optional[datetime.datetime] = None) -> pd.DataFrame:
    """Return the rows of an expense frame that fall within the period."""
    lower, upper = period_range(period, start=start, end=end, today=today)
    mask = pd.Series(True, index=df.index)
    if lower is not None:
        mask &= df['date'] >= lower
    if upper is not None:
        mask &= df['date'] <= upper
    return df[mask]


def category_totals(df: pd.DataFrame) -> pd.DataFrame:
    """Sum amounts per category, largest first.

    Returns:
        pd.DataFrame: Columns ``category_id``, ``category``, ``color``, ``total`` and ``count``.
    """
    if df.empty:
        return pd.DataFrame(columns=['category_id', 'category', 'color', 'total', 'count'])

    grouped = df.groupby('category_id', sort=False).agg(
        category=('category', 'first'),
        color=('color', 'first'),
        total=('amount', 'sum'),
        count=('amount', 'size'),
    )
    return grouped.reset_index().sort_values('total', ascending=False).reset_index(drop=True)


def monthly_totals(df: pd.DataFrame, months: int = 6, today: Optional[datetime.datetime] = None) -> pd.Series:
    """Sum amounts per calendar month for the last ``months`` months, including the current one.

    Returns:
        pd.Series: Totals indexed by ``YYYY-MM``, oldest first. Months without expenses are zero.
    """
    today = to_datetime(today or now())
    index = pd.period_range(end=pd.Period(today.strftime('%Y-%m'), freq='M'), periods=months, freq='M')
    if df.empty:
        return pd.Series(0.0, index=index.strftime('%Y-%m'), dtype=float)

    periods = df['date'].dt.tz_convert(None).dt.to_period('M')
    totals = df.groupby(periods)['amount'].sum().reindex(index, fill_value=0.0)
    totals.index = totals.index.strftime('%Y-%m')
    return totals.astype(float)


def daily_totals(df: pd.DataFrame, days: int = 7, today: Optional[datetime.datetime] = None) -> pd.Series:
    """Sum amounts per day for the last ``days`` days, including today.

    Returns:
        pd.Series: Totals indexed by ``YYYY-MM-DD``, oldest first. Days without expenses are zero.
    """
    today = to_datetime(today or now())
    index = [(today - datetime.timedelta(days=i)).strftime('%Y-%m-%d') for i in range(days - 1, -1, -1)]
    if df.empty:
        return pd.Series(0.0, index=index, dtype=float)

    labels = df['date'].dt.strftime('%Y-%m-%d')
    totals = df.groupby(labels)['amount'].sum().reindex(index, fill_value=0.0)
    return totals.astype(float)


@dataclasses.dataclass(frozen=True)
class BudgetProgress:
    budget: Budget
    spent: float

    @property
    def remaining(self) -> float:
        return self.budget.amount - self.spent

    @property
    def percentage(self) -> float:
        """Spent share of the budget, capped at 100."""
        if self.budget.amount <= 0:
            return 0.0
        return min(100.0, self.spent / self.budget.amount * 100.0)

    @property
    def exceeded(self) -> bool:
        return self.spent > self.budget.amount


def budget_progress(expenses: Sequence[Expense], budgets: Sequence[Budget],
                    today: Optional[datetime.datetime] = None,
                    category_id: Optional[str] = None) -> Optional[BudgetProgress]:
    """Compare this month's spending against the month's budget.

    Args:
        expenses: All expenses.
        budgets: All budgets.
        today: Reference date, defaults to now.
        category_id: Use the budget of this category instead of the overall budget.

    Returns:
        The progress, or None if no budget is set for the current month.
    """
    today = to_datetime(today or now())
    budget = next(
        (b for b in budgets if b.month == today.month and b.year == today.year and b.category_id == category_id),
        None
    )
    if budget is None:
        return None

    df = to_frame(expenses)
    in_month = (df['date'].dt.year == today.year) & (df['date'].dt.month == today.month)
    if category_id is not None:
        in_month &= df['category_id'] == category_id
    return BudgetProgress(budget=budget, spent=float(df.loc[in_month, 'amount'].sum()))


@dataclasses.dataclass(frozen=True)
class Summary:
    """Totals of the expenses in a period."""
    total: float
    average: float
    maximum: float
    count: int
    locale: str = 'en_US'

    def formatted(self) -> Dict[str, str]:
        """Return the amounts formatted as currency for the summary's locale."""
        return {
            'total': locale.format_currency_value(self.total, self.locale),
            'average': locale.format_currency_value(self.average, self.locale),
            'maximum': locale.format_currency_value(self.maximum, self.locale),
            'count': str(self.count),
        }


def summarize(expenses: Sequence[Expense], period: Period | str = Period.Month,
              start: Optional[datetime.datetime] = None, end: Optional[datetime.datetime] = None,
              locale_code: str = 'en_US', today: Optional[datetime.datetime] = None) -> Summary:
    """Summarize the expenses that fall within a period."""
    df = filter_period(to_frame(expenses), period, start=start, end=end, today=today)
    if df.empty:
        logging.debug(f'No expenses in period "{period}"')
        return Summary(total=0.0, average=0.0, maximum=0.0, count=0, locale=locale_code)

    return Summary(
        total=float(df['amount'].sum()),
        average=float(df['amount'].mean()),
        maximum=float(df['amount'].max()),
        count=int(len(df)),
        locale=locale_code,
    )
