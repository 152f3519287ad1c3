"""Export of mirrored expenses.

Only CSV is supported. The output has the header ``Date,Description,Category,Amount``,
one row per expense in the given order, dates as UTC ``YYYY-MM-DD``, amounts with two
decimals and ``\\n`` line endings. Fields are joined without quoting, so commas in
descriptions are replaced with semicolons.
"""
import logging
from typing import Sequence

import pandas as pd

from ..core.model import Expense, to_datetime

EXPORT_COLUMNS = ['Date', 'Description', 'Category', 'Amount']

SUPPORTED_FORMATS = ('csv',)


def to_frame(expenses: Sequence[Expense]) -> pd.DataFrame:
    """Return the export rows of the expenses as a DataFrame."""
    rows = [
        {
            'Date': to_datetime(e.date).strftime('%Y-%m-%d'),
            'Description': e.description.replace(',', ';'),
            'Category': e.category.name,
            'Amount': float(e.amount),
        }
        for e in expenses
    ]
    return pd.DataFrame(rows, columns=EXPORT_COLUMNS)


def to_csv(expenses: Sequence[Expense]) -> str:
    """Render the expenses as CSV text."""
    df = to_frame(expenses)
    lines = [','.join(EXPORT_COLUMNS)]
    for date, description, category, amount in df.itertuples(index=False, name=None):
        lines.append(f'{date},{description},{category},{amount:.2f}')
    return '\n'.join(lines) + '\n'


def export_data(expenses: Sequence[Expense], fmt: str = 'csv') -> str:
    """Export the expenses in the requested format.

    Raises:
        ValueError: If the format is not supported.
    """
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f'Invalid export format "{fmt}". Supported formats: {", ".join(SUPPORTED_FORMATS)}')

    text = to_csv(expenses)
    logging.info(f'Exported {len(expenses)} expense(s) as {fmt}')
    return text
