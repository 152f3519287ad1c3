"""
ExpenseSync data package: analytics and export.

This package provides:

- :mod:`ExpenseSync.data.data` – Period filtering, per-category, monthly and daily totals, budget progress and summaries.
- :mod:`ExpenseSync.data.export` – CSV export of the mirrored expenses.
"""
