"""Settings package.

- :mod:`ExpenseSync.settings.lib` – Application paths and the validated settings.json API.
- :mod:`ExpenseSync.settings.locale` – Babel based number, currency and date helpers.
"""
