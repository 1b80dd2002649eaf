"""budget_tracker: personal finance tracking on a versioned local store.

Modules
-------
- ``models``: entity models and enums
- ``taxonomy``, ``validation``: category paths and transaction rules
- ``metrics``, ``budgets``, ``summary``, ``trends``: read-side computations
- ``migrations``, ``store``: schema generations and persistence
- ``state``: application state with ``load_data()``
- ``categorize``, ``ingest``, ``workflows``: CSV import and classification
"""
