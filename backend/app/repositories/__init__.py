"""
Repositories package — data-access layer.

Each repository file handles all DB operations for one domain area.
Repositories do NOT handle HTTP concerns or engine decisions beyond
basic data integrity.

Convention:
    - One file per aggregate root (runs.py, executions.py, reconciliation.py, ...)
    - All functions accept `AsyncSession` as the first argument
    - Use `flush()` internally; commit/rollback is owned by the caller
      (`ExecutionStateStore`)
"""
