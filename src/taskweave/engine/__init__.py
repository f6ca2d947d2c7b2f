"""Task graph execution engine.

Why not Prefect / Airflow / Celery canvas?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Graphs here come from a decomposer at runtime, not from code, and every
sub-step result must land in the same transaction as the execution's
counters and token/cost totals. The engine also needs cooperative stop
requests that survive process restarts, in-place redo of one step with a
different provider/model, and planning cost kept apart from execution
cost. A workflow framework would still need all of that as custom state
on top of its own scheduler and storage.

For a single-machine, SQLite-backed tool, the loop in ``scheduler.py``
(ready set, failure propagation, stop check, bounded dispatch) over the
tables in ``taskweave.storage`` is the smaller moving part.
"""
