"""
Features package — each sub-package encapsulates a self-contained feature.

Convention:
  features/<feature_name>/
    __init__.py      — public API re-exports
    models.py        — data models specific to this feature
    queue.py         — runtime scheduling (task_queue)
    aggregator.py    — derived state (metrics)
    ...              — any other feature-specific modules
"""
