"""Celery beat schedule configuration.

Keeping the structure close to the Celery docs makes copying snippets
straightforward for new periodic jobs.
"""
from __future__ import annotations

CELERY_BEAT_SCHEDULE = {
    "payments-reconcile-stale": {
        "task": "payments.reconcile_stale",
        "schedule": 600,  # every 10 minutes
    },
}
