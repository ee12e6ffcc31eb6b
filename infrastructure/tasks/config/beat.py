"""Celery beat schedule configuration.

Keeping the structure close to the Celery docs makes copying snippets
straightforward for new periodic jobs.
"""
from __future__ import annotations

CELERY_BEAT_SCHEDULE = {
    "expire-pending-intents": {
        "task": "settlement.expire_pending_intents",
        "schedule": 600,  # every 10 minutes
    },
}
