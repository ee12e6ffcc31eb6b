"""Celery task infrastructure package.

Importing this module wires together the configured Celery app and the
dispatcher adapter that the application layer depends upon.
"""
from .config.celery import celery_app
from .utils.dispatcher import CeleryTaskDispatcher

__all__ = ["celery_app", "CeleryTaskDispatcher"]
