"""Celery task infrastructure package.

Importing this module wires together the configured Celery app; payment jobs
are registered under the ``payments.*`` names.
"""
from .config.celery import celery_app

__all__ = ["celery_app"]
