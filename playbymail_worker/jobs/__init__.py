"""Celery job bindings."""
