"""Background jobs: registry, definitions and Celery wiring."""
