"""
Flask-Migrate / gunicorn entry point.

Usage:
    flask db upgrade
    flask repair-baselines [--dry-run]
    flask backfill-versions
    gunicorn wsgi:app
"""

from app import create_app

app = create_app()
