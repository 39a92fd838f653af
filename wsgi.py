"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi backfill-pending-approvers --dry-run
"""

from app import create_app

app = create_app()
