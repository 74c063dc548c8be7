"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi run
    flask --app wsgi backfill-finance-users --dry-run
    flask --app wsgi db migrate -m "description"
    gunicorn wsgi:app
"""

from app import create_app

app = create_app()
