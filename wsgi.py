"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi check-expired-projections   # cron
"""

from merchops import create_app

app = create_app()
