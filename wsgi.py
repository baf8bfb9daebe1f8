"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi requests flag-unmatched --days 30
"""

from resourceflow import create_app

app = create_app()
