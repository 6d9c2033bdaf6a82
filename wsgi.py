"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-default-stages
    flask --app wsgi run-job reminder_dispatch
"""

from jobflow import create_app

app = create_app()
