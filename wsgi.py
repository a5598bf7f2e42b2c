"""
WSGI entry point.

Usage:
    gunicorn wsgi:app
    APP_ENV=development flask --app wsgi run
"""

from bpm_bridge import create_app

app = create_app()
