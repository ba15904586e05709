"""
WSGI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi run
"""

from agency_gateway import create_app

app = create_app()
