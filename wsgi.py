"""
WSGI / Flask CLI entry point for the Bookable Fulfillment Platform.

Usage:
    flask --app wsgi db upgrade                  # apply migrations
    flask --app wsgi plan-standing-reservations  # expand contracts once
    flask --app wsgi materialize-due             # book due occurrences once
    gunicorn wsgi:app
"""

from app import create_app

app = create_app()
