"""
Bookable Fulfillment Platform
Database models package.

The shared ``db`` handle lives here so that every model module and service
can ``from app.models import db`` without importing the application factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
