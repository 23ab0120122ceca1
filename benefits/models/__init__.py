"""
Benefit Request Engine
SQLAlchemy extension instance shared by all models.

Usage:
    from benefits.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
