"""
Tracewell
SQLAlchemy database instance shared by every model module.

Usage:
    from tracewell.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
