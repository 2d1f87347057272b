"""
Merchandising Operations Platform
Shared SQLAlchemy handle.

All models import ``db`` from here; the Flask app factory binds it with
``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
