"""
ResourceFlow Fulfillment Core
Model package — shared SQLAlchemy handle.

Every model module imports ``db`` from here; ``create_app`` binds it to the
Flask app and imports the model modules so metadata is complete before
``db.create_all()`` / Alembic autogenerate.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
