"""
Campus request routing: SQLAlchemy models.

The ``db`` handle is created here and bound to the Flask app in
``campusflow.create_app``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
