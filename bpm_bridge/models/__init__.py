"""
BPM Form Bridge: SQLAlchemy models.

The shared ``db`` handle lives here so models, services and the app
factory all import it from one place:

    from bpm_bridge.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
