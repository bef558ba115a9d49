"""
Peer Review Programme
Database models package.

All models share the single ``db`` instance created here; the application
factory binds it with ``db.init_app(app)``.

Usage:
    from peer_review.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
