"""Application-wide Flask extensions."""

from flask_sqlalchemy import SQLAlchemy


# Backs the server-side Flask-Session store when Redis is not configured. The
# engine is configured in :func:`prometida.create_app`.
db = SQLAlchemy()
