"""
Create tables directly from the models (local SQLite development only).

Production databases are managed by Alembic, see app.db.migrate.
"""
import logging

from app.db.base import Base
from app.db.session import engine
import app.db.models  # noqa: F401  (registers every model on Base.metadata)

logger = logging.getLogger(__name__)


def init_db(bind=None):
    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("Database tables ensured")
