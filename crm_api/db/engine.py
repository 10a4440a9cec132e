# crm_api/db/engine.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker

from automation.conf import DATABASE_URL, DEFAULT_DB_PATH
from crm_api.db.models import Base

logger = logging.getLogger(__name__)

# Cache the engine to avoid recreating it
_engine = None


def get_engine():
    """Get SQLAlchemy engine for the server database."""
    global _engine
    if _engine is None:
        connect_args = {}
        if DATABASE_URL.startswith("sqlite"):
            DEFAULT_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
            connect_args = {"check_same_thread": False}
        _engine = create_engine(DATABASE_URL, connect_args=connect_args)
        # Create tables if they don't exist
        Base.metadata.create_all(bind=_engine, checkfirst=True)
        logger.debug("Server DB schema ready → %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_session():
    """Get database session for the server database."""
    engine = get_engine()
    Session = scoped_session(sessionmaker(bind=engine, expire_on_commit=False))
    return Session()
