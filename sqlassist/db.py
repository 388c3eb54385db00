# sqlassist/db.py
"""
Application database: conversation memory, chat transcript and SQL templates.
This is not the warehouse (see warehouse.py); it only holds the assistant's own state.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from sqlassist.monitoring import logger

Base = declarative_base()


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine):
    # Create tables if they don't exist
    try:
        # import models lazily so Base metadata has them
        import sqlassist.models as models  # noqa: F401
        Base.metadata.create_all(bind=engine)
    except Exception:
        # surface in logs; don't crash the app at import time
        logger.exception("DB init failed")
