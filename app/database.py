"""
Engine, session factory and declarative base for the accounts table.

SQLite is the default (single file next to the app); production points
DATABASE_URL at Postgres. The quota ledger relies on the database evaluating
UPDATE ... SET used = used + delta itself, which both backends do.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from config import DATABASE_URL


def _engine_options(url: str) -> dict:
    # FastAPI runs sync handlers in a threadpool; SQLite connections must be shareable
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine)

Base = declarative_base()


def get_db():
    """Request-scoped session for the drive and sharing routers; always closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
