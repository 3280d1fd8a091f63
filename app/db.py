from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from typing import Generator
import os

# DATABASE_URL defaults to a local SQLite file; point it at Postgres/MySQL for staging/production.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data.db")

# SQLite is shared across the request thread, the hook executor and the dispatch pool,
# so same-thread checks are disabled and writers wait up to 15s on a locked file.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 15})
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
    )

# One session per request / per dispatch; transactions are committed explicitly
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator:
    """
    FastAPI dependency.

    Yields a database session for the lifetime of the request and closes it afterwards.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
