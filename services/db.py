from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from config import DB_URL
from models.base import Base


def make_engine(url=DB_URL):
    """Create an engine; SQLite connections are shared with the error log worker thread."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine)

def init_db(bind=None):
    """Create all tables in the database."""
    import models  # noqa: F401  registers every model on Base.metadata
    Base.metadata.create_all(bind=bind or engine)
