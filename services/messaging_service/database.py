from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from models import Base
import logging
import os

logger = logging.getLogger("messaging.database")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./messaging.db")


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    logger.info("Database schema ready on %s", bind.url.render_as_string(hide_password=True))
