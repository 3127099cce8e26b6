from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from payments.config import get_database_url, sql_echo


def engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # sessions are opened per request on FastAPI's worker threads
        return {"connect_args": {"check_same_thread": False}, "echo": sql_echo()}
    return {"pool_pre_ping": True, "echo": sql_echo()}


DATABASE_URL = get_database_url()

engine = create_engine(DATABASE_URL, **engine_options(DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
