from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {}
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    # Entities handed back by the ledger outlive their session, so keep them loaded.
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
