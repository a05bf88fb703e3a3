from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def init_db(database_url: str) -> sessionmaker:
    """Create the engine and tables, and return a session factory bound to it."""
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # a single shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_kwargs)
    # create tables
    from campus_pay import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autoflush=False, bind=engine)
