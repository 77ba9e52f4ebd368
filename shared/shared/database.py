from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

def get_engine(database_url: str, echo: bool = False, **kwargs):
    if database_url.startswith("sqlite"):
        # no server-side pool for file databases
        return create_async_engine(database_url, echo=echo, future=True, **kwargs)
    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_timeout=10,
        **kwargs,
    )

Base = declarative_base()

def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )
