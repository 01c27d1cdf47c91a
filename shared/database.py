from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

def get_engine(database_url: str, echo: bool = False, **kwargs):
    if database_url.startswith("sqlite"):
        # aiosqlite: wait on the file lock instead of failing fast under contention
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", 30)
        kwargs["connect_args"] = connect_args
    return create_async_engine(database_url, echo=echo, future=True, **kwargs)

Base = declarative_base()

def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )
