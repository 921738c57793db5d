from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session

from .config import DB_SCHEMA, DB_URL


class Base(DeclarativeBase):
    pass


def table_args(*constraints):
    """Constraints plus the optional Postgres schema, in `__table_args__` form."""
    if DB_SCHEMA:
        return (*constraints, {"schema": DB_SCHEMA})
    return constraints


def fk(target: str) -> str:
    return f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target


def utcnow() -> datetime:
    # Stored naive; SQLite drops tzinfo on the way back anyway.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def dialect_insert(s: Session, model):
    """INSERT construct supporting ON CONFLICT for the bound dialect."""
    name = s.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"upsert not supported on {name}")
    return insert(model)


engine = create_engine(DB_URL, future=True)


def get_session():
    with Session(engine) as s:
        yield s
