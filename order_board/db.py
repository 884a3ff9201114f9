from __future__ import annotations

from collections.abc import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from order_board.config import settings

engine = create_engine(settings.database_url_normalized, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_session_factory(request: Request) -> sessionmaker:
    return getattr(request.app.state, 'session_factory', SessionLocal)


def get_db(request: Request) -> Iterator[Session]:
    with get_session_factory(request)() as db:
        yield db


def insert_ignore(db: Session, model, values: dict, *, index_elements: list[str]) -> bool:
    """Insert ``values`` unless a row already holds the same unique key.

    Returns True when a new row was written. Uses the dialect's native
    ``ON CONFLICT DO NOTHING`` so concurrent first writers never collide.
    """
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        stmt = postgresql.insert(model).values(**values)
    elif dialect == 'sqlite':
        stmt = sqlite.insert(model).values(**values)
    else:
        raise RuntimeError(f'Unsupported database dialect: {dialect}')
    result = db.execute(stmt.on_conflict_do_nothing(index_elements=index_elements))
    return bool(result.rowcount)
