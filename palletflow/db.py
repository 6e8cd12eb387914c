from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from palletflow.config import Settings, settings


def _connect_args(config: Settings) -> dict:
    url = config.database_url_normalized
    if url.startswith('sqlite'):
        return {'timeout': config.store_connect_timeout_seconds, 'check_same_thread': False}
    return {
        'connect_timeout': config.store_connect_timeout_seconds,
        'options': f'-c statement_timeout={config.store_statement_timeout_ms}',
    }


def build_engine(config: Settings) -> Engine:
    url = config.database_url_normalized
    kwargs = {'pool_pre_ping': True, 'connect_args': _connect_args(config)}
    if not url.startswith('sqlite'):
        kwargs['pool_timeout'] = config.store_pool_timeout_seconds
    return create_engine(url, **kwargs)


engine = build_engine(settings)
SessionLocal: sessionmaker[Session] = sessionmaker(bind=engine, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
