"""Infrastructure connections (registry DB, snapshot bucket)."""

from tenanthub.infra.postgresql import (
    build_engine,
    build_session_factory,
    close_db,
    create_schema,
    get_engine,
    get_session_factory,
    init_db,
)
from tenanthub.infra.s3 import close_storage, get_s3_client, init_storage

__all__ = [
    # DB
    "build_engine",
    "build_session_factory",
    "create_schema",
    "init_db",
    "close_db",
    "get_engine",
    "get_session_factory",
    # S3
    "init_storage",
    "close_storage",
    "get_s3_client",
]
