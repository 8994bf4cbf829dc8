"""Database layer - engine, base classes, types, triggers and immutability."""

from approval_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from approval_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from approval_kernel.db.types import Currency, Money, PayloadHash, PrincipalId, RoleName

__all__ = [
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "Base",
    "UUIDString",
    "UTCDateTime",
    "UUID",
    "Money",
    "Currency",
    "RoleName",
    "PrincipalId",
    "PayloadHash",
]
