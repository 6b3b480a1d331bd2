"""Database infrastructure: engine, ORM models, and record stores."""

from agentic_settlement.infrastructure.database.engine import (
    build_session_factory,
    close_db,
    get_session_factory,
    init_db,
)
from agentic_settlement.infrastructure.database.orm_models import (
    Base,
    EscrowRow,
    NegotiationRow,
)
from agentic_settlement.infrastructure.database.repositories import (
    SqlAlchemyRecordStore,
    SqlEscrowStore,
    SqlNegotiationStore,
)

__all__ = [
    "Base",
    "EscrowRow",
    "NegotiationRow",
    "SqlAlchemyRecordStore",
    "SqlEscrowStore",
    "SqlNegotiationStore",
    "build_session_factory",
    "get_session_factory",
    "init_db",
    "close_db",
]
