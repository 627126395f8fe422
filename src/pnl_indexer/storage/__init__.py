"""Storage layer - Database schemas and repositories."""

from pnl_indexer.storage.database import (
    DatabaseManager,
    PersistenceConflict,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
    retry_on_conflict,
)
from pnl_indexer.storage.models import (
    Base,
    ContestModel,
    PositionModel,
    RegistrationModel,
    RegistrationStatus,
    TrackedTokenModel,
    TradeModel,
    TradeSide,
    WalletModel,
    WalletTokenCursorModel,
)
from pnl_indexer.storage.repos import (
    ContestDTO,
    ContestRepository,
    PositionDTO,
    PositionRepository,
    RegistrationDTO,
    RegistrationRepository,
    TrackedTokenDTO,
    TrackedTokenRepository,
    TradeDTO,
    TradeRepository,
    WalletDTO,
    WalletRepository,
)

__all__ = [
    "Base",
    "ContestDTO",
    "ContestModel",
    "ContestRepository",
    "DatabaseManager",
    "PersistenceConflict",
    "PositionDTO",
    "PositionModel",
    "PositionRepository",
    "RegistrationDTO",
    "RegistrationModel",
    "RegistrationRepository",
    "RegistrationStatus",
    "TrackedTokenDTO",
    "TrackedTokenModel",
    "TrackedTokenRepository",
    "TradeDTO",
    "TradeModel",
    "TradeRepository",
    "TradeSide",
    "WalletDTO",
    "WalletModel",
    "WalletRepository",
    "WalletTokenCursorModel",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "retry_on_conflict",
]
