"""
Database layer — relational state for the delivery pipeline.

Backends (via SQLAlchemy async):
  - PostgreSQL (asyncpg)
  - MySQL (aiomysql)
  - SQLite (aiosqlite, development and tests)

Quick start:
  from database import init_db, get_session
  await init_db()
  async with get_session() as db:
      tenant = await db.get(TenantRow, "t1")
"""
from database.models import (
    Base, TenantRow, LedgerEntryRow, CampaignRow, CampaignRecipientRow,
    CampaignMetricsRow, MessageLogRow, QueueJobRow, AutomationRow,
    ProcessedEventRow, ensure_utc,
)
from database.session import get_engine, get_session, session_scope, init_db, close_db

__all__ = [
    # ORM models
    "Base", "TenantRow", "LedgerEntryRow", "CampaignRow", "CampaignRecipientRow",
    "CampaignMetricsRow", "MessageLogRow", "QueueJobRow", "AutomationRow",
    "ProcessedEventRow", "ensure_utc",
    # Session management
    "get_engine", "get_session", "session_scope", "init_db", "close_db",
]
