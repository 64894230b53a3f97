"""
Schema migrations for the lastpress store.
Each migration is named, applied once and recorded in the migration table.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, Session, SQLModel, select, text

from .init_db import make_engine
from .config import get_settings
from .logging_utils import get_logger

logger = get_logger("lastpress.migrations")


class Migration(SQLModel, table=True):
    """Applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    (
        "001_player_indexes",
        """
        -- roster reads and the winner check filter on session and elimination state
        CREATE INDEX IF NOT EXISTS idx_player_session_eliminated ON game_players(session_id, is_eliminated);
        -- the staleness sweep scans pressing players by heartbeat age
        CREATE INDEX IF NOT EXISTS idx_player_session_pressing_heartbeat
            ON game_players(session_id, is_pressing, last_heartbeat);
        -- game history per participant
        CREATE INDEX IF NOT EXISTS idx_player_fid_joined ON game_players(fid, joined_at)
        """,
    ),
    (
        "002_session_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_session_status_created ON game_sessions(status, created_at);
        CREATE INDEX IF NOT EXISTS idx_session_scheduled ON game_sessions(status, scheduled_start_time);
        CREATE INDEX IF NOT EXISTS idx_session_featured ON game_sessions(is_featured, status)
        """,
    ),
]


def ensure_migration_table(engine):
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)
    with Session(engine) as session:
        found = session.exec(select(Migration).where(Migration.name == migration_name)).first()
        return found is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.debug("migration_skipped", extra={"event": migration_name})
        return False

    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                lines = [ln for ln in statement.splitlines() if not ln.strip().startswith('--')]
                statement = "\n".join(lines).strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.error("migration_failed", extra={"event": migration_name, "error": str(exc)})
            raise
    logger.info("migration_applied", extra={"event": migration_name})
    return True


def run_migrations(engine=None) -> int:
    """Create missing tables and apply pending migrations. Returns how many were applied."""
    engine = engine or make_engine(get_settings().database_url)
    SQLModel.metadata.create_all(engine)
    applied = sum(1 for name, sql in MIGRATIONS if apply_migration(engine, name, sql))
    logger.info("migrations_complete", extra={"rows": applied})
    return applied


if __name__ == "__main__":
    from .logging_utils import setup_logging

    setup_logging()
    run_migrations()
