# delivery/goals/sql_store.py
"""
Append-only SQL goal store.

Every record version is one row in goal_record. The latest version of a
goal is the row with the highest version for its key; a unique index on
(goal_set_id, environment, unique_name, version) makes concurrent writers
of the same next version collide instead of both succeeding.
"""

import json
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .models import Goal
from .store import GoalStore
from ..db.engine import session_scope
from ..errors import ConcurrentUpdateError
from ..logging import get_logger

logger = get_logger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS goal_record (
        id VARCHAR(36) PRIMARY KEY,
        seq BIGINT NOT NULL,
        goal_set_id VARCHAR(255) NOT NULL,
        environment VARCHAR(255) NOT NULL,
        unique_name VARCHAR(512) NOT NULL,
        version INTEGER NOT NULL,
        state VARCHAR(64) NOT NULL,
        ts BIGINT NOT NULL,
        record TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_goal_record_version
    ON goal_record (goal_set_id, environment, unique_name, version)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_goal_record_goal_set
    ON goal_record (goal_set_id)
    """,
]


def ensure_schema(session: Session) -> None:
    """Create the goal_record table and indexes if missing."""
    for statement in SCHEMA:
        session.execute(text(statement))


def get_next_record_seq(session: Session) -> int:
    """
    Next global record sequence number.

    Orders goals within a goal set by creation; it is not a uniqueness
    guarantee.
    """
    result = session.execute(text("SELECT COALESCE(MAX(seq), 0) FROM goal_record"))
    return (result.scalar() or 0) + 1


class SqlGoalStore(GoalStore):
    """
    Goal store backed by SQLAlchemy.

    Args:
        session_factory: Factory for sessions (defaults to the process engine)
        registration: Name written into provenance records
        registration_version: Version written into provenance records
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        registration: str = "goal-delivery",
        registration_version: str = "0.1.0",
        create_schema: bool = True,
    ):
        super().__init__(registration, registration_version)
        self.session_factory = session_factory
        if create_schema:
            with session_scope(self.session_factory) as session:
                ensure_schema(session)

    def _insert(self, record: Goal) -> None:
        try:
            with session_scope(self.session_factory) as session:
                session.execute(
                    text("""
                        INSERT INTO goal_record
                        (id, seq, goal_set_id, environment, unique_name, version, state, ts, record)
                        VALUES (:id, :seq, :goal_set_id, :environment, :unique_name, :version,
                                :state, :ts, :record)
                    """),
                    {
                        "id": str(uuid4()),
                        "seq": get_next_record_seq(session),
                        "goal_set_id": record.goal_set_id,
                        "environment": record.environment,
                        "unique_name": record.unique_name,
                        "version": record.version,
                        "state": record.state.value,
                        "ts": record.ts,
                        "record": json.dumps(record.to_dict()),
                    }
                )
        except IntegrityError:
            logger.warning(
                "goal_record_conflict",
                goal=record.unique_name,
                goal_set_id=record.goal_set_id,
                version=record.version,
            )
            raise ConcurrentUpdateError(record.unique_name, record.version - 1, record.version)

    def _latest(self, goal_set_id: str, environment: str, unique_name: str) -> Optional[Goal]:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                text("""
                    SELECT record FROM goal_record
                    WHERE goal_set_id = :goal_set_id
                      AND environment = :environment
                      AND unique_name = :unique_name
                    ORDER BY version DESC
                    LIMIT 1
                """),
                {
                    "goal_set_id": goal_set_id,
                    "environment": environment,
                    "unique_name": unique_name,
                }
            )
            row = result.fetchone()
        return Goal.from_dict(json.loads(row[0])) if row else None

    def _latest_for_set(self, goal_set_id: str) -> List[Goal]:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                text("""
                    SELECT r.record
                    FROM goal_record r
                    JOIN (
                        SELECT environment, unique_name,
                               MAX(version) AS max_version, MIN(seq) AS first_seq
                        FROM goal_record
                        WHERE goal_set_id = :goal_set_id
                        GROUP BY environment, unique_name
                    ) latest
                      ON r.environment = latest.environment
                     AND r.unique_name = latest.unique_name
                     AND r.version = latest.max_version
                    WHERE r.goal_set_id = :goal_set_id
                    ORDER BY latest.first_seq
                """),
                {"goal_set_id": goal_set_id}
            )
            rows = result.fetchall()
        return [Goal.from_dict(json.loads(row[0])) for row in rows]

    def _history(self, goal_set_id: str, environment: str, unique_name: str) -> List[Goal]:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                text("""
                    SELECT record FROM goal_record
                    WHERE goal_set_id = :goal_set_id
                      AND environment = :environment
                      AND unique_name = :unique_name
                    ORDER BY version
                """),
                {
                    "goal_set_id": goal_set_id,
                    "environment": environment,
                    "unique_name": unique_name,
                }
            )
            rows = result.fetchall()
        return [Goal.from_dict(json.loads(row[0])) for row in rows]

    def list_goal_sets(self, limit: int = 50) -> List[str]:
        """Most recently active goal set ids."""
        with session_scope(self.session_factory) as session:
            result = session.execute(
                text("""
                    SELECT goal_set_id, MAX(seq) AS last_seq
                    FROM goal_record
                    GROUP BY goal_set_id
                    ORDER BY last_seq DESC
                    LIMIT :limit
                """),
                {"limit": limit}
            )
            return [row[0] for row in result]
