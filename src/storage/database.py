"""
Platform storage using SQLite (bootstrap) → PostgreSQL (production).

Holds teams, team types, users, memberships, devices, project types,
projects, subscriptions and platform settings.

Consistency:
- Prepared statements only
- Multi-row state changes (trial outcomes) commit in a single transaction
- Foreign keys enforced, cascading from teams
"""

import json
import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from src.models.platform import (
    BillingState,
    Device,
    Project,
    ProjectState,
    ProjectType,
    ProjectTypeProperties,
    Role,
    Subscription,
    Team,
    TeamMember,
    TeamType,
    TeamTypeProperties,
    User,
)

logger = logging.getLogger(__name__)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class PlatformDatabase:
    """
    Platform record storage.

    Uses SQLite for bootstrapping (free, embedded). Every method is a coroutine
    so callers are unaffected when the backend moves to an async driver.
    """

    def __init__(self, db_path: str = "./data/platform.db"):
        """
        Initialize platform database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing platform database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS platform_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS team_types (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    properties TEXT NOT NULL DEFAULT '{}'
                );

                CREATE TABLE IF NOT EXISTS teams (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    team_type_id TEXT NOT NULL,
                    trial_ends_at TEXT,
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (team_type_id) REFERENCES team_types(id)
                );

                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    name TEXT,
                    email TEXT NOT NULL UNIQUE
                );

                CREATE TABLE IF NOT EXISTS team_members (
                    team_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'member',

                    PRIMARY KEY (team_id, user_id),
                    FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS devices (
                    id TEXT PRIMARY KEY,
                    team_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT '',

                    FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS project_types (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    properties TEXT NOT NULL DEFAULT '{}'
                );

                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    team_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    project_type_id TEXT,
                    state TEXT NOT NULL DEFAULT 'running',
                    billing_state TEXT NOT NULL DEFAULT 'not_billed',
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE,
                    FOREIGN KEY (project_type_id) REFERENCES project_types(id),
                    CHECK (billing_state IN ('trial', 'billed', 'not_billed'))
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    team_id TEXT PRIMARY KEY,
                    customer TEXT NOT NULL,
                    subscription TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_teams_trial ON teams(trial_ends_at);
                CREATE INDEX IF NOT EXISTS idx_devices_team ON devices(team_id);
                CREATE INDEX IF NOT EXISTS idx_projects_team ON projects(team_id, billing_state);
                CREATE INDEX IF NOT EXISTS idx_members_user ON team_members(user_id, role);
                """
            )
            conn.commit()
            logger.info("Platform database initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    # ------------------------------------------------------------------
    # Platform settings
    # ------------------------------------------------------------------

    async def get_settings(self, keys: Iterable[str]) -> dict[str, Any]:
        """Read several platform settings at once (missing keys are omitted)."""
        keys = list(keys)
        if not keys:
            return {}
        conn = self._get_connection()
        placeholders = ",".join("?" for _ in keys)
        rows = conn.execute(
            f"SELECT key, value FROM platform_settings WHERE key IN ({placeholders})", keys
        ).fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    async def set_setting(self, key: str, value: Any) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO platform_settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, json.dumps(value)),
        )
        conn.commit()

    # ------------------------------------------------------------------
    # Team types / project types
    # ------------------------------------------------------------------

    async def create_team_type(self, team_type: TeamType) -> TeamType:
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO team_types (id, name, properties) VALUES (?, ?, ?)",
            (team_type.id, team_type.name, team_type.properties.model_dump_json()),
        )
        conn.commit()
        return team_type

    async def get_team_type(self, team_type_id: str) -> TeamType | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM team_types WHERE id = ?", (team_type_id,)).fetchone()
        if not row:
            return None
        return TeamType(
            id=row["id"],
            name=row["name"],
            properties=TeamTypeProperties.model_validate_json(row["properties"]),
        )

    async def create_project_type(self, project_type: ProjectType) -> ProjectType:
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO project_types (id, name, properties) VALUES (?, ?, ?)",
            (project_type.id, project_type.name, project_type.properties.model_dump_json()),
        )
        conn.commit()
        return project_type

    async def get_project_type(self, project_type_id: str) -> ProjectType | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM project_types WHERE id = ?", (project_type_id,)
        ).fetchone()
        if not row:
            return None
        return ProjectType(
            id=row["id"],
            name=row["name"],
            properties=ProjectTypeProperties.model_validate_json(row["properties"]),
        )

    async def list_project_types(self) -> list[ProjectType]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM project_types ORDER BY id").fetchall()
        return [
            ProjectType(
                id=row["id"],
                name=row["name"],
                properties=ProjectTypeProperties.model_validate_json(row["properties"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    async def create_team(self, team: Team) -> Team:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO teams (id, name, slug, team_type_id, trial_ends_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                team.id,
                team.name,
                team.slug,
                team.team_type.id,
                _ts(team.trial_ends_at),
                _ts(team.created_at),
            ),
        )
        conn.commit()
        logger.info(f"Created team: {team.id}")
        return team

    async def get_team(self, team_id: str) -> Team | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone()
        if not row:
            return None
        return await self._row_to_team(row)

    async def list_expired_trial_teams(self, now: datetime) -> list[Team]:
        """Teams whose trial window is set and has elapsed."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM teams WHERE trial_ends_at IS NOT NULL ORDER BY created_at"
        ).fetchall()
        # Compared in Python: stored offsets may differ, so string ordering is unsafe
        teams = [await self._row_to_team(row) for row in rows]
        return [team for team in teams if team.trial_ends_at <= now]

    async def _row_to_team(self, row: sqlite3.Row) -> Team:
        team_type = await self.get_team_type(row["team_type_id"])
        return Team(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            team_type=team_type,
            trial_ends_at=_parse_ts(row["trial_ends_at"]),
            created_at=_parse_ts(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Users and memberships
    # ------------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO users (id, username, name, email) VALUES (?, ?, ?, ?)",
            (user.id, user.username, user.name, user.email),
        )
        conn.commit()
        return user

    async def get_user(self, user_id: str) -> User | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            return None
        return User(id=row["id"], username=row["username"], name=row["name"], email=row["email"])

    async def add_team_member(self, member: TeamMember) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO team_members (team_id, user_id, role) VALUES (?, ?, ?)
            ON CONFLICT(team_id, user_id) DO UPDATE SET role = excluded.role
            """,
            (member.team_id, member.user_id, member.role.value),
        )
        conn.commit()

    async def remove_team_member(self, team_id: str, user_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM team_members WHERE team_id = ? AND user_id = ?", (team_id, user_id)
        )
        conn.commit()
        return cursor.rowcount > 0

    async def count_team_members(self, team_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM team_members WHERE team_id = ?", (team_id,)
        ).fetchone()
        return row["n"]

    async def list_owned_team_ids(self, user_id: str) -> list[str]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT team_id FROM team_members WHERE user_id = ? AND role = ?",
            (user_id, Role.OWNER.value),
        ).fetchall()
        return [row["team_id"] for row in rows]

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def create_device(self, device: Device) -> Device:
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO devices (id, team_id, name, type) VALUES (?, ?, ?, ?)",
            (device.id, device.team_id, device.name, device.type),
        )
        conn.commit()
        return device

    async def delete_device(self, device_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
        conn.commit()
        return cursor.rowcount > 0

    async def count_team_devices(self, team_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM devices WHERE team_id = ?", (team_id,)
        ).fetchone()
        return row["n"]

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(self, project: Project) -> Project:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO projects (
                id, team_id, name, project_type_id, state, billing_state, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project.id,
                project.team_id,
                project.name,
                project.project_type_id,
                project.state.value,
                project.billing_state.value,
                _ts(project.created_at),
            ),
        )
        conn.commit()
        return project

    async def get_project(self, project_id: str) -> Project | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return self._row_to_project(row) if row else None

    async def delete_project(self, project_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        conn.commit()
        return cursor.rowcount > 0

    async def list_team_projects(
        self, team_id: str, billing_state: BillingState | None = None
    ) -> list[Project]:
        conn = self._get_connection()
        if billing_state is None:
            rows = conn.execute(
                "SELECT * FROM projects WHERE team_id = ? ORDER BY created_at", (team_id,)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM projects WHERE team_id = ? AND billing_state = ? "
                "ORDER BY created_at",
                (team_id, billing_state.value),
            ).fetchall()
        return [self._row_to_project(row) for row in rows]

    async def complete_team_trial(
        self,
        team_id: str,
        project_ids: list[str],
        billing_state: BillingState,
        state: ProjectState | None = None,
    ) -> None:
        """
        Apply a trial outcome atomically.

        Moves the given projects to billing_state (and state, when given) and
        clears the team's trial marker in one transaction.
        """
        conn = self._get_connection()
        try:
            for project_id in project_ids:
                if state is None:
                    conn.execute(
                        "UPDATE projects SET billing_state = ? WHERE id = ? AND team_id = ?",
                        (billing_state.value, project_id, team_id),
                    )
                else:
                    conn.execute(
                        "UPDATE projects SET billing_state = ?, state = ? "
                        "WHERE id = ? AND team_id = ?",
                        (billing_state.value, state.value, project_id, team_id),
                    )
            conn.execute("UPDATE teams SET trial_ends_at = NULL WHERE id = ?", (team_id,))
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            team_id=row["team_id"],
            name=row["name"],
            project_type_id=row["project_type_id"],
            state=ProjectState(row["state"]),
            billing_state=BillingState(row["billing_state"]),
            created_at=_parse_ts(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        """Create or replace the team's subscription record."""
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO subscriptions (team_id, customer, subscription, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(team_id) DO UPDATE SET
                customer = excluded.customer,
                subscription = excluded.subscription
            """,
            (
                subscription.team_id,
                subscription.customer,
                subscription.subscription,
                _ts(subscription.created_at),
            ),
        )
        conn.commit()
        logger.info(
            f"Recorded subscription {subscription.subscription} for team {subscription.team_id}"
        )
        return subscription

    async def get_subscription(self, team_id: str) -> Subscription | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM subscriptions WHERE team_id = ?", (team_id,)).fetchone()
        if not row:
            return None
        return Subscription(
            team_id=row["team_id"],
            customer=row["customer"],
            subscription=row["subscription"],
            created_at=_parse_ts(row["created_at"]),
        )

    async def get_subscription_by_id(self, subscription_id: str) -> Subscription | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT team_id FROM subscriptions WHERE subscription = ?", (subscription_id,)
        ).fetchone()
        return await self.get_subscription(row["team_id"]) if row else None

    async def delete_subscription(self, team_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM subscriptions WHERE team_id = ?", (team_id,))
        conn.commit()
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("Platform database connection closed")


# Global instance
_db: PlatformDatabase | None = None


async def get_platform_db() -> PlatformDatabase:
    """
    Get global platform database instance.

    Returns:
        PlatformDatabase: Initialized database
    """
    global _db
    if _db is None:
        from src.config import get_settings

        _db = PlatformDatabase(db_path=get_settings().database.path)
        await _db.initialize()
    return _db
