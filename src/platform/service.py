"""
Platform request-path flows.

Resource changes (members, devices, projects) commit first. The team's
subscription is then reconciled; a billing failure does not undo the change,
it is logged and handed back as a BillingWarning so the caller can tell the
user billing will catch up on the next trigger.

New projects get their billing state here:

- TRIAL       trial mode on, permitted project type, no subscription,
              team inside its trial window
- BILLED      team has a subscription (registered and reconciled now)
- NOT_BILLED  otherwise
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.billing.errors import BillingError, NotFoundError
from src.billing.service import BillingService
from src.billing.trial_task import load_trial_settings
from src.models.billing import TrialSettings
from src.models.platform import (
    BillingState,
    Device,
    Project,
    Role,
    Team,
    TeamMember,
)
from src.observability.logging import RequestContext, get_logger
from src.observability.metrics import track_billing_warning
from src.storage.database import PlatformDatabase

logger = get_logger(__name__)


@dataclass
class BillingWarning:
    """Reconciliation failed after the resource change committed."""

    operation: str
    error_type: str
    message: str


@dataclass
class OperationResult:
    """Outcome of a request-path operation."""

    resource: Any
    billing_warning: BillingWarning | None = None


def _new_id() -> str:
    return uuid.uuid4().hex


class PlatformService:
    """Team, member, device and project flows that keep billing in step."""

    def __init__(self, db: PlatformDatabase, billing: BillingService):
        self.db = db
        self.billing = billing

    async def _require_team(self, team_id: str) -> Team:
        team = await self.db.get_team(team_id)
        if team is None:
            raise NotFoundError(f"Team {team_id} not found")
        return team

    async def _reconcile(
        self,
        team: Team,
        operation: str,
        *steps: Callable[[Team], Awaitable[None]],
    ) -> BillingWarning | None:
        """Run reconciliation steps; convert a billing failure into a warning."""
        if await self.db.get_subscription(team.id) is None:
            logger.debug("Team has no subscription, skipping reconciliation", team_id=team.id)
            return None

        try:
            for step in steps:
                await step(team)
        except BillingError as e:
            track_billing_warning(operation)
            logger.warning(
                "Billing reconciliation deferred",
                operation=operation,
                team_id=team.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return BillingWarning(
                operation=operation,
                error_type=type(e).__name__,
                message=str(e),
            )
        return None

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    async def create_team(
        self,
        name: str,
        slug: str,
        team_type_id: str,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> Team:
        """
        Create a team, opening a trial window when trial mode is enabled.

        Args:
            name: Display name
            slug: URL slug (unique)
            team_type_id: Plan of the team
            owner_id: User added as owner, if any
            now: Reference time (defaults to current UTC time)

        Raises:
            NotFoundError: If the team type or owner does not exist
        """
        team_type = await self.db.get_team_type(team_type_id)
        if team_type is None:
            raise NotFoundError(f"Team type {team_type_id} not found")
        if owner_id is not None and await self.db.get_user(owner_id) is None:
            raise NotFoundError(f"User {owner_id} not found")

        now = now or datetime.now(UTC)
        trial = await load_trial_settings(self.db)
        trial_ends_at = now + trial.duration if trial.enabled else None

        team = Team(
            id=_new_id(),
            name=name,
            slug=slug,
            team_type=team_type,
            trial_ends_at=trial_ends_at,
            created_at=now,
        )
        await self.db.create_team(team)

        if owner_id is not None:
            await self.db.add_team_member(
                TeamMember(team_id=team.id, user_id=owner_id, role=Role.OWNER)
            )

        logger.info(
            "Team created",
            team_id=team.id,
            team_type=team_type.name,
            trial_ends_at=trial_ends_at.isoformat() if trial_ends_at else None,
        )
        return team

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def add_member(
        self, team_id: str, user_id: str, role: Role = Role.MEMBER
    ) -> OperationResult:
        team = await self._require_team(team_id)
        if await self.db.get_user(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

        member = TeamMember(team_id=team.id, user_id=user_id, role=role)
        with RequestContext(team_id=team.id):
            await self.db.add_team_member(member)
            logger.info("Member added", team_id=team.id, user_id=user_id, role=role.value)
            warning = await self._reconcile(
                team, "add_member", self.billing.update_team_member_count
            )
        return OperationResult(member, warning)

    async def remove_member(self, team_id: str, user_id: str) -> OperationResult:
        team = await self._require_team(team_id)

        with RequestContext(team_id=team.id):
            if not await self.db.remove_team_member(team.id, user_id):
                raise NotFoundError(f"User {user_id} is not a member of team {team.id}")
            logger.info("Member removed", team_id=team.id, user_id=user_id)
            warning = await self._reconcile(
                team, "remove_member", self.billing.update_team_member_count
            )
        return OperationResult(user_id, warning)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def add_device(self, team_id: str, name: str, device_type: str = "") -> OperationResult:
        team = await self._require_team(team_id)
        device = Device(id=_new_id(), team_id=team.id, name=name, type=device_type)

        with RequestContext(team_id=team.id):
            await self.db.create_device(device)
            logger.info("Device added", team_id=team.id, device_id=device.id)
            warning = await self._reconcile(
                team, "add_device", self.billing.update_team_device_count
            )
        return OperationResult(device, warning)

    async def remove_device(self, team_id: str, device_id: str) -> OperationResult:
        team = await self._require_team(team_id)

        with RequestContext(team_id=team.id):
            if not await self.db.delete_device(device_id):
                raise NotFoundError(f"Device {device_id} not found")
            logger.info("Device removed", team_id=team.id, device_id=device_id)
            warning = await self._reconcile(
                team, "remove_device", self.billing.update_team_device_count
            )
        return OperationResult(device_id, warning)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @staticmethod
    def initial_billing_state(
        team: Team,
        project_type_id: str | None,
        trial: TrialSettings,
        has_subscription: bool,
        now: datetime | None = None,
    ) -> BillingState:
        """Billing state a new project starts in."""
        type_permitted = trial.project_type_id is None or trial.project_type_id == project_type_id
        if trial.enabled and type_permitted and not has_subscription and team.trial_active(now):
            return BillingState.TRIAL
        if has_subscription:
            return BillingState.BILLED
        return BillingState.NOT_BILLED

    async def create_project(
        self,
        team_id: str,
        name: str,
        project_type_id: str | None = None,
        now: datetime | None = None,
    ) -> OperationResult:
        """
        Create a project and start its billing lifecycle.

        Raises:
            NotFoundError: If the team or project type does not exist
        """
        team = await self._require_team(team_id)
        if project_type_id is not None and await self.db.get_project_type(project_type_id) is None:
            raise NotFoundError(f"Project type {project_type_id} not found")

        trial = await load_trial_settings(self.db)
        has_subscription = await self.db.get_subscription(team.id) is not None
        billing_state = self.initial_billing_state(
            team, project_type_id, trial, has_subscription, now
        )

        project = Project(
            id=_new_id(),
            team_id=team.id,
            name=name,
            project_type_id=project_type_id,
            billing_state=billing_state,
        )

        with RequestContext(team_id=team.id):
            await self.db.create_project(project)
            logger.info(
                "Project created",
                team_id=team.id,
                project_id=project.id,
                billing_state=billing_state.value,
            )

            warning = None
            if billing_state == BillingState.BILLED:
                # Already persisted as BILLED, so the reconciled count includes it
                warning = await self._reconcile(
                    team,
                    "create_project",
                    self.billing.reconciler.update_team_project_count,
                    self.billing.update_team_device_count,
                    self.billing.update_team_member_count,
                )
        return OperationResult(project, warning)

    async def delete_project(self, team_id: str, project_id: str) -> OperationResult:
        team = await self._require_team(team_id)
        project = await self.db.get_project(project_id)
        if project is None or project.team_id != team.id:
            raise NotFoundError(f"Project {project_id} not found")

        with RequestContext(team_id=team.id):
            await self.db.delete_project(project.id)
            logger.info("Project deleted", team_id=team.id, project_id=project.id)

            warning = None
            if project.billing_state == BillingState.BILLED:

                async def _remove(t: Team) -> None:
                    await self.billing.reconciler.remove_project(t, project)

                warning = await self._reconcile(team, "delete_project", _remove)
        return OperationResult(project, warning)
