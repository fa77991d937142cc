"""
Trial housekeeper.

Run on a fixed schedule by an external scheduler. For every team whose
trial window has elapsed:

- no subscription: TRIAL projects are suspended and marked NOT_BILLED
- subscription:    TRIAL projects are registered against the subscription,
                   member/device counts are reconciled once for the team,
                   then the projects are marked BILLED

The team's trial marker is cleared in the same transaction as the project
updates. Remote calls happen first, so a provider failure leaves the team
untouched and it is picked up again on the next run.

Teams are processed independently: one failing team is logged and skipped,
never aborting the pass.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from src.billing.reconciler import SubscriptionReconciler
from src.models.billing import (
    TRIAL_DURATION_KEY,
    TRIAL_MODE_KEY,
    TRIAL_PROJECT_TYPE_KEY,
    TrialSettings,
)
from src.models.platform import BillingState, ProjectState, Team
from src.observability.logging import OperationContext, RequestContext, get_logger
from src.observability.metrics import track_trial_team
from src.storage.database import PlatformDatabase

logger = get_logger(__name__)


async def load_trial_settings(db: PlatformDatabase) -> TrialSettings:
    """Read the current global trial configuration."""
    values = await db.get_settings(
        [TRIAL_MODE_KEY, TRIAL_DURATION_KEY, TRIAL_PROJECT_TYPE_KEY]
    )
    return TrialSettings.from_settings(values)


@dataclass
class HousekeepingResult:
    """Outcome of one housekeeping pass."""

    suspended: list[str] = field(default_factory=list)
    billed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.suspended) + len(self.billed)


class TrialHousekeeper:
    """Resolves expired team trials."""

    def __init__(self, db: PlatformDatabase, reconciler: SubscriptionReconciler):
        self.db = db
        self.reconciler = reconciler

    async def run(self, now: datetime | None = None) -> HousekeepingResult:
        """
        Run one housekeeping pass.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            HousekeepingResult: Team ids per outcome
        """
        result = HousekeepingResult()

        trial = await load_trial_settings(self.db)
        if not trial.enabled:
            logger.debug("Trial mode disabled, skipping housekeeping")
            return result

        now = now or datetime.now(UTC)
        teams = await self.db.list_expired_trial_teams(now)
        if not teams:
            return result

        with OperationContext("trial_housekeeping", teams=len(teams)):
            for team in teams:
                with RequestContext(team_id=team.id):
                    try:
                        if await self.db.get_subscription(team.id) is None:
                            await self._suspend_trial_projects(team)
                            result.suspended.append(team.id)
                            track_trial_team("suspended")
                        else:
                            await self._bill_trial_projects(team)
                            result.billed.append(team.id)
                            track_trial_team("billed")
                    except Exception:
                        # Trial marker stays set, the team is retried next run
                        result.failed.append(team.id)
                        track_trial_team("failed")
                        logger.error(
                            "Failed to process expired trial",
                            team_id=team.id,
                            exc_info=True,
                        )

        return result

    async def _suspend_trial_projects(self, team: Team) -> None:
        projects = await self.db.list_team_projects(team.id, BillingState.TRIAL)
        for project in projects:
            logger.info(
                "Trial ended, suspending project",
                team_id=team.id,
                project_id=project.id,
            )

        await self.db.complete_team_trial(
            team.id,
            [project.id for project in projects],
            BillingState.NOT_BILLED,
            state=ProjectState.SUSPENDED,
        )
        logger.info("Trial ended without billing", team_id=team.id, projects=len(projects))

    async def _bill_trial_projects(self, team: Team) -> None:
        # Held until the local commit: a concurrent project pass must not see
        # these projects as TRIAL after they were counted remotely
        async with self.reconciler.team_lock(team.id):
            projects = await self.db.list_team_projects(team.id, BillingState.TRIAL)

            if projects:
                await self.reconciler.add_projects(team, projects)
            # Once per team, after all of its projects are registered
            await self.reconciler.update_team_device_count(team)
            await self.reconciler.update_team_member_count(team)

            await self.db.complete_team_trial(
                team.id,
                [project.id for project in projects],
                BillingState.BILLED,
            )
        logger.info("Trial ended, projects moved to billing", team_id=team.id, projects=len(projects))
