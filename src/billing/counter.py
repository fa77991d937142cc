"""
Resource counting for billing.

Counts are recomputed from persisted state on every call, never maintained
incrementally, so they are correct regardless of the order events arrive in.
"""

from src.models.platform import BillingState, Project, Team
from src.storage.database import PlatformDatabase


def billable_devices(total_devices: int, free_allocation: int) -> int:
    """Devices beyond the plan's free allocation, floored at zero."""
    return max(0, total_devices - free_allocation)


class ResourceCounter:
    """Read-only view of the counts a team is billed for."""

    def __init__(self, db: PlatformDatabase):
        self.db = db

    async def member_count(self, team: Team) -> int:
        return await self.db.count_team_members(team.id)

    async def billable_device_count(self, team: Team) -> int:
        total = await self.db.count_team_devices(team.id)
        return billable_devices(total, team.team_type.properties.device_free_allocation)

    async def billed_projects(self, team: Team) -> list[Project]:
        return await self.db.list_team_projects(team.id, BillingState.BILLED)
