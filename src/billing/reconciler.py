"""
Subscription reconciliation.

Converges a team's Stripe line items on the platform's own counts:

- member seats   -> number of team memberships
- devices        -> devices beyond the plan's free allocation
- project seats  -> projects in the BILLED state (plus those being billed now)

Every pass recomputes the full desired quantity, reads the current remote
item and writes only on divergence. Comparing against absolute remote state
(never applying deltas) makes passes idempotent and safe to retry after a
partial failure: a retried pass can never double-bill.

Items are zeroed rather than deleted so their ids survive for later reuse.
Passes for the same team are serialised by a per-team lock so two concurrent
triggers cannot both act on the same stale read.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from src.billing.counter import ResourceCounter
from src.billing.errors import ConfigurationError, NotFoundError
from src.billing.plans import PlanResolver, ProductPrice
from src.billing.stripe_client import SubscriptionClient
from src.models.billing import RemoteSubscription
from src.models.platform import Project, ProjectType, Subscription, Team
from src.observability.logging import get_logger
from src.observability.metrics import track_reconciliation
from src.storage.database import PlatformDatabase

logger = get_logger(__name__)

PROJECT_METADATA_VALUE = "true"


class _TeamLock:
    """A team's lock plus the number of tasks holding or waiting on it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0
        self.owner: asyncio.Task | None = None


class SubscriptionReconciler:
    """Keeps remote subscription quantities in line with internal counts."""

    def __init__(
        self,
        db: PlatformDatabase,
        client: SubscriptionClient,
        plans: PlanResolver,
    ):
        self.db = db
        self.client = client
        self.plans = plans
        self.counter = ResourceCounter(db)
        self._team_locks: dict[str, _TeamLock] = {}

    @asynccontextmanager
    async def team_lock(self, team_id: str) -> AsyncIterator[None]:
        """
        Hold the team's reconciliation lock.

        Re-entrant within one task, so a caller can hold it across several
        reconciliation passes and its own local commit. Locks are dropped
        once no task holds or waits on them.
        """
        task = asyncio.current_task()
        entry = self._team_locks.get(team_id)
        if entry is not None and entry.owner is task:
            yield
            return

        if entry is None:
            entry = self._team_locks[team_id] = _TeamLock()
        entry.users += 1
        try:
            async with entry.lock:
                entry.owner = task
                try:
                    yield
                finally:
                    entry.owner = None
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._team_locks[team_id]

    async def _subscription_for(self, team: Team) -> Subscription:
        subscription = await self.db.get_subscription(team.id)
        if subscription is None:
            raise NotFoundError(f"Team {team.id} has no billing subscription")
        return subscription

    async def update_team_member_count(self, team: Team) -> None:
        """Converge the member seat item on the team's membership count."""
        async with self.team_lock(team.id):
            subscription = await self._subscription_for(team)
            desired = await self.counter.member_count(team)
            product_price = self.plans.member_product_price(team)

            remote = await self.client.retrieve_subscription(subscription.subscription)
            await self._converge("member", team, subscription, remote, product_price, desired)

    async def update_team_device_count(self, team: Team) -> None:
        """Converge the device item on the team's billable device count."""
        async with self.team_lock(team.id):
            subscription = await self._subscription_for(team)
            desired = await self.counter.billable_device_count(team)
            try:
                product_price = self.plans.device_product_price(team)
            except ConfigurationError:
                if desired == 0:
                    # Device billing not in use for this team
                    logger.debug("No device product configured, nothing to bill", team_id=team.id)
                    return
                raise

            remote = await self.client.retrieve_subscription(subscription.subscription)
            await self._converge("device", team, subscription, remote, product_price, desired)

    async def update_team_project_count(self, team: Team) -> None:
        """Converge project seat items and metadata on the team's billed projects."""
        await self._reconcile_projects(team)

    async def add_projects(self, team: Team, projects: Iterable[Project]) -> None:
        """
        Register projects against the team's subscription.

        Records each project id in subscription metadata and counts it into the
        project seat quantity. The projects' local billing state is expected to
        be committed by the caller only after this returns.
        """
        await self._reconcile_projects(team, include=list(projects))

    async def remove_project(self, team: Team, project: Project) -> None:
        """Stop billing a project and clear its metadata registration."""
        await self._reconcile_projects(team, exclude=[project])

    async def _reconcile_projects(
        self,
        team: Team,
        include: list[Project] | None = None,
        exclude: list[Project] | None = None,
    ) -> None:
        include = include or []
        exclude = exclude or []
        excluded_ids = {project.id for project in exclude}

        async with self.team_lock(team.id):
            subscription = await self._subscription_for(team)

            billed: dict[str, Project] = {
                project.id: project
                for project in await self.counter.billed_projects(team)
                if project.id not in excluded_ids
            }
            for project in include:
                billed.setdefault(project.id, project)

            # product -> (price, desired quantity); removed projects' products
            # are kept so their quantity can drop to zero
            groups: dict[str, tuple[str, int]] = {}
            type_cache: dict[str | None, ProjectType | None] = {}
            for project, counted in [(p, 1) for p in billed.values()] + [(p, 0) for p in exclude]:
                product_price = await self._project_product_price(team, project, type_cache)
                price, quantity = groups.get(product_price.product, (product_price.price, 0))
                groups[product_price.product] = (price, quantity + counted)

            remote = await self.client.retrieve_subscription(subscription.subscription)

            # Existing project items with nothing billed against them converge on zero
            project_types = await self.db.list_project_types()
            for product_price in self.plans.project_products(project_types):
                if remote.find_item(product_price.product) is not None:
                    groups.setdefault(product_price.product, (product_price.price, 0))

            metadata: dict[str, str] = {
                project_id: PROJECT_METADATA_VALUE
                for project_id in billed
                if remote.metadata.get(project_id) != PROJECT_METADATA_VALUE
            }
            for project in exclude:
                if remote.metadata.get(project.id):
                    metadata[project.id] = ""

            for product, (price, desired) in groups.items():
                appended = await self._converge(
                    "project",
                    team,
                    subscription,
                    remote,
                    ProductPrice(product, price),
                    desired,
                    metadata=metadata,
                )
                if appended:
                    # Metadata travelled with the append call
                    metadata = {}

            if metadata:
                await self.client.update_subscription_metadata(subscription.subscription, metadata)

    async def _project_product_price(
        self,
        team: Team,
        project: Project,
        cache: dict[str | None, ProjectType | None],
    ) -> ProductPrice:
        type_id = project.project_type_id
        if type_id not in cache:
            cache[type_id] = await self.db.get_project_type(type_id) if type_id else None
        return self.plans.project_product_price(team, cache[type_id])

    async def _converge(
        self,
        resource: str,
        team: Team,
        subscription: Subscription,
        remote: RemoteSubscription,
        product_price: ProductPrice,
        desired: int,
        metadata: dict[str, str] | None = None,
    ) -> bool:
        """
        Bring one line item to the desired quantity.

        Returns:
            bool: True if a new item was appended to the subscription
        """
        item = remote.find_item(product_price.product)

        if item is None:
            if desired == 0:
                # Never create a zero-quantity item
                track_reconciliation(resource, "noop")
                logger.debug(
                    "No billable quantity and no existing item",
                    resource=resource,
                    team_id=team.id,
                )
                return False

            await self.client.append_subscription_item(
                subscription.subscription,
                product_price.product,
                product_price.price,
                desired,
                metadata=metadata or None,
            )
            track_reconciliation(resource, "appended")
            logger.info(
                "Appended subscription item",
                resource=resource,
                team_id=team.id,
                quantity=desired,
            )
            return True

        if item.quantity == desired:
            track_reconciliation(resource, "noop")
            logger.debug(
                "Subscription item already converged",
                resource=resource,
                team_id=team.id,
                quantity=desired,
            )
            return False

        await self.client.update_subscription_item(item.id, desired)
        track_reconciliation(resource, "updated")
        logger.info(
            "Updated subscription item",
            resource=resource,
            team_id=team.id,
            item_id=item.id,
            previous_quantity=item.quantity,
            quantity=desired,
        )
        return False
