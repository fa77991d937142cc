"""
Tests for subscription reconciliation.

Tests:
- Idempotence (no writes when converged)
- Member seat updates with immediate proration
- Device billing against free allocation
- Zero quantities update, never delete; never append at zero
- Missing subscription / missing configuration
- Project seat registration in metadata
- Stale project items converge on zero
- Per-team lock: re-entrant, dropped when idle
"""

import asyncio

import pytest

from src.billing.errors import ConfigurationError, NotFoundError, ProviderError
from src.models.platform import (
    BillingState,
    Device,
    PlanBilling,
    Project,
    TeamMember,
    User,
)


async def add_members(db, team, count: int) -> None:
    for i in range(count):
        user = await db.create_user(
            User(id=f"user-{i}", username=f"user{i}", email=f"user{i}@example.com")
        )
        await db.add_team_member(TeamMember(team_id=team.id, user_id=user.id))


async def add_devices(db, team, count: int) -> None:
    for i in range(count):
        await db.create_device(Device(id=f"dev-{i}", team_id=team.id, name=f"device {i}"))


class TestMemberReconciliation:
    @pytest.mark.asyncio
    async def test_no_write_when_converged(self, db, billing, subscribed_team, fake_stripe):
        fake_stripe.add_subscription("sub_team1", [("prod_team", 1)])

        await billing.update_team_member_count(subscribed_team)
        await billing.update_team_member_count(subscribed_team)

        assert fake_stripe.writes == []

    @pytest.mark.asyncio
    async def test_updates_stale_quantity_with_immediate_proration(
        self, db, billing, subscribed_team, fake_stripe
    ):
        remote = fake_stripe.add_subscription("sub_team1", [("prod_team", 1)])
        await add_members(db, subscribed_team, 26)

        await billing.update_team_member_count(subscribed_team)

        item_id = remote.items[0].id
        assert fake_stripe.writes == [("update_subscription_item", (item_id, 27, "always_invoice"))]
        assert fake_stripe.item("sub_team1", "prod_team").quantity == 27

    @pytest.mark.asyncio
    async def test_shrinks_oversized_quantity_to_member_count(
        self, db, billing, subscribed_team, fake_stripe
    ):
        remote = fake_stripe.add_subscription("sub_team1", [("prod_team", 27)])

        await billing.update_team_member_count(subscribed_team)

        item_id = remote.items[0].id
        assert fake_stripe.writes == [("update_subscription_item", (item_id, 1, "always_invoice"))]

    @pytest.mark.asyncio
    async def test_appends_missing_item(self, db, billing, subscribed_team, fake_stripe):
        await add_members(db, subscribed_team, 1)

        await billing.update_team_member_count(subscribed_team)

        assert fake_stripe.writes == [
            ("append_subscription_item", ("sub_team1", "prod_team", "price_team", 2, None))
        ]

    @pytest.mark.asyncio
    async def test_uses_team_type_override(self, db, billing, subscribed_team, fake_stripe):
        subscribed_team.team_type.properties.billing = PlanBilling(
            member_product="prod_plan", member_price="price_plan"
        )
        fake_stripe.add_subscription("sub_team1", [("prod_team", 5), ("prod_plan", 3)])

        await billing.update_team_member_count(subscribed_team)

        assert fake_stripe.item("sub_team1", "prod_plan").quantity == 1
        assert fake_stripe.item("sub_team1", "prod_team").quantity == 5

    @pytest.mark.asyncio
    async def test_no_subscription_raises_not_found(self, billing, team, fake_stripe):
        with pytest.raises(NotFoundError):
            await billing.update_team_member_count(team)

        assert fake_stripe.calls == []

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, billing, subscribed_team, fake_stripe):
        fake_stripe.fail_with = ProviderError("Stripe down")

        with pytest.raises(ProviderError):
            await billing.update_team_member_count(subscribed_team)


class TestDeviceReconciliation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("devices", [0, 1, 2])
    async def test_within_free_allocation_creates_nothing(
        self, db, billing, subscribed_team, fake_stripe, devices
    ):
        await add_devices(db, subscribed_team, devices)

        await billing.update_team_device_count(subscribed_team)

        assert fake_stripe.writes == []
        assert fake_stripe.item("sub_team1", "prod_device") is None

    @pytest.mark.asyncio
    async def test_beyond_free_allocation_appends(self, db, billing, subscribed_team, fake_stripe):
        await add_devices(db, subscribed_team, 3)

        await billing.update_team_device_count(subscribed_team)

        assert fake_stripe.writes == [
            ("append_subscription_item", ("sub_team1", "prod_device", "price_device", 1, None))
        ]

    @pytest.mark.asyncio
    async def test_bills_only_once_free_allocation_is_exceeded(
        self, db, billing, subscribed_team, fake_stripe
    ):
        for i in range(3):
            await db.create_device(Device(id=f"dev-{i}", team_id=subscribed_team.id, name="d"))
            await billing.update_team_device_count(subscribed_team)

            if i < 2:
                assert fake_stripe.writes == []

        assert fake_stripe.writes == [
            ("append_subscription_item", ("sub_team1", "prod_device", "price_device", 1, None))
        ]

    @pytest.mark.asyncio
    async def test_drops_to_zero_by_update_not_delete(
        self, db, billing, subscribed_team, fake_stripe
    ):
        remote = fake_stripe.add_subscription("sub_team1", [("prod_team", 1), ("prod_device", 2)])

        await billing.update_team_device_count(subscribed_team)

        device_item = remote.items[1]
        assert fake_stripe.writes == [
            ("update_subscription_item", (device_item.id, 0, "always_invoice"))
        ]
        # item survives with quantity 0
        assert fake_stripe.item("sub_team1", "prod_device").quantity == 0

    @pytest.mark.asyncio
    async def test_unconfigured_device_product_is_noop_at_zero(
        self, db, billing, subscribed_team, fake_stripe
    ):
        billing.plans.config.device_product = None
        billing.plans.config.device_price = None
        await add_devices(db, subscribed_team, 2)

        await billing.update_team_device_count(subscribed_team)

        assert fake_stripe.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_device_product_raises_when_billable(
        self, db, billing, subscribed_team, fake_stripe
    ):
        billing.plans.config.device_product = None
        billing.plans.config.device_price = None
        await add_devices(db, subscribed_team, 3)

        with pytest.raises(ConfigurationError):
            await billing.update_team_device_count(subscribed_team)

        assert fake_stripe.writes == []


class TestConcurrentReconciliation:
    @pytest.mark.asyncio
    async def test_concurrent_passes_append_once(self, db, billing, subscribed_team, fake_stripe):
        await add_devices(db, subscribed_team, 4)

        await asyncio.gather(
            billing.update_team_device_count(subscribed_team),
            billing.update_team_device_count(subscribed_team),
        )

        appends = [call for call in fake_stripe.writes if call[0] == "append_subscription_item"]
        assert len(appends) == 1
        assert fake_stripe.item("sub_team1", "prod_device").quantity == 2
        assert billing.reconciler._team_locks == {}

    @pytest.mark.asyncio
    async def test_team_lock_is_reentrant(self, billing, subscribed_team, fake_stripe):
        async def locked_pass():
            async with billing.reconciler.team_lock(subscribed_team.id):
                await billing.update_team_member_count(subscribed_team)
                await billing.update_team_device_count(subscribed_team)

        await asyncio.wait_for(locked_pass(), timeout=2)

        assert fake_stripe.item("sub_team1", "prod_team").quantity == 1
        assert billing.reconciler._team_locks == {}


class TestProjectReconciliation:
    @pytest.mark.asyncio
    async def test_add_projects_appends_with_metadata(
        self, db, billing, subscribed_team, fake_stripe
    ):
        projects = [
            Project(id=f"proj-{i}", team_id=subscribed_team.id, name=f"p{i}")
            for i in range(2)
        ]

        await billing.reconciler.add_projects(subscribed_team, projects)

        assert fake_stripe.writes == [
            (
                "append_subscription_item",
                (
                    "sub_team1",
                    "prod_project",
                    "price_project",
                    2,
                    {"proj-0": "true", "proj-1": "true"},
                ),
            )
        ]
        assert fake_stripe.subscriptions["sub_team1"].metadata == {
            "proj-0": "true",
            "proj-1": "true",
        }

    @pytest.mark.asyncio
    async def test_add_projects_is_idempotent(self, db, billing, subscribed_team, fake_stripe):
        project = await db.create_project(
            Project(
                id="proj-0",
                team_id=subscribed_team.id,
                name="p0",
                billing_state=BillingState.BILLED,
            )
        )

        await billing.reconciler.add_projects(subscribed_team, [project])
        fake_stripe.calls.clear()
        await billing.reconciler.add_projects(subscribed_team, [project])

        assert fake_stripe.writes == []

    @pytest.mark.asyncio
    async def test_existing_item_updates_then_writes_metadata(
        self, db, billing, subscribed_team, fake_stripe
    ):
        remote = fake_stripe.add_subscription("sub_team1", [("prod_project", 1)])
        remote.metadata["proj-old"] = "true"
        await db.create_project(
            Project(
                id="proj-old",
                team_id=subscribed_team.id,
                name="old",
                billing_state=BillingState.BILLED,
            )
        )
        new = Project(id="proj-new", team_id=subscribed_team.id, name="new")

        await billing.reconciler.add_projects(subscribed_team, [new])

        assert fake_stripe.writes == [
            ("update_subscription_item", (remote.items[0].id, 2, "always_invoice")),
            ("update_subscription_metadata", ("sub_team1", {"proj-new": "true"})),
        ]

    @pytest.mark.asyncio
    async def test_project_type_products_are_grouped(
        self, db, billing, subscribed_team, fake_stripe, project_type, premium_project_type
    ):
        projects = [
            Project(id="proj-s", team_id=subscribed_team.id, name="s", project_type_id="pt-small"),
            Project(id="proj-l1", team_id=subscribed_team.id, name="l1", project_type_id="pt-large"),
            Project(id="proj-l2", team_id=subscribed_team.id, name="l2", project_type_id="pt-large"),
        ]

        await billing.reconciler.add_projects(subscribed_team, projects)

        assert fake_stripe.item("sub_team1", "prod_project").quantity == 1
        assert fake_stripe.item("sub_team1", "prod_project_large").quantity == 2
        assert set(fake_stripe.subscriptions["sub_team1"].metadata) == {
            "proj-s",
            "proj-l1",
            "proj-l2",
        }

    @pytest.mark.asyncio
    async def test_remove_project_clears_metadata_and_quantity(
        self, db, billing, subscribed_team, fake_stripe
    ):
        remote = fake_stripe.add_subscription("sub_team1", [("prod_project", 1)])
        remote.metadata["proj-0"] = "true"
        project = Project(
            id="proj-0",
            team_id=subscribed_team.id,
            name="p0",
            billing_state=BillingState.BILLED,
        )

        await billing.reconciler.remove_project(subscribed_team, project)

        assert fake_stripe.item("sub_team1", "prod_project").quantity == 0
        assert fake_stripe.subscriptions["sub_team1"].metadata == {}
        assert ("update_subscription_metadata", ("sub_team1", {"proj-0": ""})) in fake_stripe.writes

    @pytest.mark.asyncio
    async def test_stale_project_items_converge_on_zero(
        self, db, billing, subscribed_team, fake_stripe, premium_project_type
    ):
        remote = fake_stripe.add_subscription(
            "sub_team1", [("prod_team", 1), ("prod_project", 3), ("prod_project_large", 2)]
        )

        await billing.sync_team(subscribed_team)

        assert fake_stripe.writes == [
            ("update_subscription_item", (remote.items[1].id, 0, "always_invoice")),
            ("update_subscription_item", (remote.items[2].id, 0, "always_invoice")),
        ]
        assert fake_stripe.item("sub_team1", "prod_project").quantity == 0
        assert fake_stripe.item("sub_team1", "prod_project_large").quantity == 0

    @pytest.mark.asyncio
    async def test_no_project_item_created_without_billed_projects(
        self, db, billing, subscribed_team, fake_stripe
    ):
        await billing.reconciler.update_team_project_count(subscribed_team)

        assert fake_stripe.writes == []
