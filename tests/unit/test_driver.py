"""Unit tests for the execution driver."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from stackplan.config.settings import Settings
from stackplan.core.exceptions import (
    ApplyCancelledError,
    ConcurrentModificationError,
    InvalidChangeSetError,
    PartialApplyError,
    ProviderError,
    ProviderRejectedError,
    ProviderThrottledError,
)
from stackplan.execution.driver import ExecutionDriver
from stackplan.models.plan import ChangeAction, NodeDiff, ProvisioningPlan
from stackplan.models.resources import DeploymentUnit, ref


def chain_unit(length: int = 4) -> DeploymentUnit:
    """Unit of nodes n1 <- n2 <- ... where each references the previous one."""
    unit = DeploymentUnit(name="chain")
    unit.add("n1", "log-group", name="n1")
    for index in range(2, length + 1):
        unit.add(f"n{index}", "log-group", name=f"n{index}", upstream=ref(f"n{index - 1}.id"))
    return unit


def fan_unit(width: int = 4) -> DeploymentUnit:
    """Unit of independent nodes."""
    unit = DeploymentUnit(name="fan")
    for index in range(1, width + 1):
        unit.add(f"n{index}", "log-group", name=f"n{index}")
    return unit


async def apply_unit(planner, driver, unit, **kwargs):
    change_set = await planner.plan(unit)
    return await driver.apply_change_set(change_set, **kwargs)


class TestApply:
    """Test successful applies."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(self, planner, driver, provider, sample_unit):
        result = await apply_unit(planner, driver, sample_unit)

        assert provider.operations() == ["create:net", "create:storage", "create:service"]
        assert result.applied == ["net", "storage", "service"]
        assert result.snapshot.version == 3

    @pytest.mark.asyncio
    async def test_references_resolved_from_outputs(self, planner, driver, provider, store, sample_unit):
        await apply_unit(planner, driver, sample_unit)
        snapshot = await store.read("app")

        net_id = snapshot.outputs_of("net")["id"]
        storage = snapshot.resources["storage"]
        assert storage.resolved_attributes["network_id"] == net_id
        assert storage.attributes["network_id"] == {"ref": "net.id"}
        assert storage.depends_on == ["net"]
        assert provider.calls[1].attributes["network_id"] == net_id

    @pytest.mark.asyncio
    async def test_second_apply_is_noop(self, planner, driver, provider, sample_unit):
        await apply_unit(planner, driver, sample_unit)
        provider.calls.clear()

        change_set = await planner.plan(sample_unit)
        result = await driver.apply_change_set(change_set)

        assert change_set.has_changes is False
        assert result.applied == []
        assert result.skipped == ["net", "storage", "service"]
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_update_in_place(self, planner, driver, provider, store, sample_unit):
        await apply_unit(planner, driver, sample_unit)
        before = (await store.read("app")).outputs_of("service")["id"]
        sample_unit.get("service").attributes["desired_count"] = 3

        await apply_unit(planner, driver, sample_unit)

        snapshot = await store.read("app")
        assert provider.operations("service") == ["create:service", "update:service"]
        assert snapshot.outputs_of("service")["id"] == before
        assert snapshot.resources["service"].attributes["desired_count"] == 3

    @pytest.mark.asyncio
    async def test_removed_node_deleted_after_creates(self, planner, driver, provider, store, sample_unit):
        await apply_unit(planner, driver, sample_unit)
        provider.calls.clear()
        sample_unit.resources = [node for node in sample_unit.resources if node.id != "service"]
        sample_unit.add("logs", "log-group", name="/app")

        await apply_unit(planner, driver, sample_unit)

        assert provider.operations() == ["create:logs", "delete:service"]
        assert set((await store.read("app")).resources) == {"net", "storage", "logs"}

    @pytest.mark.asyncio
    async def test_destroy_runs_in_reverse_order(self, planner, driver, provider, store, sample_unit):
        await apply_unit(planner, driver, sample_unit)
        provider.calls.clear()

        result = await driver.destroy("app")

        assert provider.operations() == ["delete:service", "delete:storage", "delete:net"]
        assert result.applied == ["service", "storage", "net"]
        assert (await store.read("app")).is_empty
        assert provider.resources == {}

    @pytest.mark.asyncio
    async def test_destroy_plan_deletes_everything(self, planner, driver, sample_unit):
        await apply_unit(planner, driver, sample_unit)

        change_set = await planner.plan_destroy("app")

        assert change_set.plan.steps == ("service", "storage", "net")
        assert change_set.summary() == {"delete": 3}


class TestReplace:
    """Test both replacement strategies."""

    @pytest.mark.asyncio
    async def test_delete_before_create(self, planner, driver, provider, store, sample_unit):
        await apply_unit(planner, driver, sample_unit)
        old_id = (await store.read("app")).outputs_of("storage")["id"]
        provider.calls.clear()
        sample_unit.get("storage").attributes["performance_mode"] = "maxIO"

        await apply_unit(planner, driver, sample_unit)

        snapshot = await store.read("app")
        new_id = snapshot.outputs_of("storage")["id"]
        assert provider.operations() == ["delete:storage", "create:storage", "update:service"]
        assert new_id != old_id
        assert snapshot.resources["service"].resolved_attributes["file_system_id"] == new_id

    @pytest.mark.asyncio
    async def test_create_before_destroy(self, planner, provider, store, settings, sample_unit):
        driver = ExecutionDriver(
            provider,
            store,
            settings.model_copy(update={"replace_strategy": "create_before_destroy"}),
        )
        await apply_unit(planner, driver, sample_unit)
        old_id = (await store.read("app")).outputs_of("storage")["id"]
        provider.calls.clear()
        sample_unit.get("storage").attributes["performance_mode"] = "maxIO"

        await apply_unit(planner, driver, sample_unit)

        assert provider.operations("storage") == ["create:storage", "delete:storage"]
        assert old_id not in provider.resources
        assert len(provider.physical_ids("storage")) == 1
        assert (await store.read("app")).resources["storage"].deposed == []

    @pytest.mark.asyncio
    async def test_failed_delete_of_superseded_resource_retried(
        self, planner, provider, store, settings, sample_unit
    ):
        """The old resource stays on record until a later run deletes it."""
        driver = ExecutionDriver(
            provider,
            store,
            settings.model_copy(update={"replace_strategy": "create_before_destroy"}),
        )
        await apply_unit(planner, driver, sample_unit)
        old_id = (await store.read("app")).outputs_of("storage")["id"]
        sample_unit.get("storage").attributes["performance_mode"] = "maxIO"
        provider.fail_on("storage", "delete", times=1)

        with pytest.raises(PartialApplyError) as exc_info:
            await apply_unit(planner, driver, sample_unit)

        assert exc_info.value.failed == "storage"
        snapshot = await store.read("app")
        new_id = snapshot.outputs_of("storage")["id"]
        assert new_id != old_id
        assert [entry["id"] for entry in snapshot.resources["storage"].deposed] == [old_id]

        change_set = await planner.plan(sample_unit)
        assert change_set.has_changes
        assert change_set.diffs["storage"].deposed == [old_id]
        assert change_set.summary()["deposed"] == 1

        provider.calls.clear()
        await driver.apply_change_set(change_set)

        snapshot = await store.read("app")
        assert provider.operations("storage") == ["delete:storage"]
        assert provider.physical_ids("storage") == [new_id]
        assert snapshot.resources["storage"].deposed == []
        assert snapshot.resources["service"].resolved_attributes["file_system_id"] == new_id


class TestFailures:
    """Test partial failure handling."""

    @pytest.mark.asyncio
    async def test_failure_on_third_of_four(self, planner, driver, provider, store):
        provider.fail_on("n3", "create")

        with pytest.raises(PartialApplyError) as exc_info:
            await apply_unit(planner, driver, chain_unit(4))

        error = exc_info.value
        assert error.last_applied == "n2"
        assert error.failed == "n3"
        assert isinstance(error.__cause__, ProviderRejectedError)

        snapshot = await store.read("chain")
        assert set(snapshot.resources) == {"n1", "n2"}
        assert snapshot.version == 2
        assert "create:n4" not in provider.operations()

    @pytest.mark.asyncio
    async def test_reapply_after_failure_resumes(self, planner, driver, provider):
        provider.fail_on("n3", "create", times=1)
        with pytest.raises(PartialApplyError):
            await apply_unit(planner, driver, chain_unit(4))

        result = await apply_unit(planner, driver, chain_unit(4))

        assert result.applied == ["n3", "n4"]
        assert result.skipped == ["n1", "n2"]

    @pytest.mark.asyncio
    async def test_reapply_after_partial_replace_updates_dependent(
        self, planner, driver, provider, store, sample_unit
    ):
        """A dependent left pointing at a replaced resource is updated on the next run."""
        await apply_unit(planner, driver, sample_unit)
        sample_unit.get("storage").attributes["performance_mode"] = "maxIO"
        provider.fail_on("service", "update", times=1)

        with pytest.raises(PartialApplyError) as exc_info:
            await apply_unit(planner, driver, sample_unit)

        assert exc_info.value.last_applied == "storage"
        assert exc_info.value.failed == "service"

        change_set = await planner.plan(sample_unit)
        assert change_set.diffs["storage"].action == ChangeAction.UNCHANGED
        assert change_set.diffs["service"].action == ChangeAction.UPDATE
        assert change_set.diffs["service"].changed_attributes == ["file_system_id"]

        await driver.apply_change_set(change_set)

        snapshot = await store.read("app")
        assert (
            snapshot.resources["service"].resolved_attributes["file_system_id"]
            == snapshot.outputs_of("storage")["id"]
        )

    @pytest.mark.asyncio
    async def test_throttled_call_retried(self, planner, driver, provider, sample_unit):
        provider.throttle("storage", "create", times=2, retry_after=0)

        result = await apply_unit(planner, driver, sample_unit)

        assert provider.operations("storage") == ["create:storage"] * 3
        assert result.applied == ["net", "storage", "service"]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, planner, driver, provider, sample_unit):
        provider.throttle("storage", "create", times=10)

        with pytest.raises(PartialApplyError) as exc_info:
            await apply_unit(planner, driver, sample_unit)

        assert isinstance(exc_info.value.__cause__, ProviderThrottledError)
        assert len(provider.operations("storage")) == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, planner, driver, provider, sample_unit):
        provider.create = AsyncMock(side_effect=RuntimeError("socket closed"))

        with pytest.raises(PartialApplyError) as exc_info:
            await apply_unit(planner, driver, sample_unit)

        cause = exc_info.value.__cause__
        assert isinstance(cause, ProviderError)
        assert cause.operation == "create"
        assert isinstance(cause.__cause__, RuntimeError)
        assert exc_info.value.last_applied is None

    @pytest.mark.asyncio
    async def test_concurrent_applies_conflict(self, planner, provider, store, settings, sample_unit):
        """Two runs on the same unit: exactly one wins the state write."""
        first = ExecutionDriver(provider, store, settings)
        second = ExecutionDriver(provider, store, settings)
        change_set = await planner.plan(sample_unit)

        results = await asyncio.gather(
            first.apply_change_set(change_set),
            second.apply_change_set(change_set),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConcurrentModificationError)]
        assert len(conflicts) == 1
        assert len(results) - len(conflicts) == 1
        assert conflicts[0].unit == "app"

        # The losing run created net before its state write was refused
        orphaned = conflicts[0].details["orphaned"]
        recorded = (await store.read("app")).outputs_of("net")["id"]
        assert len(orphaned) == 1
        assert orphaned[0] in provider.physical_ids("net")
        assert orphaned[0] != recorded

    @pytest.mark.asyncio
    async def test_missing_desired_node_rejected(self, driver):
        plan = ProvisioningPlan(unit="app", steps=("net",))
        diffs = {"net": NodeDiff(node_id="net", action=ChangeAction.CREATE)}

        with pytest.raises(InvalidChangeSetError) as exc_info:
            await driver.apply(plan, diffs)

        assert exc_info.value.details == {"unit": "app", "node_id": "net"}


class TestConcurrencyAndCancellation:
    """Test fan-out limits and cancellation."""

    @pytest.mark.asyncio
    async def test_sequential_by_default(self, planner, provider, store, settings):
        driver = ExecutionDriver(provider, store, settings)
        provider.latency = 0.01

        await apply_unit(planner, driver, fan_unit(4))

        assert provider.max_in_flight == 1
        assert provider.operations() == ["create:n1", "create:n2", "create:n3", "create:n4"]

    @pytest.mark.asyncio
    async def test_fan_out_bounded(self, planner, provider, store, settings):
        driver = ExecutionDriver(provider, store, settings.model_copy(update={"max_concurrency": 2}))
        provider.latency = 0.01

        result = await apply_unit(planner, driver, fan_unit(5))

        assert provider.max_in_flight == 2
        assert sorted(result.applied) == ["n1", "n2", "n3", "n4", "n5"]
        assert result.snapshot.version == 5

    @pytest.mark.asyncio
    async def test_dependencies_never_overlap(self, planner, provider, store, settings):
        driver = ExecutionDriver(provider, store, settings.model_copy(update={"max_concurrency": 4}))
        provider.latency = 0.01

        await apply_unit(planner, driver, chain_unit(3))

        assert provider.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_launches(self, planner, driver, provider, store):
        release = provider.hold("n2")
        task = asyncio.create_task(apply_unit(planner, driver, chain_unit(4)))

        await provider.wait_started("n2")
        driver.cancel()
        release.set()

        with pytest.raises(ApplyCancelledError) as exc_info:
            await task

        assert exc_info.value.last_applied == "n2"
        assert exc_info.value.pending == ["n3", "n4"]
        assert set((await store.read("chain")).resources) == {"n1", "n2"}
        assert driver.cancel_requested is False

    @pytest.mark.asyncio
    async def test_task_cancellation_persists_in_flight_node(self, planner, driver, provider, store):
        release = provider.hold("n2")
        task = asyncio.create_task(apply_unit(planner, driver, chain_unit(3)))

        await provider.wait_started("n2")
        task.cancel()
        await asyncio.sleep(0)
        release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert set((await store.read("chain")).resources) == {"n1", "n2"}
        assert "create:n3" not in provider.operations()


class TestRefresh:
    """Test drift reconciliation."""

    @pytest.mark.asyncio
    async def test_vanished_resource_dropped_and_recreated(self, planner, driver, provider, store, sample_unit):
        await apply_unit(planner, driver, sample_unit)
        provider.forget("storage")

        snapshot = await driver.refresh("app")

        assert set(snapshot.resources) == {"net", "service"}
        change_set = await planner.plan(sample_unit)
        assert change_set.diffs["storage"].action == ChangeAction.CREATE
        assert change_set.diffs["service"].action == ChangeAction.UPDATE

    @pytest.mark.asyncio
    async def test_dependents_follow_recreated_resource(self, planner, driver, provider, store, sample_unit):
        await apply_unit(planner, driver, sample_unit)
        provider.forget("net")
        await driver.refresh("app")

        change_set = await planner.plan(sample_unit)

        assert {node_id: diff.action.value for node_id, diff in change_set.diffs.items()} == {
            "net": "create",
            "storage": "replace",
            "service": "update",
        }

        await driver.apply_change_set(change_set)

        snapshot = await store.read("app")
        assert snapshot.resources["storage"].resolved_attributes["network_id"] == snapshot.outputs_of("net")["id"]
        assert (
            snapshot.resources["service"].resolved_attributes["file_system_id"]
            == snapshot.outputs_of("storage")["id"]
        )

    @pytest.mark.asyncio
    async def test_no_drift_keeps_version(self, planner, driver, store, sample_unit):
        result = await apply_unit(planner, driver, sample_unit)

        snapshot = await driver.refresh("app")

        assert snapshot.version == result.snapshot.version
