from __future__ import annotations

import asyncio

import pytest
from conftest import REQUESTER_ID, SOURCE_ID, FakeWorkspaceClient, scenario_a_snapshot

from cloner.errors import CapacityExceeded, OperationNotFound, Unauthorized
from cloner.events import CancelledEvent, CompletedEvent, ProgressEvent
from cloner.models import Phase
from cloner.registry import OperationRegistry


def _registry(client, config, governor, **kw) -> OperationRegistry:
    return OperationRegistry(client, config=config, governor=governor, **kw)


def test_start_runs_to_completion(fake_client, config, governor):
    async def main():
        reg = _registry(fake_client, config, governor)
        op_id = reg.start(SOURCE_ID, REQUESTER_ID)
        assert reg.get_status(op_id).active
        status = await reg.wait(op_id)
        return reg, op_id, status

    reg, op_id, status = asyncio.run(main())
    assert status.phase is Phase.COMPLETED
    assert status.progress == 100
    assert reg.active_count == 0
    with pytest.raises(OperationNotFound):
        reg.get_status(op_id)


def test_capacity_ceiling(fake_client, config, governor):
    async def main():
        reg = _registry(fake_client, config, governor, max_concurrent=2)
        first = reg.start(SOURCE_ID, REQUESTER_ID)
        reg.start(SOURCE_ID, REQUESTER_ID)
        with pytest.raises(CapacityExceeded) as exc:
            reg.start(SOURCE_ID, REQUESTER_ID)
        assert exc.value.limit == 2

        await reg.wait(first)
        third = reg.start(SOURCE_ID, REQUESTER_ID)
        await reg.aclose()
        return third

    assert asyncio.run(main())


def test_options_mapping_is_accepted(fake_client, config, governor):
    async def main():
        reg = _registry(fake_client, config, governor)
        op_id = reg.start(SOURCE_ID, REQUESTER_ID, {"include_roles": False, "name": "Copy"})
        return await reg.wait(op_id)

    status = asyncio.run(main())
    assert status.phase is Phase.COMPLETED
    assert "create_role" not in fake_client.calls


def test_cancel_unknown_operation(fake_client, config, governor):
    reg = _registry(fake_client, config, governor)
    with pytest.raises(OperationNotFound):
        reg.request_cancel("nope", REQUESTER_ID)


def test_cancel_by_other_user_is_unauthorized(fake_client, config, governor):
    async def main():
        reg = _registry(fake_client, config, governor)
        op_id = reg.start(SOURCE_ID, REQUESTER_ID)
        with pytest.raises(Unauthorized):
            reg.request_cancel(op_id, REQUESTER_ID + 1)
        assert reg.get_status(op_id).cancel_requested is False
        return await reg.wait(op_id)

    assert asyncio.run(main()).phase is Phase.COMPLETED


def test_scenario_c_cancel_during_channels(fake_client, config, governor):
    async def main():
        reg = _registry(fake_client, config, governor)
        op_id = reg.start(SOURCE_ID, REQUESTER_ID)
        q = reg.subscribe(op_id)

        def cancel(kind, spec):
            if kind == "channels":
                reg.request_cancel(op_id, REQUESTER_ID)

        fake_client.before_create.append(cancel)
        status = await reg.wait(op_id)

        events = []
        while True:
            ev = q.get_nowait()
            if ev is None:
                break
            events.append(ev)
        return reg, op_id, status, events

    reg, op_id, status, events = asyncio.run(main())
    assert status.phase is Phase.CANCELLED
    assert status.target_workspace_id is not None
    assert status.target_workspace_id not in fake_client.workspaces
    assert isinstance(events[-1], CancelledEvent)
    assert events[-1].phase is Phase.CHANNELS
    with pytest.raises(OperationNotFound):
        reg.get_status(op_id)


def test_status_retention(fake_client, config, governor):
    now = [0.0]

    async def main():
        reg = _registry(
            fake_client, config, governor, retention_seconds=60, clock=lambda: now[0]
        )
        op_id = reg.start(SOURCE_ID, REQUESTER_ID)
        await reg.wait(op_id)
        return reg, op_id

    reg, op_id = asyncio.run(main())
    kept = reg.get_status(op_id)
    assert kept.phase is Phase.COMPLETED
    assert kept.to_dict()["status"] == "completed"

    now[0] = 61.0
    with pytest.raises(OperationNotFound):
        reg.get_status(op_id)



def test_wait_after_run_finished(fake_client, config, governor):
    async def main():
        reg = _registry(fake_client, config, governor)
        op_id = reg.start(SOURCE_ID, REQUESTER_ID)
        while reg.active_count:
            await asyncio.sleep(0)
        return reg, op_id, await reg.wait(op_id)

    reg, op_id, status = asyncio.run(main())
    assert status.phase is Phase.COMPLETED
    with pytest.raises(OperationNotFound):
        reg.get_status(op_id)


def test_start_without_loop_keeps_capacity(fake_client, config, governor):
    reg = _registry(fake_client, config, governor, max_concurrent=1)
    with pytest.raises(RuntimeError):
        reg.start(SOURCE_ID, REQUESTER_ID)
    assert reg.active_count == 0

def test_firehose_sees_all_runs(config, governor):
    client = FakeWorkspaceClient({SOURCE_ID: scenario_a_snapshot(), 200: scenario_a_snapshot()})

    async def main():
        reg = _registry(client, config, governor)
        q = reg.events.subscribe()
        a = reg.start(SOURCE_ID, REQUESTER_ID)
        b = reg.start(200, REQUESTER_ID)
        await reg.wait(a)
        await reg.wait(b)
        await reg.aclose()
        seen = []
        while True:
            ev = q.get_nowait()
            if ev is None:
                break
            seen.append(ev)
        return a, b, seen

    a, b, seen = asyncio.run(main())
    completed = {e.operation_id for e in seen if isinstance(e, CompletedEvent)}
    assert completed == {a, b}
    assert any(isinstance(e, ProgressEvent) for e in seen)


def test_list_active(fake_client, config, governor):
    async def main():
        reg = _registry(fake_client, config, governor)
        op_id = reg.start(SOURCE_ID, REQUESTER_ID)
        listed = [s.operation_id for s in reg.list_active()]
        await reg.wait(op_id)
        return op_id, listed, reg.list_active()

    op_id, listed, after = asyncio.run(main())
    assert listed == [op_id]
    assert after == []


def test_aclose_cancels_and_rolls_back(fake_client, config, governor):
    async def main():
        reg = _registry(fake_client, config, governor)
        op_id = reg.start(SOURCE_ID, REQUESTER_ID)
        # let the run create its guild first
        while "create_role" not in fake_client.calls:
            await asyncio.sleep(0)
        await reg.aclose()
        return reg, op_id

    reg, op_id = asyncio.run(main())
    assert reg.active_count == 0
    assert len(fake_client.deleted) == 1
    assert fake_client.workspaces == {}
    assert reg.events.closed
