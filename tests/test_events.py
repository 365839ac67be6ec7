import asyncio

from cloner.events import (
    CancelledEvent,
    CompletedEvent,
    EventChannel,
    FailedEvent,
    ProgressEvent,
)
from cloner.models import Phase


def _progress(pct: int) -> ProgressEvent:
    return ProgressEvent(operation_id="op", phase=Phase.ROLES, percent=pct, message="m")


def test_publish_fans_out_to_subscribers() -> None:
    async def main():
        ch = EventChannel()
        a, b = ch.subscribe(), ch.subscribe()
        assert ch.publish(_progress(10)) == 2
        return a.get_nowait(), b.get_nowait()

    ea, eb = asyncio.run(main())
    assert ea is eb
    assert ea.percent == 10


def test_no_replay_for_late_subscribers() -> None:
    async def main():
        ch = EventChannel()
        ch.publish(_progress(10))
        q = ch.subscribe()
        ch.publish(_progress(20))
        return [q.get_nowait().percent], q.empty()

    seen, empty = asyncio.run(main())
    assert seen == [20]
    assert empty


def test_full_queue_drops_event() -> None:
    async def main():
        ch = EventChannel(maxsize=1)
        q = ch.subscribe()
        assert ch.publish(_progress(1)) == 1
        assert ch.publish(_progress(2)) == 0
        return q.get_nowait().percent

    assert asyncio.run(main()) == 1


def test_unsubscribe_stops_delivery() -> None:
    async def main():
        ch = EventChannel()
        q = ch.subscribe()
        ch.unsubscribe(q)
        assert ch.publish(_progress(1)) == 0
        return q.empty(), ch.subscriber_count

    assert asyncio.run(main()) == (True, 0)


def test_close_sends_end_marker_even_when_full() -> None:
    async def main():
        ch = EventChannel(maxsize=1)
        q = ch.subscribe()
        ch.publish(_progress(1))
        ch.close()
        late = ch.subscribe()
        assert ch.publish(_progress(2)) == 0
        return q.get_nowait(), late.get_nowait(), ch.closed

    marker, late_marker, closed = asyncio.run(main())
    assert marker is None
    assert late_marker is None
    assert closed


def test_events_forward_to_parent() -> None:
    async def main():
        parent = EventChannel(name="all")
        child = EventChannel(parent=parent)
        q = parent.subscribe()
        child.publish(_progress(5))
        child.close()
        return q.get_nowait(), parent.closed

    ev, parent_closed = asyncio.run(main())
    assert ev.percent == 5
    assert parent_closed is False


def test_terminal_flags_and_dicts() -> None:
    done = CompletedEvent(operation_id="op", source_id=1, target_id=2, name="n", invite_code="x")
    failed = FailedEvent(operation_id="op", phase=Phase.CHANNELS, error="boom")
    cancelled = CancelledEvent(operation_id="op", phase=Phase.ROLES)

    assert not _progress(1).terminal
    assert done.terminal and failed.terminal and cancelled.terminal

    assert done.to_dict()["type"] == "completed"
    assert done.to_dict()["target_id"] == "2"
    assert failed.to_dict() | {"at": 0} == {
        "type": "failed",
        "operation_id": "op",
        "at": 0,
        "phase": "channels",
        "error": "boom",
    }
    assert cancelled.to_dict()["phase"] == "roles"
    assert _progress(40).to_dict()["percent"] == 40
