from __future__ import annotations

import asyncio
import json
from typing import List

from vmix_data_server.notifier import ChangeNotifier, compute_changes


class FakeSocket:
    def __init__(self, fail: bool = False, closed: bool = False) -> None:
        self.sent: List[str] = []
        self.fail = fail
        self.closed = closed

    async def send_str(self, payload: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(payload)

    async def close(self) -> None:
        self.closed = True


def test_compute_changes_reports_new_changed_and_removed() -> None:
    assert compute_changes({"a": 1, "b": 2}, {"a": 1, "c": 3}) == {"b": None, "c": 3}


def test_compute_changes_of_identical_state_is_empty() -> None:
    assert compute_changes({"a": "x"}, {"a": "x"}) == {}


def test_bool_and_int_are_different_values() -> None:
    assert compute_changes({"a": 1}, {"a": True}) == {"a": True}
    assert compute_changes({"a": False}, {"a": 0}) == {"a": 0}


def test_int_and_equal_float_are_the_same_value() -> None:
    assert compute_changes({"a": 1}, {"a": 1.0}) == {}


def test_null_value_is_a_change_from_missing() -> None:
    assert compute_changes({}, {"a": None}) == {"a": None}


def test_publish_sends_only_the_delta() -> None:
    notifier = ChangeNotifier()
    ws = FakeSocket()
    notifier.subscribe(ws)

    async def scenario():
        notifier.record("demo", {"a": 1, "b": 2})
        return await notifier.publish("demo", {"a": 1, "c": 3})

    assert asyncio.run(scenario()) == 1
    assert [json.loads(m) for m in ws.sent] == [
        {"type": "dataUpdate", "profileName": "demo", "changes": {"b": None, "c": 3}}
    ]
    assert notifier.snapshot("demo") == {"a": 1, "c": 3}


def test_first_publish_reports_every_key() -> None:
    notifier = ChangeNotifier()
    ws = FakeSocket()
    notifier.subscribe(ws)
    asyncio.run(notifier.publish("demo", {"a": 1}))
    assert json.loads(ws.sent[0])["changes"] == {"a": 1}


def test_noop_write_sends_nothing_but_keeps_snapshot() -> None:
    notifier = ChangeNotifier()
    ws = FakeSocket()
    notifier.subscribe(ws)

    async def scenario():
        await notifier.publish("demo", {"a": 1})
        return await notifier.publish("demo", {"a": 1})

    assert asyncio.run(scenario()) == 0
    assert len(ws.sent) == 1


def test_snapshots_are_per_profile() -> None:
    notifier = ChangeNotifier()
    notifier.record("one", {"a": 1})
    assert notifier.record("two", {"a": 1}) == {"a": 1}
    assert notifier.snapshot("missing") is None


def test_failed_subscriber_is_dropped_and_others_still_served() -> None:
    notifier = ChangeNotifier()
    good, bad, closed = FakeSocket(), FakeSocket(fail=True), FakeSocket(closed=True)
    for ws in (good, bad, closed):
        notifier.subscribe(ws)

    sent = asyncio.run(notifier.publish("demo", {"a": 1}))

    assert sent == 1
    assert len(good.sent) == 1
    assert closed.sent == []
    assert bad not in notifier.clients()
    assert notifier.subscriber_count == 2


def test_forget_makes_next_publish_a_full_state() -> None:
    notifier = ChangeNotifier()
    notifier.record("demo", {"a": 1})
    notifier.forget("demo")
    assert notifier.record("demo", {"a": 1}) == {"a": 1}


def test_close_all_closes_and_clears() -> None:
    notifier = ChangeNotifier()
    ws = FakeSocket()
    notifier.subscribe(ws)
    asyncio.run(notifier.close_all())
    assert ws.closed
    assert notifier.subscriber_count == 0
