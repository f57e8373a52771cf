from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from vmix_data_server.errors import Conflict, NotFound, ParseError, StorageError, ValidationError
from vmix_data_server.service import ProfileService
from vmix_data_server.store import AtomicStore


class RecordingSocket:
    closed = False

    def __init__(self) -> None:
        self.messages = []

    async def send_str(self, payload: str) -> None:
        self.messages.append(json.loads(payload))


def _service(tmp_path: Path):
    service = ProfileService(AtomicStore(tmp_path))
    ws = RecordingSocket()
    service.notifier.subscribe(ws)
    return service, ws


def _on_disk(tmp_path: Path, name: str = "demo"):
    return json.loads((tmp_path / f"{name}.json").read_text(encoding="utf-8"))


def test_add_item_creates_profile(tmp_path: Path) -> None:
    service, ws = _service(tmp_path)
    items = asyncio.run(service.add_item("demo", "score", "0"))
    assert items == {"score": "0"}
    assert _on_disk(tmp_path) == [{"score": "0"}]
    assert ws.messages == [{"type": "dataUpdate", "profileName": "demo", "changes": {"score": "0"}}]


def test_add_existing_key_conflicts_and_leaves_first_value(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)

    async def scenario():
        await service.add_item("demo", "k", "v1")
        with pytest.raises(Conflict) as excinfo:
            await service.add_item("demo", "k", "v2")
        return excinfo.value

    err = asyncio.run(scenario())
    assert err.message == "Key already exists"
    assert _on_disk(tmp_path) == [{"k": "v1"}]


def test_concurrent_adds_of_same_key_never_corrupt_the_file(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)

    async def scenario():
        return await asyncio.gather(
            service.add_item("demo", "k", "v1"),
            service.add_item("demo", "k", "v2"),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    assert all(isinstance(r, (dict, Conflict)) for r in results)
    assert _on_disk(tmp_path) in ([{"k": "v1"}], [{"k": "v2"}])


def test_null_value_is_accepted_but_missing_is_not(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)
    assert asyncio.run(service.add_item("demo", "note", None)) == {"note": None}
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(service.add_item("demo", "other"))
    assert excinfo.value.message == "Key and value are required"


@pytest.mark.parametrize("value", [{"x": 1}, [1, 2], float("inf")])
def test_non_scalar_values_are_rejected(tmp_path: Path, value) -> None:
    service, _ws = _service(tmp_path)
    with pytest.raises(ValidationError):
        asyncio.run(service.add_item("demo", "k", value))
    assert not (tmp_path / "demo.json").exists()


def test_name_is_checked_before_fields(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(service.add_item("../evil", None))
    assert excinfo.value.message == "Invalid profile name"
    assert list(tmp_path.iterdir()) == []


def test_update_of_missing_profile_or_key_is_not_found(tmp_path: Path) -> None:
    service, ws = _service(tmp_path)

    with pytest.raises(NotFound) as excinfo:
        asyncio.run(service.update_item("demo", "score", "1"))
    assert excinfo.value.message == "Profile not found"

    asyncio.run(service.add_item("demo", "score", "0"))
    with pytest.raises(NotFound) as excinfo:
        asyncio.run(service.update_item("demo", "missing", "1"))
    assert excinfo.value.message == "Key not found"

    with pytest.raises(NotFound):
        asyncio.run(service.delete_item("demo", "missing"))

    assert _on_disk(tmp_path) == [{"score": "0"}]
    assert len(ws.messages) == 1


def test_update_and_delete_item(tmp_path: Path) -> None:
    service, ws = _service(tmp_path)

    async def scenario():
        await service.add_item("demo", "score", "0")
        await service.add_item("demo", "team", "Home")
        await service.update_item("demo", "score", "1")
        return await service.delete_item("demo", "team")

    assert asyncio.run(scenario()) == {"score": "1"}
    assert _on_disk(tmp_path) == [{"score": "1"}]
    assert [m["changes"] for m in ws.messages] == [
        {"score": "0"},
        {"team": "Home"},
        {"score": "1"},
        {"team": None},
    ]


def test_render_reflects_writes(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)

    async def scenario():
        await service.add_item("demo", "score", "0")
        first = await service.render("demo")
        again = await service.render("demo")
        await service.update_item("demo", "score", "1")
        after = await service.render("demo")
        return first, again, after

    first, again, after = asyncio.run(scenario())
    assert json.loads(first.body) == [{"score": "0"}]
    assert again.cached and again.body == first.body and again.etag == first.etag
    assert not after.cached
    assert json.loads(after.body) == [{"score": "1"}]


def test_render_of_missing_profile_is_empty_and_not_cached(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)
    out = asyncio.run(service.render("nobody"))
    assert json.loads(out.body) == [{}]
    assert out.content_type == "application/json; charset=utf-8"
    assert len(service.cache) == 0


def test_render_applies_format_and_filters(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)

    async def scenario():
        await service.save_profile("demo", {"title": "Hi", "score": 2})
        return await service.render("demo", "text", include="score")

    out = asyncio.run(scenario())
    assert out.body == "score: 2"
    assert out.content_type == "text/plain; charset=utf-8"


def test_render_of_corrupt_profile_is_parse_error(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)
    (tmp_path / "demo.json").write_text("[{\"a\": {\"nested\": 1}}]", encoding="utf-8")
    with pytest.raises(ParseError):
        asyncio.run(service.render("demo"))


def test_failed_write_neither_invalidates_nor_notifies(tmp_path: Path) -> None:
    service, ws = _service(tmp_path)

    async def failing_write(name, items):
        raise StorageError()

    async def scenario():
        await service.add_item("demo", "score", "0")
        await service.render("demo")
        service.store.write = failing_write
        with pytest.raises(StorageError):
            await service.update_item("demo", "score", "1")
        return await service.render("demo")

    out = asyncio.run(scenario())
    assert out.cached
    assert json.loads(out.body) == [{"score": "0"}]
    assert len(ws.messages) == 1


def test_render_racing_a_write_does_not_cache_stale_bytes(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)
    original_read = service.store.read

    async def scenario():
        await service.save_profile("demo", {"score": "0"})
        read_done = asyncio.Event()
        release = asyncio.Event()

        async def slow_read(name):
            items = await original_read(name)
            read_done.set()
            await release.wait()
            return items

        service.store.read = slow_read
        pending = asyncio.ensure_future(service.render("demo"))
        await read_done.wait()
        service.store.read = original_read

        await service.update_item("demo", "score", "1")
        release.set()
        await pending
        return await service.render("demo")

    out = asyncio.run(scenario())
    assert json.loads(out.body) == [{"score": "1"}]


def test_save_profile_replaces_items(tmp_path: Path) -> None:
    service, ws = _service(tmp_path)

    async def scenario():
        await service.save_profile("demo", {"a": 1, "b": 2})
        return await service.save_profile("demo", {"a": 1, "c": 3})

    assert asyncio.run(scenario()) == {"a": 1, "c": 3}
    assert ws.messages[-1]["changes"] == {"b": None, "c": 3}


@pytest.mark.parametrize("items", [[{"a": 1}], "x", {"a": {"b": 1}}])
def test_save_profile_rejects_bad_items(tmp_path: Path, items) -> None:
    service, _ws = _service(tmp_path)
    with pytest.raises(ValidationError):
        asyncio.run(service.save_profile("demo", items))


def test_delete_profile_is_idempotent_and_notifies_removal(tmp_path: Path) -> None:
    service, ws = _service(tmp_path)

    async def scenario():
        await service.save_profile("demo", {"a": 1})
        await service.render("demo")
        first = await service.delete_profile("demo")
        second = await service.delete_profile("demo")
        return first, second

    assert asyncio.run(scenario()) == (True, False)
    assert ws.messages[-1]["changes"] == {"a": None}
    assert len(ws.messages) == 2
    assert len(service.cache) == 0
    assert asyncio.run(service.list_profiles()) == []


def test_get_items_of_missing_profile_is_empty(tmp_path: Path) -> None:
    service, _ws = _service(tmp_path)
    assert asyncio.run(service.get_items("nobody")) == {}


def test_delete_profile_after_restart_notifies_removed_keys(tmp_path: Path) -> None:
    (tmp_path / "demo.json").write_text('[{"a": 1, "b": "x"}]', encoding="utf-8")
    service, ws = _service(tmp_path)

    assert asyncio.run(service.delete_profile("demo")) is True
    assert ws.messages == [{"type": "dataUpdate", "profileName": "demo", "changes": {"a": None, "b": None}}]
    assert service.notifier.snapshot("demo") is None


def test_delete_of_corrupt_profile_still_removes_it(tmp_path: Path) -> None:
    (tmp_path / "demo.json").write_text("{broken", encoding="utf-8")
    service, ws = _service(tmp_path)

    assert asyncio.run(service.delete_profile("demo")) is True
    assert ws.messages == []
    assert not (tmp_path / "demo.json").exists()
