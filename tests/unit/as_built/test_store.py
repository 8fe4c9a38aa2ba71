from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from as_built.config import LlmProvider, LlmTier, ScanStatus
from as_built.exceptions import InvalidStatusTransitionError, ScanNotFoundError
from as_built.models import ScanOutputPayload, TokenUsage
from as_built.store import BaseScanStore, InMemoryScanStore, JsonFileScanStore

if TYPE_CHECKING:
    from pytest_mock import MockerFixture

PAYLOAD = ScanOutputPayload(
    manifest_doc="agent",
    human_doc="human",
    project_name="demo",
    file_count=3,
    token_usage=TokenUsage(prompt_tokens=10, completion_tokens=5),
)


@pytest.fixture(params=["memory", "json"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> BaseScanStore:
    if request.param == "memory":
        return InMemoryScanStore()
    return JsonFileScanStore(tmp_path / "scans")


@pytest.mark.unit
def test_create_pending_then_complete(store: BaseScanStore) -> None:
    async def scenario() -> None:
        await store.create_pending("s1", project_name="demo", provider=LlmProvider.CLAUDE, tier=LlmTier.PREMIUM)
        await store.update_status("s1", ScanStatus.PROCESSING)
        await store.append_progress("s1", "Collecting files...")
        await store.save_outputs("s1", PAYLOAD, ScanStatus.COMPLETED)

    asyncio.run(scenario())
    record = asyncio.run(store.get("s1"))

    assert record.status is ScanStatus.COMPLETED
    assert record.progress_log == ["Collecting files..."]
    assert record.manifest_doc == "agent"
    assert record.token_usage.total_tokens == 15
    assert record.provider is LlmProvider.CLAUDE
    assert record.completed_at is not None


@pytest.mark.unit
def test_terminal_records_are_frozen(store: BaseScanStore) -> None:
    async def scenario() -> None:
        await store.create_pending("s1")
        await store.update_status("s1", ScanStatus.FAILED, "boom")

    asyncio.run(scenario())

    with pytest.raises(InvalidStatusTransitionError):
        asyncio.run(store.update_status("s1", ScanStatus.PROCESSING))
    with pytest.raises(InvalidStatusTransitionError):
        asyncio.run(store.append_progress("s1", "late line"))
    with pytest.raises(InvalidStatusTransitionError):
        asyncio.run(store.save_outputs("s1", PAYLOAD, ScanStatus.COMPLETED))
    record = asyncio.run(store.get("s1"))
    assert record.error_message == "boom"
    assert record.progress_log == []


@pytest.mark.unit
def test_pending_cannot_jump_to_completed(store: BaseScanStore) -> None:
    asyncio.run(store.create_pending("s1"))

    with pytest.raises(InvalidStatusTransitionError):
        asyncio.run(store.update_status("s1", ScanStatus.COMPLETED))


@pytest.mark.unit
def test_reapplying_processing_is_a_no_op(store: BaseScanStore) -> None:
    async def scenario() -> ScanStatus:
        await store.create_pending("s1")
        await store.update_status("s1", ScanStatus.PROCESSING)
        await store.update_status("s1", ScanStatus.PROCESSING)
        return (await store.get("s1")).status

    assert asyncio.run(scenario()) is ScanStatus.PROCESSING


@pytest.mark.unit
def test_unknown_scan_raises_not_found(store: BaseScanStore) -> None:
    with pytest.raises(ScanNotFoundError):
        asyncio.run(store.get("nope"))


@pytest.mark.unit
def test_duplicate_scan_id_is_rejected(store: BaseScanStore) -> None:
    asyncio.run(store.create_pending("s1"))

    with pytest.raises(ValueError, match="already exists"):
        asyncio.run(store.create_pending("s1"))


@pytest.mark.unit
def test_save_outputs_requires_success_status(store: BaseScanStore) -> None:
    async def scenario() -> None:
        await store.create_pending("s1")
        await store.update_status("s1", ScanStatus.PROCESSING)
        await store.save_outputs("s1", PAYLOAD, ScanStatus.FAILED)

    with pytest.raises(ValueError, match="success status"):
        asyncio.run(scenario())


@pytest.mark.unit
def test_returned_records_are_copies() -> None:
    store = InMemoryScanStore()
    record = asyncio.run(store.create_pending("s1"))

    record.progress_log.append("tampered")

    assert asyncio.run(store.get("s1")).progress_log == []


@pytest.mark.unit
def test_json_store_persists_across_instances(tmp_path: Path) -> None:
    directory = tmp_path / "scans"
    first = JsonFileScanStore(directory)
    asyncio.run(first.create_pending("abc-123", project_name="demo"))
    asyncio.run(first.update_status("abc-123", ScanStatus.PROCESSING))

    record = asyncio.run(JsonFileScanStore(directory).get("abc-123"))

    assert record.status is ScanStatus.PROCESSING
    assert json.loads((directory / "abc-123.json").read_text(encoding="utf-8"))["project_name"] == "demo"
    assert [p.name for p in directory.iterdir()] == ["abc-123.json"]


@pytest.mark.unit
@pytest.mark.parametrize("scan_id", ["../escape", "a/b", "", ".hidden"])
def test_json_store_rejects_unsafe_ids(tmp_path: Path, scan_id: str) -> None:
    store = JsonFileScanStore(tmp_path)

    with pytest.raises(ValueError, match="Invalid scan id"):
        store.path_for(scan_id)


@pytest.mark.unit
def test_base_store_cannot_be_instantiated() -> None:
    with pytest.raises(TypeError, match="abstract"):
        BaseScanStore()  # type: ignore[abstract]


@pytest.mark.unit
def test_json_store_reads_and_writes_off_the_event_loop(tmp_path: Path, mocker: MockerFixture) -> None:
    store = JsonFileScanStore(tmp_path)
    to_thread = mocker.spy(asyncio, "to_thread")

    async def scenario() -> None:
        await store.create_pending("s1")
        await store.append_progress("s1", "Collecting files...")

    asyncio.run(scenario())

    offloaded = [c.args[0] for c in to_thread.call_args_list]
    assert store.write_record in offloaded
    assert store.read_record in offloaded
    assert asyncio.run(store.get("s1")).progress_log == ["Collecting files..."]
