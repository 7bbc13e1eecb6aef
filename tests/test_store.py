"""Tests for the work-item store (append log + SQLite cache)."""

import json

import pytest
import pytest_asyncio

from flotilla.models import Edge, EdgeType, WorkItem, WorkKind, WorkStatus
from flotilla.store import WorkItemStore, generate_work_id


@pytest_asyncio.fixture
async def store(tmp_path):
    s = WorkItemStore(tmp_path / "data")
    await s.initialize()
    yield s
    await s.close()


class TestWorkIds:
    def test_format(self):
        work_id = generate_work_id("Write parser")
        assert work_id.startswith("fl-")
        assert len(work_id) == 7

    def test_collision_grows_id(self):
        first = generate_work_id("x")
        taken = {first[:7]}
        second = generate_work_id("x", existing=taken)
        assert second not in taken


class TestWorkItemStore:
    async def test_put_and_load(self, store):
        await store.put(WorkItem(id="fl-0001", title="A", kind=WorkKind.BUG, group="worker"))
        await store.put(WorkItem(id="fl-0002", title="B"))
        await store.put_edge(Edge(source="fl-0002", target="fl-0001", edge_type=EdgeType.DEPENDS_ON))

        items, edges = await store.load_all()
        assert {i.id for i in items} == {"fl-0001", "fl-0002"}
        bug = await store.get("fl-0001")
        assert bug.kind == WorkKind.BUG
        assert bug.group == "worker"
        assert [e.key for e in edges] == [("fl-0002", "fl-0001", "depends_on")]
        assert await store.ids() == {"fl-0001", "fl-0002"}

    async def test_get_missing(self, store):
        assert await store.get("fl-nope") is None

    async def test_put_status(self, store):
        await store.put(WorkItem(id="fl-0001"))
        await store.put_status("fl-0001", WorkStatus.DONE)
        assert (await store.get("fl-0001")).status == WorkStatus.DONE

    async def test_put_status_unknown(self, store):
        with pytest.raises(KeyError):
            await store.put_status("fl-nope", WorkStatus.DONE)

    async def test_delete_edge(self, store):
        await store.put(WorkItem(id="fl-0001"))
        await store.put(WorkItem(id="fl-0002"))
        await store.put_edge(Edge(source="fl-0001", target="fl-0002", edge_type=EdgeType.RELATED_TO))
        await store.delete_edge("fl-0001", "fl-0002", EdgeType.RELATED_TO)
        _, edges = await store.load_all()
        assert edges == []

    async def test_every_mutation_is_logged(self, store):
        await store.put(WorkItem(id="fl-0001"))
        await store.put_status("fl-0001", WorkStatus.IN_PROGRESS)
        ops = [json.loads(line)["op"] for line in store.log_path.read_text().splitlines()]
        assert ops == ["put", "status"]


class TestRebuild:
    async def test_cache_rebuilt_from_log(self, tmp_path):
        data_dir = tmp_path / "data"
        store = WorkItemStore(data_dir)
        await store.initialize()
        await store.put(WorkItem(id="fl-0001", title="A"))
        await store.put(WorkItem(id="fl-0002", title="B"))
        await store.put_edge(Edge(source="fl-0002", target="fl-0001", edge_type=EdgeType.DEPENDS_ON))
        await store.put_status("fl-0001", WorkStatus.DONE)
        await store.close()

        for leftover in data_dir.glob("work.db*"):
            leftover.unlink()

        reopened = WorkItemStore(data_dir)
        await reopened.initialize()
        items, edges = await reopened.load_all()
        assert {i.id: i.status for i in items} == {
            "fl-0001": WorkStatus.DONE,
            "fl-0002": WorkStatus.PENDING,
        }
        assert len(edges) == 1
        await reopened.close()

    async def test_corrupt_lines_skipped(self, store):
        await store.put(WorkItem(id="fl-0001"))
        with open(store.log_path, "a") as fh:
            fh.write("{not json\n")
        assert await store.rebuild_cache() == 1
        assert await store.ids() == {"fl-0001"}

    async def test_data_version_tracks_other_connections(self, store):
        before = await store.data_version()
        await store.put(WorkItem(id="fl-0001"))
        assert await store.data_version() == before

        other = WorkItemStore(store.data_dir)
        await other.initialize()
        await other.put(WorkItem(id="fl-0002"))
        assert await store.data_version() != before
        assert await store.ids() == {"fl-0001", "fl-0002"}
        await other.close()
