"""Tests for forkpoint.saver.CheckpointSaver (in-memory store)

Tests cover:
- put / get_tuple round trip, including opaque values
- Parent chaining and the C1 -> C2 -> fork scenarios
- Content-addressed channel states
- put_writes ordering and idempotency
- list ordering, cursors and paging
- delete_thread and orphan collection
- Branch-less fallback reads
- Lifecycle: from_config, async with
"""

from dataclasses import dataclass
from unittest.mock import AsyncMock

import pytest

from forkpoint.checkpoint import empty_checkpoint
from forkpoint.config import StoreConfig
from forkpoint.errors import (
    CheckpointNotFoundError,
    ConfigurationError,
    MissingCheckpointIdError,
    ParentNotFoundError,
    StoreError,
)
from forkpoint.models import CheckpointConfig, CheckpointRecord
from forkpoint.saver import CheckpointSaver
from forkpoint.storage.memory import MemoryGraphStore
from forkpoint.storage.postgres import PostgresGraphStore

T1 = {"thread_id": "T1"}


@dataclass
class Document:
    title: str
    pages: int


def _make_checkpoint(checkpoint_id, values=None, versions=None):
    cp = empty_checkpoint(checkpoint_id)
    cp["channel_values"] = dict(values or {})
    cp["channel_versions"] = dict(versions or {ch: 1 for ch in cp["channel_values"]})
    return cp


@pytest.fixture
def store():
    return MemoryGraphStore()


@pytest.fixture
def saver(store):
    return CheckpointSaver(store, list_page_size=2)


async def _put_chain(saver, *ids, config=T1):
    """Put checkpoints one after another, each the child of the previous"""
    for step, checkpoint_id in enumerate(ids):
        cp = _make_checkpoint(checkpoint_id, {"step": step}, {"step": step + 1})
        config = await saver.put(config, cp, {"step": step}, {"step": step + 1})
    return config


class TestPut:
    async def test_returns_config_of_new_checkpoint(self, saver):
        config = await saver.put(T1, _make_checkpoint("c1"), {})
        assert config == CheckpointConfig("T1", "", "c1")

    async def test_generates_missing_id(self, saver):
        cp = _make_checkpoint(None)
        cp["id"] = None
        config = await saver.put(T1, cp, {})
        assert config.checkpoint_id
        assert (await saver.get_tuple(config)).checkpoint["id"] == config.checkpoint_id

    async def test_requires_thread_id(self, saver):
        with pytest.raises(ConfigurationError):
            await saver.put({}, _make_checkpoint("c1"), {})

    async def test_missing_parent(self, saver, store):
        with pytest.raises(ParentNotFoundError) as exc_info:
            await saver.put({"thread_id": "T1", "checkpoint_id": "ghost"}, _make_checkpoint("c1"), {})
        assert exc_info.value.thread_id == "T1"
        assert store.counts()["checkpoints"] == 0
        assert store.counts()["threads"] == 0

    async def test_parent_from_other_thread(self, saver):
        await saver.put({"thread_id": "T2"}, _make_checkpoint("other"), {})
        with pytest.raises(ParentNotFoundError):
            await saver.put({"thread_id": "T1", "checkpoint_id": "other"}, _make_checkpoint("c1"), {})

    async def test_own_parent(self, saver):
        with pytest.raises(ConfigurationError, match="own parent"):
            await saver.put({"thread_id": "T1", "checkpoint_id": "c1"}, _make_checkpoint("c1"), {})

    async def test_channel_without_version(self, saver):
        cp = _make_checkpoint("c1", {"messages": []})
        cp["channel_versions"] = {}
        with pytest.raises(ConfigurationError, match="messages"):
            await saver.put(T1, cp, {})

    async def test_int_too_long_for_json_round_trips(self, saver):
        config = await saver.put(T1, _make_checkpoint("c1", {"n": 10 ** 5000}), {})
        loaded = await saver.get_tuple(config)
        assert loaded.checkpoint["channel_values"] == {"n": 10 ** 5000}

    async def test_retry_with_same_id_is_noop(self, saver, store):
        await saver.put(T1, _make_checkpoint("c1", {"a": 1}), {})
        await saver.put(T1, _make_checkpoint("c1", {"a": 1}), {})
        counts = store.counts()
        assert counts["checkpoints"] == 1
        assert counts["channel_states"] == 1
        assert counts["branches"] == 1

    async def test_id_owned_by_other_thread(self, saver):
        await saver.put({"thread_id": "T2"}, _make_checkpoint("c1"), {})
        with pytest.raises(StoreError, match="another thread"):
            await saver.put(T1, _make_checkpoint("c1"), {})

    async def test_failed_put_leaves_no_partial_state(self, saver, store):
        await saver.put(T1, _make_checkpoint("c1"), {})
        before = store.counts()
        saver.branches.advance_head = AsyncMock(side_effect=RuntimeError("crash"))
        with pytest.raises(RuntimeError):
            await saver.put({"thread_id": "T1", "checkpoint_id": "c1"}, _make_checkpoint("c2", {"x": 1}), {})
        assert store.counts() == before
        assert await saver.get_tuple({"thread_id": "T1", "checkpoint_id": "c2"}) is None


class TestGetTuple:
    async def test_round_trip(self, saver):
        values = {"messages": ["hi", {"role": "user"}], "count": 3, "doc": Document("draft", 4)}
        cp = _make_checkpoint("c1", values, {"messages": 1, "count": 1, "doc": 1})
        cp["versions_seen"] = {"node": {"messages": 1}}
        metadata = {"source": "input", "step": -1, "writes": None}

        config = await saver.put(T1, cp, metadata, {"messages": 1, "count": 1, "doc": 1})
        loaded = await saver.get_tuple(config)

        assert loaded.checkpoint == cp
        assert loaded.metadata == metadata
        assert loaded.checkpoint["channel_values"]["doc"] == Document("draft", 4)
        assert loaded.parent_config is None
        assert loaded.pending_writes == []

    async def test_absent_thread(self, saver):
        assert await saver.get_tuple({"thread_id": "nope"}) is None

    async def test_absent_checkpoint(self, saver):
        await saver.put(T1, _make_checkpoint("c1"), {})
        assert await saver.get_tuple({"thread_id": "T1", "checkpoint_id": "c9"}) is None

    async def test_latest_has_parent_config(self, saver):
        # C1 (root) -> C2
        await _put_chain(saver, "C1", "C2")
        latest = await saver.get_tuple(T1)
        assert latest.config.checkpoint_id == "C2"
        assert latest.parent_config == CheckpointConfig("T1", "", "C1")

    async def test_head_is_not_max_id(self, saver):
        # the active head wins over a greater id on another branch
        config = await saver.put(T1, _make_checkpoint("c5"), {})
        fork = await saver.create_branch(config, "experiment")
        await saver.set_active_branch(T1, fork.branch_id)
        await saver.put(config, _make_checkpoint("c9"), {})
        main = (await saver.list_branches(T1))[0]
        await saver.set_active_branch(T1, main.branch_id)
        assert (await saver.get_tuple(T1)).config.checkpoint_id == "c5"

    async def test_read_specific_branch(self, saver):
        config = await saver.put(T1, _make_checkpoint("c1"), {})
        fork = await saver.create_branch(config, "experiment")
        await saver.put(config, _make_checkpoint("c2"), {})
        assert (await saver.get_tuple(T1, branch_id=fork.branch_id)).config.checkpoint_id == "c1"
        assert await saver.get_tuple(T1, branch_id="unknown") is None

    async def test_stale_version_is_not_substituted(self, saver, store):
        await saver.put(T1, _make_checkpoint("c1", {"a": "old"}, {"a": 1}), {})
        cp = _make_checkpoint("c2", {}, {"a": 2})
        config = await saver.put({"thread_id": "T1", "checkpoint_id": "c1"}, cp, {})
        assert (await saver.get_tuple(config)).checkpoint["channel_values"] == {}

    async def test_branchless_thread_falls_back_to_latest(self, saver, store):
        async with store.transaction() as s:
            await s.ensure_thread("T1", "")
            for cid in ("c1", "c3", "c2"):
                type_, payload = saver.codec.dump({"id": cid, "channel_versions": {}})
                await s.insert_checkpoint(CheckpointRecord("T1", "", cid, type_, payload, "json", "{}"))
        latest = await saver.get_tuple(T1)
        assert latest.config.checkpoint_id == "c3"
        assert latest.checkpoint["channel_values"] == {}

    async def test_namespaces_are_independent(self, saver):
        await saver.put(T1, _make_checkpoint("c1", {"a": 1}), {})
        await saver.put({"thread_id": "T1", "checkpoint_ns": "sub"}, _make_checkpoint("s1", {"a": 2}, {"a": 7}), {})
        assert (await saver.get_tuple(T1)).config.checkpoint_id == "c1"
        sub = await saver.get_tuple({"thread_id": "T1", "checkpoint_ns": "sub"})
        assert sub.checkpoint["channel_values"] == {"a": 2}


class TestChannelSharing:
    async def test_same_version_shares_blob(self, saver, store):
        config = await saver.put(T1, _make_checkpoint("c1", {"messages": ["a"]}, {"messages": 1}), {})
        await saver.put(config, _make_checkpoint("c2", {"messages": ["a"]}, {"messages": 1}), {})
        assert store.counts()["channel_states"] == 1

    async def test_first_writer_of_version_wins(self, saver):
        config = await saver.put(T1, _make_checkpoint("c1", {"messages": ["a"]}, {"messages": 1}), {})
        config = await saver.put(config, _make_checkpoint("c2", {"messages": ["b"]}, {"messages": 1}), {})
        loaded = await saver.get_tuple(config)
        assert loaded.checkpoint["channel_values"]["messages"] == ["a"]

    async def test_new_version_stores_new_blob(self, saver, store):
        config = await saver.put(T1, _make_checkpoint("c1", {"messages": ["a"]}, {"messages": 1}), {})
        config = await saver.put(config, _make_checkpoint("c2", {"messages": ["a", "b"]}, {"messages": 2}), {})
        assert store.counts()["channel_states"] == 2
        assert (await saver.get_tuple(config)).checkpoint["channel_values"]["messages"] == ["a", "b"]

    async def test_new_versions_override_checkpoint_versions(self, saver):
        cp = _make_checkpoint("c1", {"a": "x"}, {"a": 1})
        config = await saver.put(T1, cp, {}, {"a": 2})
        loaded = await saver.get_tuple(config)
        assert loaded.checkpoint["channel_versions"] == {"a": 2}
        assert loaded.checkpoint["channel_values"] == {"a": "x"}


class TestPutWrites:
    async def test_writes_keep_order(self, saver):
        config = await saver.put(T1, _make_checkpoint("C1"), {})
        await saver.put_writes(config, [("chan", "a"), ("chan", "b")], task_id="t1")
        loaded = await saver.get_tuple({"thread_id": "T1", "checkpoint_id": "C1"})
        assert loaded.pending_writes == [("t1", "chan", "a"), ("t1", "chan", "b")]

    async def test_writes_of_several_tasks(self, saver):
        config = await saver.put(T1, _make_checkpoint("C1"), {})
        await saver.put_writes(config, [("x", 1), ("y", 2)], task_id="t2")
        await saver.put_writes(config, [("z", Document("d", 1))], task_id="t1", task_path="~node")
        loaded = await saver.get_tuple(config)
        assert loaded.pending_writes == [
            ("t2", "x", 1),
            ("t1", "z", Document("d", 1)),
            ("t2", "y", 2),
        ]

    async def test_retried_writes_are_ignored(self, saver, store):
        config = await saver.put(T1, _make_checkpoint("C1"), {})
        await saver.put_writes(config, [("chan", "a")], task_id="t1")
        await saver.put_writes(config, [("chan", "a")], task_id="t1")
        assert store.counts()["pending_writes"] == 1

    async def test_requires_checkpoint_id(self, saver):
        with pytest.raises(MissingCheckpointIdError):
            await saver.put_writes(T1, [("chan", "a")], task_id="t1")

    async def test_missing_checkpoint(self, saver):
        with pytest.raises(CheckpointNotFoundError):
            await saver.put_writes({"thread_id": "T1", "checkpoint_id": "nope"}, [("c", 1)], "t1")


class TestList:
    async def test_descending_without_gaps(self, saver):
        ids = [f"c{i:02d}" for i in range(7)]
        await _put_chain(saver, *ids)
        listed = [t.config.checkpoint_id async for t in saver.list(T1, limit=7)]
        assert listed == list(reversed(ids))

    async def test_limit_across_pages(self, saver):
        await _put_chain(saver, "c1", "c2", "c3", "c4", "c5")
        listed = [t.config.checkpoint_id async for t in saver.list(T1, limit=3)]
        assert listed == ["c5", "c4", "c3"]

    async def test_default_limit(self, store):
        saver = CheckpointSaver(store, list_page_size=2, default_list_limit=3)
        await _put_chain(saver, "c1", "c2", "c3", "c4")
        assert len([t async for t in saver.list(T1)]) == 3

    async def test_before_cursor(self, saver):
        await _put_chain(saver, "c1", "c2", "c3", "c4")
        listed = [t.config.checkpoint_id async for t in saver.list(T1, before="c3")]
        assert listed == ["c2", "c1"]
        by_config = [t.config.checkpoint_id async for t in saver.list(T1, before={"checkpoint_id": "c2"})]
        assert by_config == ["c1"]
        empty_configurable = [
            t.config.checkpoint_id
            async for t in saver.list(T1, before={"configurable": None, "checkpoint_id": "c2"})
        ]
        assert empty_configurable == ["c1"]

    async def test_listed_tuples_omit_channel_values_and_writes(self, saver):
        config = await saver.put(T1, _make_checkpoint("c1", {"a": 1}), {"step": 0})
        await saver.put_writes(config, [("a", 2)], "t1")
        (listed,) = [t async for t in saver.list(T1)]
        assert listed.checkpoint["channel_values"] == {}
        assert listed.checkpoint["channel_versions"] == {"a": 1}
        assert listed.metadata == {"step": 0}
        assert listed.pending_writes == []

    async def test_lists_every_branch(self, saver):
        config = await saver.put(T1, _make_checkpoint("c1"), {})
        await saver.put(config, _make_checkpoint("c2"), {})
        fork = await saver.create_branch(config, "experiment")
        await saver.set_active_branch(T1, fork.branch_id)
        await saver.put(config, _make_checkpoint("c3"), {})
        listed = [(t.config.checkpoint_id, t.parent_config) async for t in saver.list(T1)]
        assert listed == [
            ("c3", CheckpointConfig("T1", "", "c1")),
            ("c2", CheckpointConfig("T1", "", "c1")),
            ("c1", None),
        ]

    async def test_empty_thread(self, saver):
        assert [t async for t in saver.list({"thread_id": "none"})] == []


class TestDeleteThread:
    async def test_delete_then_read_is_absent(self, saver, store):
        config = await _put_chain(saver, "c1", "c2")
        await saver.put_writes(config, [("a", 1)], "t1")
        assert await saver.delete_thread("T1") == 2
        assert await saver.get_tuple(T1) is None
        assert await saver.list_branches(T1) == []
        assert store.counts() == {
            "threads": 0,
            "checkpoints": 0,
            "channel_states": 0,
            "pending_writes": 0,
            "branches": 0,
        }

    async def test_shared_channel_states_survive(self, saver, store):
        await saver.put(T1, _make_checkpoint("c1", {"shared": "x", "own": "y"}), {})
        await saver.put({"thread_id": "T2"}, _make_checkpoint("d1", {"shared": "x"}), {})
        await saver.delete_thread("T1")
        assert store.counts()["channel_states"] == 1
        other = await saver.get_tuple({"thread_id": "T2"})
        assert other.checkpoint["channel_values"] == {"shared": "x"}

    async def test_unknown_thread(self, saver):
        assert await saver.delete_thread("nope") == 0


class TestCheckpointTree:
    async def test_tree_of_forked_thread(self, saver):
        config = await saver.put(T1, _make_checkpoint("C1"), {})
        await saver.put(config, _make_checkpoint("C2"), {})
        fork = await saver.create_branch(config, "B2")
        await saver.set_active_branch(T1, fork.branch_id)
        await saver.put(config, _make_checkpoint("C3"), {})
        main = (await saver.list_branches(T1))[0]

        tree = await saver.get_checkpoint_tree(T1)
        assert tree.root_ids == ["C1"]
        assert tree.get_branches("C1") == ["C2", "C3"]
        assert tree.nodes["C1"].branch_ids == {main.branch_id, fork.branch_id}
        assert tree.nodes["C3"].branch_ids == {fork.branch_id}
        assert tree.get_path_to_root("C3") == ["C3", "C1"]

    async def test_absent_thread(self, saver):
        assert await saver.get_checkpoint_tree({"thread_id": "nope"}) is None


class TestLifecycle:
    async def test_async_with_sets_up_and_closes(self):
        store = MemoryGraphStore()
        store.setup = AsyncMock()
        store.close = AsyncMock()
        async with CheckpointSaver(store) as saver:
            assert saver.store is store
        store.setup.assert_awaited_once()
        store.close.assert_awaited_once()

    def test_defaults_to_memory_store(self):
        assert isinstance(CheckpointSaver().store, MemoryGraphStore)

    def test_from_config_memory(self):
        saver = CheckpointSaver.from_config({"list_page_size": 5, "default_list_limit": 9})
        assert isinstance(saver.store, MemoryGraphStore)
        assert saver.list_page_size == 5
        assert saver.default_list_limit == 9

    def test_from_config_postgres(self):
        config = StoreConfig(backend="postgres", dsn="postgresql://localhost/cp", setup_on_start=False)
        saver = CheckpointSaver.from_config(config)
        assert isinstance(saver.store, PostgresGraphStore)
        assert saver.store._run_migrations is False
        assert saver.store._owns_db is True

    def test_from_conn_string(self):
        saver = CheckpointSaver.from_conn_string("postgresql://localhost/cp", list_page_size=7)
        assert isinstance(saver.store, PostgresGraphStore)
        assert saver.list_page_size == 7
