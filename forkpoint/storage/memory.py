"""
In-memory graph storage for testing and development.

Entities live in keyed arenas; relationships are id references between
them. Transactions are serialized on an asyncio.Lock and roll back by
restoring a snapshot taken when the transaction began. All data is lost
when the process exits.
"""

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from ..models import BranchInfo, ChannelBlob, CheckpointRecord, WriteRecord
from .base import GraphSession, GraphStore, TreeRow

logger = logging.getLogger(__name__)

ThreadKey = Tuple[str, str]  # (thread_id, checkpoint_ns)


@dataclass
class _Thread:
    active_branch_id: Optional[str] = None
    checkpoint_ids: List[str] = field(default_factory=list)
    branch_ids: List[str] = field(default_factory=list)


@dataclass
class _Branch:
    branch_id: str
    thread_key: ThreadKey
    name: str
    created_at: datetime
    fork_point_id: Optional[str] = None
    head_checkpoint_id: Optional[str] = None


@dataclass
class _GraphState:
    threads: Dict[ThreadKey, _Thread] = field(default_factory=dict)
    checkpoints: Dict[str, CheckpointRecord] = field(default_factory=dict)
    channel_states: Dict[Tuple[str, str], ChannelBlob] = field(default_factory=dict)
    channel_links: Dict[str, Dict[str, str]] = field(default_factory=dict)  # checkpoint -> channel -> version
    writes: Dict[str, List[WriteRecord]] = field(default_factory=dict)
    branches: Dict[str, _Branch] = field(default_factory=dict)
    branch_marks: Dict[str, Set[str]] = field(default_factory=dict)  # checkpoint -> branch ids


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryGraphSession(GraphSession):
    """Session over the in-memory arenas; only valid inside its transaction"""

    def __init__(self, state: _GraphState):
        self._state = state

    def _thread(self, thread_id: str, checkpoint_ns: str) -> Optional[_Thread]:
        return self._state.threads.get((thread_id, checkpoint_ns))

    def _thread_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: Optional[str],
    ) -> Optional[_Branch]:
        thread = self._thread(thread_id, checkpoint_ns)
        if thread is None:
            return None
        branch_id = branch_id or thread.active_branch_id
        branch = self._state.branches.get(branch_id) if branch_id else None
        if branch is None or branch.thread_key != (thread_id, checkpoint_ns):
            return None
        return branch

    def _branch_info(self, branch: _Branch) -> BranchInfo:
        thread = self._state.threads[branch.thread_key]
        return BranchInfo(
            branch_id=branch.branch_id,
            name=branch.name,
            created_at=branch.created_at,
            fork_point_id=branch.fork_point_id,
            is_active=thread.active_branch_id == branch.branch_id,
            head_checkpoint_id=branch.head_checkpoint_id,
        )

    # -- Threads and checkpoints ---------------------------------------------

    async def ensure_thread(self, thread_id: str, checkpoint_ns: str) -> None:
        self._state.threads.setdefault((thread_id, checkpoint_ns), _Thread())

    async def insert_checkpoint(self, record: CheckpointRecord) -> bool:
        if record.checkpoint_id in self._state.checkpoints:
            return False
        thread = self._thread(record.thread_id, record.checkpoint_ns)
        if thread is None:
            raise KeyError(f"Thread {record.thread_id!r} must exist before its checkpoints")

        stored = copy.copy(record)
        stored.parent_checkpoint_id = None
        stored.created_at = record.created_at or _now()
        self._state.checkpoints[stored.checkpoint_id] = stored
        thread.checkpoint_ids.append(stored.checkpoint_id)
        return True

    async def link_parent(self, checkpoint_id: str, parent_checkpoint_id: str) -> bool:
        record = self._state.checkpoints.get(checkpoint_id)
        if record is None or parent_checkpoint_id not in self._state.checkpoints:
            return False
        if record.parent_checkpoint_id is None:
            record.parent_checkpoint_id = parent_checkpoint_id
        return True

    async def upsert_channel_state(self, checkpoint_id: str, blob: ChannelBlob) -> None:
        self._state.channel_states.setdefault((blob.channel, blob.version), blob)
        self._state.channel_links.setdefault(checkpoint_id, {})[blob.channel] = blob.version

    async def insert_write(self, checkpoint_id: str, record: WriteRecord) -> bool:
        if checkpoint_id not in self._state.checkpoints:
            return False
        writes = self._state.writes.setdefault(checkpoint_id, [])
        if not any(w.task_id == record.task_id and w.idx == record.idx for w in writes):
            writes.append(record)
        return True

    # -- Reads ---------------------------------------------------------------

    async def get_checkpoint(
        self,
        thread_id: str,
        checkpoint_ns: str,
        checkpoint_id: str,
    ) -> Optional[CheckpointRecord]:
        record = self._state.checkpoints.get(checkpoint_id)
        if record is None or (record.thread_id, record.checkpoint_ns) != (thread_id, checkpoint_ns):
            return None
        return copy.copy(record)

    async def get_branch_head(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: Optional[str] = None,
    ) -> Optional[CheckpointRecord]:
        branch = self._thread_branch(thread_id, checkpoint_ns, branch_id)
        if branch is None or branch.head_checkpoint_id is None:
            return None
        record = self._state.checkpoints.get(branch.head_checkpoint_id)
        return copy.copy(record) if record else None

    async def get_latest_checkpoint(
        self,
        thread_id: str,
        checkpoint_ns: str,
    ) -> Optional[CheckpointRecord]:
        thread = self._thread(thread_id, checkpoint_ns)
        if thread is None or not thread.checkpoint_ids:
            return None
        return copy.copy(self._state.checkpoints[max(thread.checkpoint_ids)])

    async def get_channel_states(
        self,
        checkpoint_id: str,
        versions: Dict[str, str],
    ) -> List[ChannelBlob]:
        links = self._state.channel_links.get(checkpoint_id, {})
        blobs = []
        for channel, version in versions.items():
            if links.get(channel) != version:
                continue
            blob = self._state.channel_states.get((channel, version))
            if blob is not None:
                blobs.append(blob)
        return blobs

    async def get_writes(self, checkpoint_id: str) -> List[WriteRecord]:
        # sorted() is stable, so equal idx keeps insertion order
        return sorted(self._state.writes.get(checkpoint_id, []), key=lambda w: w.idx)

    async def list_checkpoints(
        self,
        thread_id: str,
        checkpoint_ns: str,
        before_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[CheckpointRecord]:
        thread = self._thread(thread_id, checkpoint_ns)
        if thread is None:
            return []
        ids = sorted(
            (cid for cid in thread.checkpoint_ids if before_id is None or cid < before_id),
            reverse=True,
        )
        return [copy.copy(self._state.checkpoints[cid]) for cid in ids[:limit]]

    async def get_tree_rows(self, thread_id: str, checkpoint_ns: str) -> List[TreeRow]:
        thread = self._thread(thread_id, checkpoint_ns)
        if thread is None:
            return []
        rows: List[TreeRow] = []
        for cid in sorted(thread.checkpoint_ids):
            parent_id = self._state.checkpoints[cid].parent_checkpoint_id
            marks = sorted(self._state.branch_marks.get(cid, ()))
            if not marks:
                rows.append((cid, parent_id, None))
            rows.extend((cid, parent_id, branch_id) for branch_id in marks)
        return rows

    # -- Branches ------------------------------------------------------------

    async def count_branches(self, thread_id: str, checkpoint_ns: str) -> int:
        thread = self._thread(thread_id, checkpoint_ns)
        return len(thread.branch_ids) if thread else 0

    async def create_main_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
    ) -> bool:
        thread = self._thread(thread_id, checkpoint_ns)
        if thread is None or thread.branch_ids:
            return False
        self._state.branches[branch_id] = _Branch(
            branch_id=branch_id,
            thread_key=(thread_id, checkpoint_ns),
            name="main",
            created_at=_now(),
        )
        thread.branch_ids.append(branch_id)
        thread.active_branch_id = branch_id
        return True

    async def create_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
        name: str,
        fork_point_id: str,
    ) -> None:
        thread = self._thread(thread_id, checkpoint_ns)
        if thread is None:
            raise KeyError(f"Thread {thread_id!r} must exist before its branches")
        if branch_id in self._state.branches:
            return
        self._state.branches[branch_id] = _Branch(
            branch_id=branch_id,
            thread_key=(thread_id, checkpoint_ns),
            name=name,
            created_at=_now(),
            fork_point_id=fork_point_id,
            head_checkpoint_id=fork_point_id,
        )
        thread.branch_ids.append(branch_id)
        self._state.branch_marks.setdefault(fork_point_id, set()).add(branch_id)

    async def set_active_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
    ) -> bool:
        branch = self._thread_branch(thread_id, checkpoint_ns, branch_id)
        if branch is None:
            return False
        self._state.threads[branch.thread_key].active_branch_id = branch_id
        return True

    async def advance_head(
        self,
        thread_id: str,
        checkpoint_ns: str,
        checkpoint_id: str,
        branch_id: Optional[str] = None,
    ) -> Optional[str]:
        branch = self._thread_branch(thread_id, checkpoint_ns, branch_id)
        if branch is None or checkpoint_id not in self._state.checkpoints:
            return None
        branch.head_checkpoint_id = checkpoint_id
        self._state.branch_marks.setdefault(checkpoint_id, set()).add(branch.branch_id)
        return branch.branch_id

    async def get_active_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
    ) -> Optional[BranchInfo]:
        branch = self._thread_branch(thread_id, checkpoint_ns, None)
        return self._branch_info(branch) if branch else None

    async def list_branches(self, thread_id: str, checkpoint_ns: str) -> List[BranchInfo]:
        thread = self._thread(thread_id, checkpoint_ns)
        if thread is None:
            return []
        # branch_ids is kept in creation order
        return [self._branch_info(self._state.branches[bid]) for bid in thread.branch_ids]

    async def delete_branch(self, branch_id: str) -> bool:
        branch = self._state.branches.pop(branch_id, None)
        if branch is None:
            return False
        thread = self._state.threads[branch.thread_key]
        thread.branch_ids.remove(branch_id)
        if thread.active_branch_id == branch_id:
            thread.active_branch_id = None
        for marks in self._state.branch_marks.values():
            marks.discard(branch_id)
        return True

    # -- Deletion ------------------------------------------------------------

    async def delete_thread(self, thread_id: str) -> int:
        keys = [key for key in self._state.threads if key[0] == thread_id]
        deleted = 0
        for key in keys:
            thread = self._state.threads.pop(key)
            for cid in thread.checkpoint_ids:
                self._state.checkpoints.pop(cid, None)
                self._state.channel_links.pop(cid, None)
                self._state.writes.pop(cid, None)
                self._state.branch_marks.pop(cid, None)
                deleted += 1
            for bid in thread.branch_ids:
                self._state.branches.pop(bid, None)
        return deleted

    async def delete_orphan_channel_states(self) -> int:
        referenced = {
            (channel, version)
            for links in self._state.channel_links.values()
            for channel, version in links.items()
        }
        orphans = [key for key in self._state.channel_states if key not in referenced]
        for key in orphans:
            del self._state.channel_states[key]
        return len(orphans)


class MemoryGraphStore(GraphStore):
    """
    In-memory graph store.

    Usage:
        store = MemoryGraphStore()
        saver = CheckpointSaver(store)
    """

    def __init__(self):
        self._state = _GraphState()
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        """Nothing to provision in memory"""
        pass

    async def close(self) -> None:
        """Nothing to release in memory"""
        pass

    @asynccontextmanager
    async def transaction(self, readonly: bool = False) -> AsyncIterator[GraphSession]:
        async with self._lock:
            snapshot = None if readonly else copy.deepcopy(self._state)
            try:
                yield MemoryGraphSession(self._state)
            except BaseException:
                if snapshot is not None:
                    self._state = snapshot
                    logger.debug("Rolled back in-memory transaction")
                raise

    def counts(self) -> Dict[str, int]:
        """Number of stored entities of each kind"""
        return {
            "threads": len(self._state.threads),
            "checkpoints": len(self._state.checkpoints),
            "channel_states": len(self._state.channel_states),
            "pending_writes": sum(len(w) for w in self._state.writes.values()),
            "branches": len(self._state.branches),
        }

    def clear_all(self) -> None:
        """Drop all data (for testing)"""
        self._state = _GraphState()
