"""
Forkpoint Graph Storage - Backend interface

The store persists five entity kinds and the relationships between them:

    Thread -HAS_CHECKPOINT-> Checkpoint -PREVIOUS-> Checkpoint
    Checkpoint -HAS_CHANNEL-> ChannelState   (shared by (channel, version))
    Checkpoint -HAS_WRITE-> PendingWrite
    Thread -HAS_BRANCH-> Branch -HEAD-> Checkpoint
    Thread -ACTIVE_BRANCH-> Branch           (at most one)
    Checkpoint -ON_BRANCH-> Branch

A GraphStore hands out GraphSessions through transaction(). Everything done
through one session commits together or not at all. Every write primitive
is idempotent so that a retried operation completes instead of failing.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Dict, List, Optional, Tuple

from ..models import BranchInfo, ChannelBlob, CheckpointRecord, WriteRecord

# (checkpoint_id, parent_checkpoint_id, branch_id) rows of a thread's history
TreeRow = Tuple[str, Optional[str], Optional[str]]


class GraphSession(ABC):
    """
    Store operations bound to one open transaction.

    All backends must implement these methods.
    """

    # -- Threads and checkpoints ---------------------------------------------

    @abstractmethod
    async def ensure_thread(self, thread_id: str, checkpoint_ns: str) -> None:
        """Create the thread if it does not exist yet"""
        pass

    @abstractmethod
    async def insert_checkpoint(self, record: CheckpointRecord) -> bool:
        """
        Create a checkpoint linked to its (existing) thread.

        An existing checkpoint with the same id is left untouched.

        Returns:
            True if created, False if the id already existed
        """
        pass

    @abstractmethod
    async def link_parent(self, checkpoint_id: str, parent_checkpoint_id: str) -> bool:
        """
        Point a checkpoint's PREVIOUS edge at its parent.

        Returns:
            False if either checkpoint does not exist
        """
        pass

    @abstractmethod
    async def upsert_channel_state(self, checkpoint_id: str, blob: ChannelBlob) -> None:
        """
        Link a checkpoint to the ChannelState for (channel, version).

        The ChannelState is created if absent. An existing one keeps its
        type and blob: the first writer of a version wins.
        """
        pass

    @abstractmethod
    async def insert_write(self, checkpoint_id: str, record: WriteRecord) -> bool:
        """
        Attach a pending write to a checkpoint.

        Writes are keyed by (checkpoint_id, task_id, idx); a duplicate is ignored.

        Returns:
            False if the checkpoint does not exist
        """
        pass

    # -- Reads ---------------------------------------------------------------

    @abstractmethod
    async def get_checkpoint(
        self,
        thread_id: str,
        checkpoint_ns: str,
        checkpoint_id: str,
    ) -> Optional[CheckpointRecord]:
        """Get a checkpoint of the thread by id"""
        pass

    @abstractmethod
    async def get_branch_head(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: Optional[str] = None,
    ) -> Optional[CheckpointRecord]:
        """
        Get the HEAD checkpoint of a branch.

        Args:
            branch_id: Branch to read; the thread's active branch when None

        Returns:
            The head checkpoint, or None if there is no such branch or head
        """
        pass

    @abstractmethod
    async def get_latest_checkpoint(
        self,
        thread_id: str,
        checkpoint_ns: str,
    ) -> Optional[CheckpointRecord]:
        """Get the thread's checkpoint with the greatest id"""
        pass

    @abstractmethod
    async def get_channel_states(
        self,
        checkpoint_id: str,
        versions: Dict[str, str],
    ) -> List[ChannelBlob]:
        """
        Get the checkpoint's channel states matching {channel: version}.

        Only exact (channel, version) matches are returned.
        """
        pass

    @abstractmethod
    async def get_writes(self, checkpoint_id: str) -> List[WriteRecord]:
        """Get the checkpoint's pending writes ordered by idx, then insertion"""
        pass

    @abstractmethod
    async def list_checkpoints(
        self,
        thread_id: str,
        checkpoint_ns: str,
        before_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[CheckpointRecord]:
        """
        List the thread's checkpoints by id, newest first.

        Args:
            before_id: Only return checkpoints with an id strictly below this
            limit: Maximum number of results
        """
        pass

    @abstractmethod
    async def get_tree_rows(self, thread_id: str, checkpoint_ns: str) -> List[TreeRow]:
        """Get (checkpoint_id, parent_id, branch_id) rows ordered by checkpoint id"""
        pass

    # -- Branches ------------------------------------------------------------

    @abstractmethod
    async def count_branches(self, thread_id: str, checkpoint_ns: str) -> int:
        pass

    @abstractmethod
    async def create_main_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
    ) -> bool:
        """
        Create the 'main' branch and make it active, if the thread has no branches.

        Returns:
            True if created
        """
        pass

    @abstractmethod
    async def create_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
        name: str,
        fork_point_id: str,
    ) -> None:
        """Create a branch whose HEAD is the fork point checkpoint"""
        pass

    @abstractmethod
    async def set_active_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
    ) -> bool:
        """
        Swap the thread's ACTIVE_BRANCH edge to the given branch.

        Returns:
            False if the branch does not belong to the thread
        """
        pass

    @abstractmethod
    async def advance_head(
        self,
        thread_id: str,
        checkpoint_ns: str,
        checkpoint_id: str,
        branch_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Swap a branch's HEAD edge to the checkpoint and mark it ON_BRANCH.

        Args:
            branch_id: Branch to advance; the thread's active branch when None

        Returns:
            The advanced branch id, or None if there was no branch to advance
        """
        pass

    @abstractmethod
    async def get_active_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
    ) -> Optional[BranchInfo]:
        pass

    @abstractmethod
    async def list_branches(self, thread_id: str, checkpoint_ns: str) -> List[BranchInfo]:
        """List the thread's branches by creation time, oldest first"""
        pass

    @abstractmethod
    async def delete_branch(self, branch_id: str) -> bool:
        """
        Delete a branch and its edges; its checkpoints are kept.

        Returns:
            True if deleted, False if not found
        """
        pass

    # -- Deletion ------------------------------------------------------------

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> int:
        """
        Delete a thread in every namespace, with its checkpoints,
        pending writes and branches.

        Returns:
            Number of checkpoints deleted
        """
        pass

    @abstractmethod
    async def delete_orphan_channel_states(self) -> int:
        """
        Delete ChannelStates no checkpoint links to.

        Returns:
            Number of channel states deleted
        """
        pass


class GraphStore(ABC):
    """
    Abstract base class for checkpoint graph storage backends.

    Usage:
        async with store.transaction() as session:
            await session.ensure_thread("thread-1", "")
    """

    @abstractmethod
    async def setup(self) -> None:
        """Provision constraints and indexes. Safe to call more than once."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release resources owned by the store"""
        pass

    @abstractmethod
    def transaction(self, readonly: bool = False) -> AbstractAsyncContextManager[GraphSession]:
        """
        Open a transaction and yield a session bound to it.

        Commits on normal exit, rolls back when the block raises, and
        releases the underlying connection either way.
        """
        pass
