"""
Forkpoint Branch Manager - Forks, active branch and branch heads

Per thread, branches move through:

    no branches -> main active -> (main | fork) active -> ...

- ensure_main_branch: bootstrap 'main' on a thread with no branches
- create_branch: fork at any checkpoint; does not change the active branch
- set_active_branch: swap the thread's single ACTIVE_BRANCH edge
- advance_head: point a branch's HEAD at a newly written checkpoint

Every method can run inside a caller's session (so the write path can
bootstrap and advance in the same transaction as the checkpoint insert)
or open its own transaction.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from .errors import BranchNotFoundError, CheckpointNotFoundError
from .models import BranchInfo
from .storage.base import GraphSession, GraphStore

logger = logging.getLogger(__name__)

MAIN_BRANCH_NAME = "main"


class BranchManager:
    """
    Manages the branches of checkpoint threads.

    Example usage:
        branches = BranchManager(store)
        fork = await branches.create_branch("thread-1", "", fork_point_id, "experiment")
        await branches.set_active_branch("thread-1", "", fork.branch_id)
    """

    def __init__(self, store: GraphStore):
        self.store = store

    @asynccontextmanager
    async def _scope(
        self,
        session: Optional[GraphSession] = None,
        readonly: bool = False,
    ) -> AsyncIterator[GraphSession]:
        if session is not None:
            yield session
            return
        async with self.store.transaction(readonly=readonly) as own:
            yield own

    async def ensure_main_branch(
        self,
        thread_id: str,
        checkpoint_ns: str = "",
        session: Optional[GraphSession] = None,
    ) -> Optional[str]:
        """
        Create the active 'main' branch if the thread has no branches yet.

        Returns:
            The new branch id, or None if the thread already had branches
        """
        async with self._scope(session) as s:
            if await s.count_branches(thread_id, checkpoint_ns) > 0:
                return None
            branch_id = str(uuid.uuid4())
            created = await s.create_main_branch(thread_id, checkpoint_ns, branch_id)

        if not created:
            return None
        logger.info(f"Created main branch {branch_id} for thread {thread_id}")
        return branch_id

    async def create_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        fork_point_id: str,
        name: str,
        session: Optional[GraphSession] = None,
    ) -> BranchInfo:
        """
        Fork a new branch at an existing checkpoint.

        The new branch's HEAD starts at the fork point. The active branch
        is left unchanged; activate the fork with set_active_branch().

        Raises:
            CheckpointNotFoundError: if the fork point is not a checkpoint of the thread
        """
        branch_id = str(uuid.uuid4())
        async with self._scope(session) as s:
            if await s.get_checkpoint(thread_id, checkpoint_ns, fork_point_id) is None:
                raise CheckpointNotFoundError(
                    "Fork point checkpoint not found",
                    thread_id=thread_id,
                    checkpoint_ns=checkpoint_ns,
                    checkpoint_id=fork_point_id,
                )

            # A thread written before branching existed gets its main
            # branch, at the latest checkpoint, before the first fork.
            if await s.count_branches(thread_id, checkpoint_ns) == 0:
                main_id = await self.ensure_main_branch(thread_id, checkpoint_ns, session=s)
                latest = await s.get_latest_checkpoint(thread_id, checkpoint_ns)
                if main_id and latest:
                    await s.advance_head(thread_id, checkpoint_ns, latest.checkpoint_id, main_id)

            await s.create_branch(thread_id, checkpoint_ns, branch_id, name, fork_point_id)
            branches = await s.list_branches(thread_id, checkpoint_ns)

        logger.info(
            f"Created branch '{name}' ({branch_id}) for thread {thread_id} "
            f"at checkpoint {fork_point_id}"
        )
        return next(b for b in branches if b.branch_id == branch_id)

    async def set_active_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
        session: Optional[GraphSession] = None,
    ) -> None:
        """
        Make a branch the thread's active branch.

        Raises:
            BranchNotFoundError: if the branch does not belong to the thread
        """
        async with self._scope(session) as s:
            activated = await s.set_active_branch(thread_id, checkpoint_ns, branch_id)

        if not activated:
            raise BranchNotFoundError(
                "Branch not found for thread",
                thread_id=thread_id,
                checkpoint_ns=checkpoint_ns,
                branch_id=branch_id,
            )
        logger.info(f"Activated branch {branch_id} for thread {thread_id}")

    async def advance_head(
        self,
        thread_id: str,
        checkpoint_ns: str,
        checkpoint_id: str,
        branch_id: Optional[str] = None,
        session: Optional[GraphSession] = None,
    ) -> Optional[str]:
        """
        Move a branch's HEAD to a checkpoint (the active branch by default).

        Returns:
            The advanced branch id, or None if there was no branch to advance
        """
        async with self._scope(session) as s:
            advanced = await s.advance_head(thread_id, checkpoint_ns, checkpoint_id, branch_id)

        if advanced is None:
            logger.warning(
                f"Checkpoint {checkpoint_id} of thread {thread_id} is on no branch: "
                f"{'branch ' + branch_id + ' not found' if branch_id else 'no active branch'}"
            )
        else:
            logger.debug(f"Advanced branch {advanced} head to {checkpoint_id}")
        return advanced

    async def list_branches(
        self,
        thread_id: str,
        checkpoint_ns: str = "",
        session: Optional[GraphSession] = None,
    ) -> List[BranchInfo]:
        """List the thread's branches, oldest first"""
        async with self._scope(session, readonly=True) as s:
            return await s.list_branches(thread_id, checkpoint_ns)

    async def get_active_branch(
        self,
        thread_id: str,
        checkpoint_ns: str = "",
        session: Optional[GraphSession] = None,
    ) -> Optional[BranchInfo]:
        async with self._scope(session, readonly=True) as s:
            return await s.get_active_branch(thread_id, checkpoint_ns)

    async def delete_branch(
        self,
        thread_id: str,
        checkpoint_ns: str,
        branch_id: str,
        session: Optional[GraphSession] = None,
    ) -> bool:
        """
        Delete a branch of the thread. Its checkpoints are kept.

        Deleting the active branch leaves the thread with no active branch
        until another one is activated.

        Returns:
            True if deleted, False if the thread has no such branch
        """
        async with self._scope(session) as s:
            branches = await s.list_branches(thread_id, checkpoint_ns)
            if not any(b.branch_id == branch_id for b in branches):
                return False
            deleted = await s.delete_branch(branch_id)

        if deleted:
            logger.info(f"Deleted branch {branch_id} of thread {thread_id}")
        return deleted
