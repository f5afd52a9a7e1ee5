"""
Forkpoint Checkpoint Saver - Branching checkpoint persistence

This module provides the CheckpointSaver class for:
- Writing checkpoints, their channel values and pending writes atomically
- Reading the current checkpoint of a thread (active branch head),
  a specific branch head, or an exact checkpoint
- Paging through a thread's history, newest first
- Forking, switching and deleting branches
- Deleting threads and collecting unreferenced channel values
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

from .branches import BranchManager
from .checkpoint import generate_checkpoint_id
from .config import StoreConfig
from .errors import (
    CheckpointNotFoundError,
    ConfigurationError,
    MissingCheckpointIdError,
    ParentNotFoundError,
    StoreError,
)
from .models import (
    BranchInfo,
    ChannelBlob,
    CheckpointConfig,
    CheckpointRecord,
    CheckpointTree,
    CheckpointTuple,
    WriteRecord,
)
from .serde import Serializer, ValueCodec
from .storage.base import GraphStore
from .storage.memory import MemoryGraphStore
from .storage.postgres import PostgresGraphStore

logger = logging.getLogger(__name__)

ConfigLike = Union[CheckpointConfig, Mapping[str, Any]]


class CheckpointSaver:
    """
    Persists branching checkpoint histories in a GraphStore.

    Example usage:
        async with CheckpointSaver.from_conn_string("postgresql://...") as saver:
            config = {"thread_id": "thread-1"}
            config = await saver.put(config, checkpoint, {"step": 1}, {"messages": v1})
            latest = await saver.get_tuple({"thread_id": "thread-1"})

            fork = await saver.create_branch(config, "experiment")
            await saver.set_active_branch(config, fork.branch_id)
    """

    def __init__(
        self,
        store: Optional[GraphStore] = None,
        serde: Optional[Serializer] = None,
        list_page_size: int = 50,
        default_list_limit: int = 100,
    ):
        """
        Initialize the saver.

        Args:
            store: Graph store backend (defaults to MemoryGraphStore)
            serde: Serializer for values that are not JSON-safe (defaults to pickle)
            list_page_size: Checkpoints fetched per store round trip by list()
            default_list_limit: Maximum results of list() when no limit is given
        """
        self.store = store or MemoryGraphStore()
        self.codec = ValueCodec(serde)
        self.branches = BranchManager(self.store)
        self.list_page_size = list_page_size
        self.default_list_limit = default_list_limit

    # -- Lifecycle -----------------------------------------------------------

    @classmethod
    def from_conn_string(
        cls,
        dsn: str,
        *,
        serde: Optional[Serializer] = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        **kwargs: Any,
    ) -> "CheckpointSaver":
        """Create a saver that owns a PostgreSQL pool for the given DSN"""
        store = PostgresGraphStore(
            dsn=dsn,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        return cls(store, serde=serde, **kwargs)

    @classmethod
    def from_config(
        cls,
        config: Union[StoreConfig, Dict[str, Any]],
        serde: Optional[Serializer] = None,
    ) -> "CheckpointSaver":
        """Create a saver from a StoreConfig (or its dict form)"""
        if not isinstance(config, StoreConfig):
            config = StoreConfig.from_dict(config)

        if config.backend == "postgres":
            store: GraphStore = PostgresGraphStore(
                dsn=config.dsn,
                min_pool_size=config.min_pool_size,
                max_pool_size=config.max_pool_size,
                run_migrations=config.setup_on_start,
            )
        else:
            store = MemoryGraphStore()

        return cls(
            store,
            serde=serde,
            list_page_size=config.list_page_size,
            default_list_limit=config.default_list_limit,
        )

    async def setup(self) -> None:
        """Provision the store. Safe to call more than once."""
        await self.store.setup()

    async def close(self) -> None:
        await self.store.close()

    async def __aenter__(self) -> "CheckpointSaver":
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -- Write path ----------------------------------------------------------

    async def put(
        self,
        config: ConfigLike,
        checkpoint: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        new_versions: Optional[Dict[str, Any]] = None,
    ) -> CheckpointConfig:
        """
        Store a checkpoint as the new head of the thread's active branch.

        Args:
            config: Thread address; its checkpoint_id, if any, is the parent
            checkpoint: Checkpoint mapping (see forkpoint.checkpoint)
            metadata: Checkpoint metadata
            new_versions: Versions of the channels that changed in this step

        Returns:
            Config addressing the stored checkpoint, for use as the next parent

        Raises:
            ConfigurationError: if thread_id is missing, the checkpoint names
                itself as parent, or a channel value has no version. An
                unversioned value is rejected rather than stored under an
                empty version, which every thread would share.
            ParentNotFoundError: if the parent is not a checkpoint of the thread
            SerializationError: if a value cannot be encoded
        """
        cfg = CheckpointConfig.parse(config)
        checkpoint_id = checkpoint.get("id") or generate_checkpoint_id()
        parent_id = cfg.checkpoint_id
        if parent_id == checkpoint_id:
            raise ConfigurationError(
                "A checkpoint cannot be its own parent",
                thread_id=cfg.thread_id,
                checkpoint_ns=cfg.checkpoint_ns,
                checkpoint_id=checkpoint_id,
            )

        channel_values = checkpoint.get("channel_values") or {}
        versions = {**(checkpoint.get("channel_versions") or {}), **(new_versions or {})}
        missing = sorted(ch for ch in channel_values if versions.get(ch) is None)
        if missing:
            raise ConfigurationError(
                f"Channel value(s) without a version: {', '.join(missing)}",
                thread_id=cfg.thread_id,
                checkpoint_ns=cfg.checkpoint_ns,
                checkpoint_id=checkpoint_id,
            )

        # Channel values live in shared ChannelState rows, not in the payload
        payload = {k: v for k, v in checkpoint.items() if k != "channel_values"}
        payload["id"] = checkpoint_id
        payload["channel_versions"] = versions

        type_, encoded = self.codec.dump(payload)
        metadata_type, encoded_metadata = self.codec.dump(metadata or {})
        record = CheckpointRecord(
            thread_id=cfg.thread_id,
            checkpoint_ns=cfg.checkpoint_ns,
            checkpoint_id=checkpoint_id,
            type=type_,
            checkpoint=encoded,
            metadata_type=metadata_type,
            metadata=encoded_metadata,
        )
        blobs = []
        for channel, value in channel_values.items():
            blob_type, blob = self.codec.dump(value)
            blobs.append(ChannelBlob(channel, str(versions[channel]), blob_type, blob))

        async with self.store.transaction() as session:
            await session.ensure_thread(cfg.thread_id, cfg.checkpoint_ns)

            if parent_id and await session.get_checkpoint(
                cfg.thread_id, cfg.checkpoint_ns, parent_id
            ) is None:
                raise ParentNotFoundError(
                    f"Parent checkpoint {parent_id} not found",
                    thread_id=cfg.thread_id,
                    checkpoint_ns=cfg.checkpoint_ns,
                    checkpoint_id=checkpoint_id,
                )

            created = await session.insert_checkpoint(record)
            if not created and await session.get_checkpoint(
                cfg.thread_id, cfg.checkpoint_ns, checkpoint_id
            ) is None:
                raise StoreError(
                    "Checkpoint id already belongs to another thread",
                    thread_id=cfg.thread_id,
                    checkpoint_ns=cfg.checkpoint_ns,
                    checkpoint_id=checkpoint_id,
                )

            if parent_id:
                await session.link_parent(checkpoint_id, parent_id)
            for blob in blobs:
                await session.upsert_channel_state(checkpoint_id, blob)

            await self.branches.ensure_main_branch(
                cfg.thread_id, cfg.checkpoint_ns, session=session
            )
            await self.branches.advance_head(
                cfg.thread_id, cfg.checkpoint_ns, checkpoint_id, session=session
            )

        logger.debug(
            f"Stored checkpoint {checkpoint_id} for thread {cfg.thread_id} "
            f"({len(blobs)} channel(s){', retry' if not created else ''})"
        )
        return cfg.with_checkpoint_id(checkpoint_id)

    async def put_writes(
        self,
        config: ConfigLike,
        writes: List[Any],
        task_id: str,
        task_path: str = "",
    ) -> None:
        """
        Record a task's pending writes against a stored checkpoint.

        Args:
            config: Address of the checkpoint the writes belong to
            writes: (channel, value) pairs, in the order the task made them
            task_id: Id of the task that made the writes
            task_path: Path of the task within the graph

        Raises:
            MissingCheckpointIdError: if config has no checkpoint_id
            CheckpointNotFoundError: if the checkpoint does not exist
        """
        cfg = CheckpointConfig.parse(config)
        if not cfg.checkpoint_id:
            raise MissingCheckpointIdError(
                "checkpoint_id is required to store pending writes",
                thread_id=cfg.thread_id,
                checkpoint_ns=cfg.checkpoint_ns,
            )

        records = []
        for idx, (channel, value) in enumerate(writes):
            type_, blob = self.codec.dump(value)
            records.append(WriteRecord(task_id, task_path, idx, channel, type_, blob))

        async with self.store.transaction() as session:
            if await session.get_checkpoint(
                cfg.thread_id, cfg.checkpoint_ns, cfg.checkpoint_id
            ) is None:
                raise CheckpointNotFoundError(
                    "Cannot attach pending writes to a missing checkpoint",
                    thread_id=cfg.thread_id,
                    checkpoint_ns=cfg.checkpoint_ns,
                    checkpoint_id=cfg.checkpoint_id,
                )
            for record in records:
                await session.insert_write(cfg.checkpoint_id, record)

        logger.debug(
            f"Stored {len(records)} pending write(s) of task {task_id} "
            f"on checkpoint {cfg.checkpoint_id}"
        )

    # -- Read path -----------------------------------------------------------

    async def get_tuple(
        self,
        config: ConfigLike,
        branch_id: Optional[str] = None,
    ) -> Optional[CheckpointTuple]:
        """
        Load a checkpoint with its channel values and pending writes.

        Resolution order: the exact checkpoint_id in config; else the HEAD
        of branch_id; else the HEAD of the active branch; else (threads
        without branches only) the checkpoint with the greatest id.

        Returns:
            The checkpoint tuple, or None if nothing matches
        """
        cfg = CheckpointConfig.parse(config)

        async with self.store.transaction(readonly=True) as session:
            if cfg.checkpoint_id:
                record = await session.get_checkpoint(
                    cfg.thread_id, cfg.checkpoint_ns, cfg.checkpoint_id
                )
            else:
                record = await session.get_branch_head(
                    cfg.thread_id, cfg.checkpoint_ns, branch_id
                )
                if record is None and branch_id is None:
                    record = await session.get_latest_checkpoint(cfg.thread_id, cfg.checkpoint_ns)
                    if record is not None:
                        logger.warning(
                            f"Thread {cfg.thread_id} has no active branch head; "
                            f"falling back to latest checkpoint {record.checkpoint_id}"
                        )
            if record is None:
                return None

            checkpoint = self.codec.load(record.type, record.checkpoint)
            versions = {
                channel: str(version)
                for channel, version in (checkpoint.get("channel_versions") or {}).items()
                if version is not None
            }
            blobs = await session.get_channel_states(record.checkpoint_id, versions)
            writes = await session.get_writes(record.checkpoint_id)

        checkpoint["channel_values"] = {
            blob.channel: self.codec.load(blob.type, blob.blob) for blob in blobs
        }
        return CheckpointTuple(
            config=CheckpointConfig(cfg.thread_id, cfg.checkpoint_ns, record.checkpoint_id),
            checkpoint=checkpoint,
            metadata=self.codec.load(record.metadata_type, record.metadata),
            parent_config=self._parent_config(record),
            pending_writes=[
                (w.task_id, w.channel, self.codec.load(w.type, w.blob)) for w in writes
            ],
        )

    async def list(
        self,
        config: ConfigLike,
        *,
        before: Optional[Union[str, ConfigLike]] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[CheckpointTuple]:
        """
        Iterate over a thread's checkpoints, newest first.

        Checkpoints are fetched a page at a time and no store transaction
        stays open while the caller consumes results. Listed tuples carry
        the payload, metadata and parent config only: channel_values is
        empty and pending_writes is empty. Use get_tuple() for a full tuple.

        Args:
            config: Thread address (any checkpoint_id in it is ignored)
            before: Only list checkpoints older than this id or config
            limit: Maximum results (defaults to default_list_limit)
        """
        cfg = CheckpointConfig.parse(config)
        remaining = self.default_list_limit if limit is None else limit
        before_id = self._before_id(before)

        while remaining > 0:
            page_size = min(self.list_page_size, remaining)
            async with self.store.transaction(readonly=True) as session:
                page = await session.list_checkpoints(
                    cfg.thread_id, cfg.checkpoint_ns, before_id, page_size
                )

            for record in page:
                checkpoint = self.codec.load(record.type, record.checkpoint)
                checkpoint["channel_values"] = {}
                yield CheckpointTuple(
                    config=CheckpointConfig(record.thread_id, record.checkpoint_ns, record.checkpoint_id),
                    checkpoint=checkpoint,
                    metadata=self.codec.load(record.metadata_type, record.metadata),
                    parent_config=self._parent_config(record),
                )

            if len(page) < page_size:
                return
            remaining -= len(page)
            before_id = page[-1].checkpoint_id

    async def get_checkpoint_tree(self, config: ConfigLike) -> Optional[CheckpointTree]:
        """
        Get the branching history of a thread.

        Returns:
            CheckpointTree of every checkpoint with its parent and branch marks,
            or None if the thread has no checkpoints
        """
        cfg = CheckpointConfig.parse(config)
        async with self.store.transaction(readonly=True) as session:
            rows = await session.get_tree_rows(cfg.thread_id, cfg.checkpoint_ns)

        if not rows:
            return None
        tree = CheckpointTree(thread_id=cfg.thread_id, checkpoint_ns=cfg.checkpoint_ns)
        for checkpoint_id, parent_id, branch_id in rows:
            tree.add_node(checkpoint_id, parent_id, branch_id)
        return tree

    # -- Deletion ------------------------------------------------------------

    async def delete_thread(self, thread_id: str) -> int:
        """
        Delete a thread in every namespace with its checkpoints, pending
        writes and branches, then collect unreferenced channel states.

        Returns:
            Number of checkpoints deleted
        """
        async with self.store.transaction() as session:
            deleted = await session.delete_thread(thread_id)
            collected = await session.delete_orphan_channel_states()

        logger.info(
            f"Deleted thread {thread_id}: {deleted} checkpoint(s), "
            f"{collected} orphan channel state(s)"
        )
        return deleted

    # -- Branches ------------------------------------------------------------

    async def create_branch(
        self,
        config: ConfigLike,
        name: str,
        fork_point_id: Optional[str] = None,
    ) -> BranchInfo:
        """
        Fork a branch at a checkpoint (fork_point_id, else config's checkpoint_id).

        Raises:
            MissingCheckpointIdError: if no fork point is given
            CheckpointNotFoundError: if the fork point does not exist
        """
        cfg = CheckpointConfig.parse(config)
        fork_point_id = fork_point_id or cfg.checkpoint_id
        if not fork_point_id:
            raise MissingCheckpointIdError(
                "A fork point checkpoint_id is required to create a branch",
                thread_id=cfg.thread_id,
                checkpoint_ns=cfg.checkpoint_ns,
            )
        return await self.branches.create_branch(
            cfg.thread_id, cfg.checkpoint_ns, fork_point_id, name
        )

    async def set_active_branch(self, config: ConfigLike, branch_id: str) -> None:
        cfg = CheckpointConfig.parse(config)
        await self.branches.set_active_branch(cfg.thread_id, cfg.checkpoint_ns, branch_id)

    async def list_branches(self, config: ConfigLike) -> List[BranchInfo]:
        cfg = CheckpointConfig.parse(config)
        return await self.branches.list_branches(cfg.thread_id, cfg.checkpoint_ns)

    async def get_active_branch(self, config: ConfigLike) -> Optional[BranchInfo]:
        cfg = CheckpointConfig.parse(config)
        return await self.branches.get_active_branch(cfg.thread_id, cfg.checkpoint_ns)

    async def delete_branch(self, config: ConfigLike, branch_id: str) -> bool:
        cfg = CheckpointConfig.parse(config)
        return await self.branches.delete_branch(cfg.thread_id, cfg.checkpoint_ns, branch_id)

    # -- Helpers -------------------------------------------------------------

    @staticmethod
    def _parent_config(record: CheckpointRecord) -> Optional[CheckpointConfig]:
        if not record.parent_checkpoint_id:
            return None
        return CheckpointConfig(record.thread_id, record.checkpoint_ns, record.parent_checkpoint_id)

    @staticmethod
    def _before_id(before: Optional[Union[str, ConfigLike]]) -> Optional[str]:
        if before is None or isinstance(before, str):
            return before or None
        if isinstance(before, CheckpointConfig):
            return before.checkpoint_id
        return (before.get("configurable") or before).get("checkpoint_id") or None
