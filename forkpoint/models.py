"""
Forkpoint Models - Data structures for the checkpoint store

This module defines:
- CheckpointConfig: (thread_id, checkpoint_ns, checkpoint_id) addressing triple
- CheckpointRecord / ChannelBlob / WriteRecord: rows as read from a store
- BranchInfo: a branch with its head and active flag
- CheckpointTuple: a fully reconstructed checkpoint
- CheckpointTree: branching history of a thread
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from .errors import ConfigurationError


@dataclass(frozen=True)
class CheckpointConfig:
    """Addresses a thread, and optionally one checkpoint within it"""
    thread_id: str
    checkpoint_ns: str = ""
    checkpoint_id: Optional[str] = None

    @classmethod
    def parse(cls, config: Union["CheckpointConfig", Mapping[str, Any]]) -> "CheckpointConfig":
        """
        Build a config from a CheckpointConfig, a flat mapping, or a
        {"configurable": {...}} mapping.

        Raises:
            ConfigurationError: if config is not a mapping, or thread_id is
                missing or empty
        """
        if isinstance(config, CheckpointConfig):
            parsed = config
        else:
            if config is None:
                raise ConfigurationError("thread_id is required in config")
            if not isinstance(config, Mapping):
                raise ConfigurationError(
                    f"Config must be a mapping or CheckpointConfig, got {type(config).__name__}"
                )
            values = config.get("configurable") or config
            if not isinstance(values, Mapping):
                raise ConfigurationError(
                    f"'configurable' must be a mapping, got {type(values).__name__}"
                )
            parsed = cls(
                thread_id=values.get("thread_id"),
                checkpoint_ns=values.get("checkpoint_ns") or "",
                checkpoint_id=values.get("checkpoint_id") or None,
            )

        if not parsed.thread_id:
            raise ConfigurationError("thread_id is required in config")
        return parsed

    def with_checkpoint_id(self, checkpoint_id: Optional[str]) -> "CheckpointConfig":
        return CheckpointConfig(self.thread_id, self.checkpoint_ns, checkpoint_id)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the {"configurable": {...}} form"""
        configurable = {
            "thread_id": self.thread_id,
            "checkpoint_ns": self.checkpoint_ns,
        }
        if self.checkpoint_id is not None:
            configurable["checkpoint_id"] = self.checkpoint_id
        return {"configurable": configurable}


@dataclass
class CheckpointRecord:
    """A stored checkpoint row, payload and metadata still encoded"""
    thread_id: str
    checkpoint_ns: str
    checkpoint_id: str
    type: str
    checkpoint: str
    metadata_type: str
    metadata: str
    parent_checkpoint_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ChannelBlob:
    """One versioned channel value, shared by every checkpoint that references it"""
    channel: str
    version: str
    type: str
    blob: str


@dataclass(frozen=True)
class WriteRecord:
    """One pending write reported by a task against a checkpoint"""
    task_id: str
    task_path: str
    idx: int
    channel: str
    type: str
    blob: str


@dataclass
class BranchInfo:
    """A branch of a thread's history"""
    branch_id: str
    name: str
    created_at: datetime
    fork_point_id: Optional[str] = None
    is_active: bool = False
    head_checkpoint_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "fork_point_id": self.fork_point_id,
            "is_active": self.is_active,
            "head_checkpoint_id": self.head_checkpoint_id,
        }


PendingWrite = Tuple[str, str, Any]  # (task_id, channel, value)


@dataclass
class CheckpointTuple:
    """A checkpoint with its metadata, parent and pending writes"""
    config: CheckpointConfig
    checkpoint: Dict[str, Any]
    metadata: Dict[str, Any]
    parent_config: Optional[CheckpointConfig] = None
    pending_writes: List[PendingWrite] = field(default_factory=list)


@dataclass
class TreeNode:
    """A checkpoint's position in the history graph"""
    checkpoint_id: str
    parent_checkpoint_id: Optional[str] = None
    branch_ids: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "parent_checkpoint_id": self.parent_checkpoint_id,
            "branch_ids": sorted(self.branch_ids),
        }


@dataclass
class CheckpointTree:
    """
    Branching history of one thread.

    Useful for visualizing where branches forked and which
    checkpoints each branch passes through.
    """
    thread_id: str
    checkpoint_ns: str = ""
    nodes: Dict[str, TreeNode] = field(default_factory=dict)
    children: Dict[str, List[str]] = field(default_factory=dict)  # parent_id -> child_ids

    def add_node(
        self,
        checkpoint_id: str,
        parent_checkpoint_id: Optional[str] = None,
        branch_id: Optional[str] = None,
    ) -> None:
        """Add a checkpoint row; repeated rows for the same id merge their branch marks"""
        node = self.nodes.get(checkpoint_id)
        if node is None:
            node = TreeNode(checkpoint_id, parent_checkpoint_id)
            self.nodes[checkpoint_id] = node
            if parent_checkpoint_id:
                self.children.setdefault(parent_checkpoint_id, []).append(checkpoint_id)
        if branch_id:
            node.branch_ids.add(branch_id)

    @property
    def root_ids(self) -> List[str]:
        """Checkpoints with no parent inside this thread"""
        return [
            cid for cid, node in self.nodes.items()
            if node.parent_checkpoint_id not in self.nodes
        ]

    def get_path_to_root(self, checkpoint_id: str) -> List[str]:
        """Get the path from a checkpoint to its root"""
        path = []
        current_id = checkpoint_id

        while current_id and current_id in self.nodes:
            path.append(current_id)
            current_id = self.nodes[current_id].parent_checkpoint_id

        return path

    def get_branches(self, checkpoint_id: str) -> List[str]:
        """Get the direct children of a checkpoint"""
        return self.children.get(checkpoint_id, [])

    def get_leaf_nodes(self) -> List[str]:
        """Get all checkpoints with no children"""
        return [cid for cid in self.nodes if cid not in self.children]

    def get_depth(self, checkpoint_id: str) -> int:
        return len(self.get_path_to_root(checkpoint_id)) - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "checkpoint_ns": self.checkpoint_ns,
            "nodes": {k: v.to_dict() for k, v in self.nodes.items()},
            "children": self.children,
        }
