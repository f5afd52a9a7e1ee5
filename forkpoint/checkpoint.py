"""
Checkpoint payload helpers.

A checkpoint is a plain mapping:
    {
        "v": 1,
        "id": "<sortable id>",
        "ts": "<ISO-8601 UTC>",
        "channel_values": {channel: value},
        "channel_versions": {channel: version},
        "versions_seen": {task: {channel: version}},
    }
"""

import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

CHECKPOINT_FORMAT_VERSION = 1

_id_lock = threading.Lock()
_last_id_ns = 0


def generate_checkpoint_id() -> str:
    """
    Generate a unique checkpoint id whose lexical order is creation order.

    Ids from one process are strictly increasing even when the clock
    does not advance between calls.
    """
    global _last_id_ns
    with _id_lock:
        now = time.time_ns()
        if now <= _last_id_ns:
            now = _last_id_ns + 1
        _last_id_ns = now
    return f"{now:020d}-{secrets.token_hex(4)}"


def empty_checkpoint(checkpoint_id: Optional[str] = None) -> Dict[str, Any]:
    """Create a checkpoint with no channels"""
    return {
        "v": CHECKPOINT_FORMAT_VERSION,
        "id": checkpoint_id or generate_checkpoint_id(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "channel_values": {},
        "channel_versions": {},
        "versions_seen": {},
    }


def next_version(current: Union[str, int, None]) -> Union[str, int]:
    """
    Next monotonic channel version.

    String versions use the zero-padded '{counter:032}.{hash:016}' format
    so they sort lexically; integer versions are simply incremented.
    """
    if current is None:
        return f"{1:032d}.{0:016d}"
    if isinstance(current, int):
        return current + 1

    counter, _, hash_part = str(current).partition(".")
    return f"{int(counter) + 1:032d}.{int(hash_part or 0):016d}"
