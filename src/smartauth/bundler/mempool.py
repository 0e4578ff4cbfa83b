"""
User operation mempool.

Holds validated operations keyed by ``(sender, nonce)`` until the next
bundle. Replacing an operation requires strictly higher fees. Operations
whose window has not opened yet stay in the pool until it does.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from smartauth.core import config
from smartauth.core.exceptions import PolicyViolation
from smartauth.core.operation import UserOperation
from smartauth.core.validation import ValidationData
from smartauth.bundler.rules import RpcErrorCode

logger = logging.getLogger(__name__)


@dataclass
class MempoolEntry:
    op: UserOperation
    user_op_hash: bytes
    validation_data: ValidationData

    def is_due(self, now: int) -> bool:
        return not self.validation_data.valid_after or now >= self.validation_data.valid_after


class Mempool:
    def __init__(self, max_ops: int = config.MEMPOOL_MAX_OPS) -> None:
        self.max_ops = max_ops
        self._entries: Dict[Tuple[str, int], MempoolEntry] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, entry: MempoolEntry) -> None:
        """
        Insert or replace an operation.

        Raises:
            PolicyViolation: replacement without a fee bump, or pool full
        """
        key = (entry.op.sender, entry.op.nonce)
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                if (
                    entry.op.max_fee_per_gas <= existing.op.max_fee_per_gas
                    or entry.op.max_priority_fee_per_gas <= existing.op.max_priority_fee_per_gas
                ):
                    raise PolicyViolation(
                        "replacement underpriced",
                        RpcErrorCode.INVALID_PARAMS,
                        {"sender": entry.op.sender, "nonce": hex(entry.op.nonce)},
                    )
            elif len(self._entries) >= self.max_ops:
                raise PolicyViolation(
                    "mempool full", RpcErrorCode.REJECTED_BY_EP_OR_ACCOUNT, {"max_ops": self.max_ops}
                )
            self._entries[key] = entry
        logger.info(
            "Op added to mempool",
            extra={
                "event": "mempool.op_added",
                "sender": entry.op.sender,
                "nonce": entry.op.nonce,
                "replaced": existing is not None,
            },
        )

    def pop_bundle(self, now: int, max_ops: Optional[int] = None) -> List[MempoolEntry]:
        """Remove and return due operations, ordered by sender, nonce key and sequence."""
        with self._lock:
            due = sorted(
                (entry for entry in self._entries.values() if entry.is_due(now)),
                key=lambda e: (e.op.sender, e.op.nonce_key, e.op.nonce_sequence),
            )
            if max_ops is not None:
                due = due[:max_ops]
            for entry in due:
                del self._entries[(entry.op.sender, entry.op.nonce)]
        return due

    def dump(self) -> List[Dict[str, str]]:
        with self._lock:
            return [entry.op.to_dict() for entry in self._entries.values()]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
