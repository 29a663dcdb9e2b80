from __future__ import annotations

import hashlib

from stratlab.abtest.models import ABArm

_SCALE = float(2**64)


class SplitAllocator:
    """
    Deterministic signal-to-arm assignment.

    A key (typically `SYMBOL|timestamp`) is hashed with the salt into
    [0, 1); keys below `split_ratio` go to arm A. The same key always lands
    in the same arm, independent of call order or thread.
    """

    def __init__(self, split_ratio: float, salt: str = "") -> None:
        if not 0.0 < split_ratio < 1.0:
            raise ValueError("split_ratio must be in (0, 1)")
        self.split_ratio = split_ratio
        self.salt = salt

    def bucket(self, key: str) -> float:
        digest = hashlib.sha256(f"{self.salt}|{key}".encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big") / _SCALE

    def arm_for(self, key: str) -> ABArm:
        return ABArm.A if self.bucket(key) < self.split_ratio else ABArm.B


def signal_key(symbol: str, timestamp) -> str:
    return f"{symbol.upper()}|{timestamp.isoformat()}"


__all__ = ["SplitAllocator", "signal_key"]
