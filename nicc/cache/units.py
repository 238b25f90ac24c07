"""Kilobyte/byte conversions used for config and log output."""
from __future__ import annotations
import math


def kb_to_bytes(kbytes: int) -> int:
    return kbytes * 1024


def bytes_to_kb(nbytes: int) -> int:
    return math.ceil(nbytes / 1024)
