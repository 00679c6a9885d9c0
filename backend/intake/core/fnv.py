from __future__ import annotations

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF


def fnv1a64_hex(raw: str) -> str:
    """Return the FNV-1a 64-bit digest of ``raw`` as 16 hex characters."""

    value = _FNV64_OFFSET
    for byte in raw.encode("utf-8"):
        value ^= byte
        value = (value * _FNV64_PRIME) & _MASK64
    return f"{value:016x}"
