"""CRC-32 checksums as carried in the trailer of every link frame.

The register starts at 0xFFFFFFFF and is not inverted at the end. A frame
therefore checks by running the CRC over the frame together with its
little-endian trailer: the result is 0 for an intact frame.
"""

from __future__ import annotations

_POLYNOMIAL = 0xEDB88320
_INITIAL = 0xFFFFFFFF


def _make_table() -> tuple:
    table = []
    for value in range(256):
        for _ in range(8):
            value = (value >> 1) ^ _POLYNOMIAL if value & 1 else value >> 1
        table.append(value)
    return tuple(table)


_TABLE = _make_table()


def crc32(data: bytes) -> int:
    """Return the CRC-32 register after feeding ``data`` (no final inversion)."""
    crc = _INITIAL
    for byte in data:
        crc = _TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc


def append_crc(data: bytes) -> bytes:
    """Return ``data`` followed by its CRC-32 as four little-endian bytes."""
    data = bytes(data)
    return data + crc32(data).to_bytes(4, "little")