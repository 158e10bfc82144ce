import random
import zlib

import pytest

from linksim.crc import append_crc, crc32


def _random_bytes(seed, size):
    rng = random.Random(seed)
    return bytes(rng.randrange(256) for _ in range(size))


def test_empty_input_leaves_initial_register():
    assert crc32(b"") == 0xFFFFFFFF


@pytest.mark.parametrize("data", [b"a", b"123456789", b"\x00" * 32, bytes(range(256))])
def test_matches_inverted_standard_crc(data):
    assert crc32(data) == zlib.crc32(data) ^ 0xFFFFFFFF


def test_accepts_bytearray_and_memoryview():
    data = b"frame payload"
    assert crc32(bytearray(data)) == crc32(data)
    assert crc32(memoryview(data)) == crc32(data)


def test_append_crc_keeps_prefix_and_adds_four_bytes():
    data = b"hello link"
    framed = append_crc(data)
    assert framed[: len(data)] == data
    assert len(framed) == len(data) + 4
    assert int.from_bytes(framed[-4:], "little") == crc32(data)


@pytest.mark.parametrize("seed", range(8))
def test_framed_data_checks_to_zero(seed):
    size = 1 + random.Random(seed).randrange(1020)
    assert crc32(append_crc(_random_bytes(seed, size))) == 0


@pytest.mark.parametrize("bit", [0, 7, 13, 40])
def test_single_bit_error_is_detected(bit):
    framed = bytearray(append_crc(b"some data to protect"))
    framed[bit // 8] ^= 1 << (bit % 8)
    assert crc32(bytes(framed)) != 0
    assert crc32(append_crc(b"some data to protect")) == 0