import io
import socket
import struct
import threading
import time

import pytest

from linksim.logformat import Logger
from linksim.options import Config
from linksim.protocol import (
    ACK_TIMER_ID,
    PKT_LEN,
    Event,
    FrameAssembler,
    MsvcRand,
    Protocol,
    ProtocolAbort,
    TimerBank,
    connect,
    encode_frame,
)


def _make(station, sock, **overrides):
    settings = dict(station=station, ber=0.0, flood=True, life=8000)
    settings.update(overrides)
    config = Config(**settings)
    out = io.StringIO()
    logger = Logger(lambda: 0, stream=out)
    return Protocol(config, logger, sock, int(time.time())), out


@pytest.fixture
def pair():
    a_sock, b_sock = socket.socketpair()
    a, a_out = _make("a", a_sock)
    b, b_out = _make("b", b_sock)
    yield a, a_out, b, b_out
    a.close()
    b.close()


def test_timeout_events_carry_header_values():
    bank = TimerBank()
    bank.start(0, 5)
    bank.start_ack(5)
    event, nr = bank.expired(5)
    assert (event.value, nr) == (3, 0)
    event, nr = bank.expired(5)
    assert (event.value, nr) == (4, ACK_TIMER_ID)


def test_msvc_rand_known_sequence():
    rng = MsvcRand(1)
    assert [rng.next(), rng.next()] == [41, 18467]


def test_msvc_rand_is_deterministic_and_bounded():
    first = MsvcRand(0x1E459090)
    second = MsvcRand(0x1E459090)
    values = [first.next() for _ in range(200)]
    assert values == [second.next() for _ in range(200)]
    assert all(0 <= v <= 0x7FFF for v in values)


def test_encode_frame_wire_bytes():
    assert encode_frame(b"\x12") == b"\xff\x02\x01\xff"


@pytest.mark.parametrize("frame", [b"a", b"hello world", bytes(range(256))])
def test_assembler_round_trip(frame):
    assert FrameAssembler().feed(encode_frame(frame)) == [frame]


def test_assembler_across_feeds_and_ignores_noise_before_start():
    assembler = FrameAssembler()
    wire = b"\x03\x04" + encode_frame(b"one") + encode_frame(b"two")
    results = []
    for position in range(0, len(wire), 3):
        results.extend(assembler.feed(wire[position:position + 3]))
    assert results == [b"one", b"two"]


def test_assembler_skips_empty_frames():
    assembler = FrameAssembler()
    assert assembler.feed(encode_frame(b"") + encode_frame(b"ab")) == [b"ab"]


def test_timer_bank_deadlines():
    bank = TimerBank()
    bank.start(3, 100)
    assert bank.remaining(3, 40) == 60
    assert bank.expired(99) is None
    assert bank.expired(100) == (Event.DATA_TIMEOUT, 3)
    assert bank.remaining(3, 100) == 0


def test_timer_bank_ack_not_restarted():
    bank = TimerBank()
    bank.start_ack(50)
    bank.start_ack(10)
    assert bank.expired(20) is None
    assert bank.expired(50) == (Event.ACK_TIMEOUT, ACK_TIMER_ID)
    bank.start_ack(70)
    bank.stop_ack()
    assert bank.expired(1000) is None


def test_timer_bank_lowest_first_and_range():
    bank = TimerBank()
    bank.start(7, 10)
    bank.start(2, 10)
    assert bank.expired(10) == (Event.DATA_TIMEOUT, 2)
    assert bank.expired(10) == (Event.DATA_TIMEOUT, 7)
    with pytest.raises(ValueError):
        bank.start(ACK_TIMER_ID, 10)


def test_protocol_timers(pair):
    a, a_out, _, _ = pair
    a.start_timer(5, 100)
    assert a.get_timer(5) == 100
    a.stop_timer(5)
    assert a.get_timer(5) == 0
    assert a.get_timer(ACK_TIMER_ID) == 0
    with pytest.raises(ProtocolAbort):
        a.start_timer(ACK_TIMER_ID, 10)
    assert "FATAL: start_timer()" in a_out.getvalue()


def test_station_name(pair):
    a, _, b, _ = pair
    assert (a.station_name(), b.station_name()) == ("A", "B")


def test_send_frame_queues_encoded_bytes(pair):
    a, _, _, _ = pair
    a.send_frame(b"hello")
    assert a.phl_sq_len() == len(encode_frame(b"hello"))


def test_frame_travels_to_peer(pair):
    a, _, b, _ = pair
    a.send_frame(b"hello")
    assert a.wait_for_event() == (Event.PHYSICAL_LAYER_READY, None)
    a.start_timer(0, 100)
    assert a.wait_for_event() == (Event.DATA_TIMEOUT, 0)
    assert a.phl_sq_len() == 0

    assert b.wait_for_event() == (Event.PHYSICAL_LAYER_READY, None)
    assert b.wait_for_event() == (Event.FRAME_RECEIVED, None)
    assert b.recv_frame() == b"hello"
    with pytest.raises(ProtocolAbort):
        b.recv_frame()


def test_packets_are_checked_by_peer(pair):
    a, _, b, b_out = pair
    a.enable_network_layer()
    assert a.wait_for_event() == (Event.NETWORK_LAYER_READY, None)
    first = a.get_packet()
    assert len(first) == PKT_LEN
    assert struct.unpack("<H", first[:2])[0] == 10000
    assert a.wait_for_event() == (Event.NETWORK_LAYER_READY, None)
    second = a.get_packet()
    assert struct.unpack("<H", second[:2])[0] == 10001

    b.put_packet(first)
    b.put_packet(second)
    assert "FATAL" not in b_out.getvalue()

    assert a.wait_for_event() == (Event.NETWORK_LAYER_READY, None)
    third = bytearray(a.get_packet())
    third[100] ^= 0x01
    with pytest.raises(ProtocolAbort):
        b.put_packet(bytes(third))


def test_station_b_packet_ids(pair):
    _, _, b, _ = pair
    b.enable_network_layer()
    b.config.flood = True
    assert b.wait_for_event() == (Event.NETWORK_LAYER_READY, None)
    assert struct.unpack("<H", b.get_packet()[:2])[0] == 20000


def test_get_packet_requires_ready(pair):
    a, a_out, _, _ = pair
    with pytest.raises(ProtocolAbort):
        a.get_packet()
    assert "Abort." in a_out.getvalue()


def test_put_packet_rejects_bad_length(pair):
    _, _, b, _ = pair
    with pytest.raises(ProtocolAbort):
        b.put_packet(bytes(10))


def test_debug_mask_selects_messages():
    a_sock, b_sock = socket.socketpair()
    proto, out = _make("a", a_sock, debug_mask=4)
    try:
        proto.dbg_warning("warn %d\n", 7)
        proto.dbg_frame("frame %d\n", 8)
        assert "warn 7" in out.getvalue()
        assert "frame 8" not in out.getvalue()
    finally:
        proto.close()
        b_sock.close()


def test_time_to_live_ends_waiting():
    a_sock, b_sock = socket.socketpair()
    proto, out = _make("a", a_sock, life=0)
    try:
        assert proto.wait_for_event() == (Event.PHYSICAL_LAYER_READY, None)
        with pytest.raises(TimeoutError):
            proto.wait_for_event()
        assert "Quit." in out.getvalue()
    finally:
        proto.close()
        b_sock.close()


def test_connect_shares_epoch():
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    a_out = io.StringIO()
    results = {}

    def station_a():
        logger = Logger(lambda: 0, stream=a_out)
        results["a"] = connect(Config(station="a", port=port), logger)

    thread = threading.Thread(target=station_a)
    thread.start()
    time.sleep(0.2)
    b_out = io.StringIO()
    b = connect(Config(station="b", port=port), Logger(lambda: 0, stream=b_out))
    thread.join(timeout=10)
    a = results["a"]
    try:
        assert a.epoch == b.epoch
        assert "Station A" in a_out.getvalue()
        assert "New epoch" in b_out.getvalue()
    finally:
        a.close()
        b.close()