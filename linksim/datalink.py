"""Selective-repeat data link layer running on the simulated link."""

from __future__ import annotations

import enum
import struct
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, List, Optional, Sequence

from .crc import append_crc, crc32
from .logformat import Logger
from .options import UsageError, parse_args, usage_text
from .protocol import PKT_LEN, Event, ProtocolAbort, connect

MAX_SEQ = 15
NR_BUFS = (MAX_SEQ + 1) // 2
DATA_TIMER = 3000
ACK_TIMER = 300
MIN_FRAME_LEN = 6

_PACKET_ID = struct.Struct("<h")


class FrameKind(enum.IntEnum):
    """The kind byte that starts every frame."""

    DATA = 1
    ACK = 2
    NAK = 3


def _kind(value: int) -> int:
    try:
        return FrameKind(value)
    except ValueError:
        return value


def _packet_id(info: bytes) -> int:
    return _PACKET_ID.unpack_from(info)[0] if len(info) >= _PACKET_ID.size else 0


def _inc(k: int) -> int:
    return k + 1 if k < MAX_SEQ else 0


def between(a: int, b: int, c: int) -> bool:
    """Return whether ``a <= b < c`` holds circularly on sequence numbers."""
    return (a <= b < c) or (c < a <= b) or (b < c < a)


@dataclass(frozen=True)
class Frame:
    """A frame on the wire.

    DATA frames are ``kind, ack, seq, packet, crc``; ACK and NAK frames are
    ``kind, ack, crc``. The CRC is four little-endian bytes.
    """

    kind: int
    ack: int
    seq: int = 0
    info: bytes = b""

    def encode(self) -> bytes:
        """Return the frame's bytes, CRC trailer included."""
        if self.kind == FrameKind.DATA:
            if len(self.info) != PKT_LEN:
                raise ValueError(f"data frame needs a {PKT_LEN}-byte packet, got {len(self.info)}")
            body = bytes((self.kind, self.ack, self.seq)) + bytes(self.info)
        else:
            body = bytes((self.kind, self.ack))
        return append_crc(body)

    @classmethod
    def decode(cls, raw: bytes) -> "Frame":
        """Parse received bytes; raise :class:`ValueError` if too short or corrupt."""
        raw = bytes(raw)
        if len(raw) < MIN_FRAME_LEN:
            raise ValueError(f"frame of {len(raw)} bytes is too short")
        if crc32(raw) != 0:
            raise ValueError("bad CRC checksum")
        kind = _kind(raw[0])
        if kind == FrameKind.DATA and len(raw) > MIN_FRAME_LEN + 1:
            return cls(kind, raw[1], raw[2], raw[3:-4])
        return cls(kind, raw[1])


class SelectiveRepeat:
    """Sliding-window protocol with selective repeat, NAKs and piggybacked acks.

    ``link`` is the station's :class:`~linksim.protocol.Protocol` (or any
    object offering the same layer functions).
    """

    def __init__(self, link: Any) -> None:
        self.link = link
        self.ack_expected = 0
        self.next_frame_to_send = 0
        self.frame_expected = 0
        self.too_far = NR_BUFS
        self.nbuffered = 0
        self.no_nak = True
        self.phl_ready = False
        self.out_buf: List[bytes] = [bytes(PKT_LEN)] * NR_BUFS
        self.in_buf: List[bytes] = [bytes(PKT_LEN)] * NR_BUFS
        self.arrived = [False] * NR_BUFS
        self.outstanding: Deque[int] = deque()

    def _forget(self, seq: int) -> None:
        try:
            self.outstanding.remove(seq)
        except ValueError:
            pass

    def _put_frame(self, frame: Frame) -> None:
        self.link.send_frame(frame.encode())
        self.phl_ready = False

    def _send(self, kind: FrameKind, frame_nr: int = 0) -> None:
        ack = (self.frame_expected + MAX_SEQ) % (MAX_SEQ + 1)
        if kind == FrameKind.DATA:
            info = self.out_buf[frame_nr % NR_BUFS]
            self._put_frame(Frame(kind, ack, frame_nr, info))
            self.link.start_timer(frame_nr % NR_BUFS, DATA_TIMER)
            self.outstanding.append(frame_nr)
            self.link.dbg_frame("Send DATA %d %d, ID %d\n", frame_nr, ack, _packet_id(info))
        elif kind == FrameKind.ACK:
            self._put_frame(Frame(kind, ack))
            self.link.dbg_frame("Send ACK  %d\n", ack)
        else:
            self._put_frame(Frame(kind, ack))
            self.link.dbg_frame("Send NAK  %d\n", ack)
            self.no_nak = False
        self.link.stop_ack_timer()

    def _network_ready(self) -> None:
        self.nbuffered += 1
        self.out_buf[self.next_frame_to_send % NR_BUFS] = bytes(self.link.get_packet())
        self._send(FrameKind.DATA, self.next_frame_to_send)
        self.next_frame_to_send = _inc(self.next_frame_to_send)

    def _accept_data(self, frame: Frame) -> None:
        self.link.dbg_frame("Recv DATA %d %d, ID %d\n", frame.seq, frame.ack,
                            _packet_id(frame.info))
        if frame.seq != self.frame_expected and self.no_nak:
            self._send(FrameKind.NAK)
        else:
            self.link.start_ack_timer(ACK_TIMER)

        slot = frame.seq % NR_BUFS
        if between(self.frame_expected, frame.seq, self.too_far) and not self.arrived[slot]:
            self.arrived[slot] = True
            self.in_buf[slot] = frame.info
            while self.arrived[self.frame_expected % NR_BUFS]:
                expected = self.frame_expected % NR_BUFS
                self.link.put_packet(self.in_buf[expected])
                self.no_nak = True
                self.arrived[expected] = False
                self.frame_expected = _inc(self.frame_expected)
                self.too_far = _inc(self.too_far)
                self.link.start_ack_timer(ACK_TIMER)

    def _frame_received(self) -> None:
        try:
            frame = Frame.decode(self.link.recv_frame())
        except ValueError:
            self.link.dbg_event("**** Receiver Error, Bad CRC Checksum\n")
            if self.no_nak:
                self._send(FrameKind.NAK)
            return

        if frame.kind == FrameKind.ACK:
            self.link.dbg_frame("Recv ACK  %d\n", frame.ack)
        if frame.kind == FrameKind.DATA:
            self._accept_data(frame)

        resend = (frame.ack + 1) % (MAX_SEQ + 1)
        if frame.kind == FrameKind.NAK and between(self.ack_expected, resend,
                                                   self.next_frame_to_send):
            self.link.dbg_frame("Recv NAK  %d\n", frame.ack)
            self._forget(resend)
            self._send(FrameKind.DATA, resend)

        while between(self.ack_expected, frame.ack, self.next_frame_to_send):
            self.nbuffered -= 1
            self.link.stop_timer(self.ack_expected % NR_BUFS)
            self._forget(self.ack_expected)
            self.ack_expected = _inc(self.ack_expected)

    def _data_timeout(self) -> None:
        if not self.outstanding:
            return
        oldest = self.outstanding[0]
        self.link.dbg_event("---- DATA %d timeout\n", oldest)
        self._send(FrameKind.DATA, oldest)
        self._forget(oldest)

    def handle(self, event: Event, arg: Optional[int] = None) -> None:
        """React to one event from the link, then gate the network layer."""
        if event == Event.NETWORK_LAYER_READY:
            self._network_ready()
        elif event == Event.PHYSICAL_LAYER_READY:
            self.phl_ready = True
        elif event == Event.FRAME_RECEIVED:
            self._frame_received()
        elif event == Event.DATA_TIMEOUT:
            self._data_timeout()
        elif event == Event.ACK_TIMEOUT:
            self.link.dbg_event("---- ACK %d timeout\n",
                                (self.frame_expected + MAX_SEQ) % (MAX_SEQ + 1))
            self._send(FrameKind.ACK)

        if self.nbuffered < NR_BUFS and self.phl_ready:
            self.link.enable_network_layer()
        else:
            self.link.disable_network_layer()

    def run(self) -> None:
        """Handle events until the link raises (time to live over, peer gone)."""
        self.link.disable_network_layer()
        while True:
            event, arg = self.link.wait_for_event()
            self.handle(event, arg)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run one station: ``datalink <options> A|B``."""
    argv = list(sys.argv if argv is None else argv)
    prog = argv[0] if argv else "datalink"
    try:
        config = parse_args(argv)
    except UsageError as exc:
        if exc.args and exc.args[0]:
            print(exc.args[0])
        print(usage_text(prog), end="")
        return 0
    except ValueError as exc:
        print(f"\nFATAL: {exc}\nAbort.")
        return 0

    log_file = None
    path = config.log_path(prog)
    if path is not None:
        try:
            log_file = open(path, "w", encoding="utf-8")
        except OSError as exc:
            print(f'WARNING: Failed to create log file "{path}": {exc.strerror}')

    clock_source: list = []

    def clock() -> int:
        return clock_source[0].get_ms() if clock_source else 0

    with Logger(clock, log_file=log_file) as logger:
        try:
            link = connect(config, logger)
        except (ProtocolAbort, OSError):
            return 0
        clock_source.append(link)
        logger.lprintf("Selective repeat data link, window %d, MAX_SEQ %d\n", NR_BUFS, MAX_SEQ)
        with link:
            try:
                SelectiveRepeat(link).run()
            except (ProtocolAbort, OSError):
                return 0
    return 0