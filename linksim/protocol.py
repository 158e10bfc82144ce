"""Simulated physical and network layers for one station of a point-to-point link.

The physical layer runs over a TCP connection to the peer station and imposes
the channel's bandwidth, propagation delay and bit errors. The network layer
produces and checks pseudo-random packets. :meth:`Protocol.wait_for_event`
drives the data link layer built on top.
"""

from __future__ import annotations

import enum
import select
import socket
import struct
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, List, Optional, Tuple

from .logformat import Logger
from .options import DEFAULT_TICK, Config

VERSION = "4.0"

PKT_LEN = 256
CHAN_DELAY = 270
CHAN_BPS = 8000

NTIMER = 129
ACK_TIMER_ID = NTIMER - 1

SQ_SIZE = 128 * 1024
BLKSIZE = 16 * CHAN_BPS // 8 // (1000 // DEFAULT_TICK)
PHL_SQ_LEVEL = 50
FRAME_BUFFER = 2048

RAND_MAX = 0x7FFF
SEED_A = 0x65109BC4
SEED_B = 0x1E459090

DBG_EVENT = 0x01
DBG_FRAME = 0x02
DBG_WARNING = 0x04

_EPOCH = struct.Struct("<q")
_PACKET_ID = struct.Struct("<H")


class Event(enum.IntEnum):
    """Events returned by :meth:`Protocol.wait_for_event`."""

    NETWORK_LAYER_READY = 0
    PHYSICAL_LAYER_READY = 1
    FRAME_RECEIVED = 2
    DATA_TIMEOUT = 3
    ACK_TIMEOUT = 4


class ProtocolAbort(RuntimeError):
    """A fatal misuse of the simulated layers; the station cannot go on."""


class MsvcRand:
    """The linear congruential generator of the classic C runtime ``rand``."""

    def __init__(self, seed: int) -> None:
        self._state = seed & 0xFFFFFFFF

    def next(self) -> int:
        """Return the next value in ``0..RAND_MAX``."""
        self._state = (self._state * 214013 + 2531011) & 0xFFFFFFFF
        return (self._state >> 16) & RAND_MAX


class TimerBank:
    """Data timers ``0..127`` and one ack timer, each an absolute deadline in ms.

    A deadline of 0 means the timer is stopped.
    """

    def __init__(self) -> None:
        self._deadlines = [0] * NTIMER

    def start(self, nr: int, deadline: int) -> None:
        """Arm data timer ``nr``, replacing any earlier deadline."""
        if not 0 <= nr < ACK_TIMER_ID:
            raise ValueError(f"timer number must be 0~{ACK_TIMER_ID - 1}, got {nr}")
        self._deadlines[nr] = deadline

    def stop(self, nr: int) -> None:
        """Stop data timer ``nr``; out-of-range numbers are ignored."""
        if 0 <= nr < ACK_TIMER_ID:
            self._deadlines[nr] = 0

    def remaining(self, nr: int, now: int) -> int:
        """Return the ms left on data timer ``nr``, or 0 if stopped or due."""
        if not 0 <= nr < ACK_TIMER_ID:
            return 0
        deadline = self._deadlines[nr]
        return max(deadline - now, 0) if deadline else 0

    def start_ack(self, deadline: int) -> None:
        """Arm the ack timer unless it is already running."""
        if not self._deadlines[ACK_TIMER_ID]:
            self._deadlines[ACK_TIMER_ID] = deadline

    def stop_ack(self) -> None:
        """Stop the ack timer."""
        self._deadlines[ACK_TIMER_ID] = 0

    def expired(self, now: int) -> Optional[Tuple[Event, int]]:
        """Stop and report the lowest-numbered timer that is due, if any."""
        for nr, deadline in enumerate(self._deadlines):
            if deadline and deadline <= now:
                self._deadlines[nr] = 0
                kind = Event.ACK_TIMEOUT if nr == ACK_TIMER_ID else Event.DATA_TIMEOUT
                return kind, nr
        return None


def encode_frame(frame: bytes) -> bytes:
    """Return the line encoding of ``frame``: 0xFF, low/high nibble pairs, 0xFF."""
    out = bytearray([0xFF])
    for byte in frame:
        out += bytes((byte & 0x0F, byte >> 4))
    out.append(0xFF)
    return bytes(out)


class FrameAssembler:
    """Rebuilds frames from the nibble stream made by :func:`encode_frame`."""

    def __init__(self) -> None:
        self._frame: Optional[bytearray] = None
        self._low: Optional[int] = None

    def feed(self, data: bytes) -> List[bytes]:
        """Consume ``data`` and return the frames it completed, in order."""
        done = []
        for ch in data:
            if ch == 0xFF:
                if self._frame is None:
                    self._frame = bytearray()
                    self._low = None
                elif self._frame:
                    done.append(bytes(self._frame))
                    self._frame = None
            elif self._frame is not None and len(self._frame) < FRAME_BUFFER:
                if self._low is None:
                    self._low = ch
                else:
                    self._frame.append((self._low | ((ch << 4) ^ (ch & 0xF0))) & 0xFF)
                    self._low = None
        return done


@dataclass
class _Block:
    commit_ts: int
    data: bytearray


def _fatal(logger: Logger, message: str) -> ProtocolAbort:
    logger.lprintf("\nFATAL: %s\nAbort.\n", message)
    return ProtocolAbort(message)


class Protocol:
    """One station's physical and network layers over a connected socket."""

    def __init__(self, config: Config, logger: Logger, sock: socket.socket,
                 epoch: int) -> None:
        self.config = config
        self.logger = logger
        self.epoch = epoch
        self._sock = sock
        self._sock.settimeout(0.01)
        self._now = 0

        seed_mix = 97209 if config.station == "a" else 18231
        self._rand = MsvcRand(config.seed ^ seed_mix)
        rand_a, rand_b = MsvcRand(SEED_A), MsvcRand(SEED_B)
        if config.station == "a":
            self._send_rand, self._recv_rand = rand_a, rand_b
        else:
            self._send_rand, self._recv_rand = rand_b, rand_a

        self._queue = bytearray()
        self._inform_phl_ready = True
        self._send_allowed = 0
        self._send_last_ts = 0

        self._blocks: Deque[_Block] = deque()
        self._nbits = 0
        self._noise = 0
        self._assembler = FrameAssembler()
        self._frames: Deque[bytes] = deque()

        self._timers = TimerBank()

        self._network_active = False
        self._layer3_ready = False
        self._nl_last_ts = 0
        self._pkt_no = 0
        self._put_last_ts = 0
        self._rpackets = 0
        self._rbytes = 0
        self._ts0 = 0
        self._last_warn = 0.0

    def __enter__(self) -> "Protocol":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _abort(self, message: str) -> ProtocolAbort:
        return _fatal(self.logger, message)

    def _disconnected(self, text: str) -> ConnectionError:
        self.logger.lprintf(text)
        return ConnectionError("TCP disconnected")

    def get_ms(self) -> int:
        """Return milliseconds since the shared epoch, or 0 before it is known."""
        if not self.epoch:
            return 0
        now = time.time()
        seconds = int(now)
        return (seconds - self.epoch) * 1000 + int((now - seconds) * 1000)

    def station_name(self) -> str:
        """Return ``"A"`` or ``"B"``."""
        return self.config.station_name()

    # Physical layer: sender

    def phl_sq_len(self) -> int:
        """Return the number of line bytes waiting in the sending queue."""
        return len(self._queue)

    def _send_byte(self, byte: int) -> None:
        self._inform_phl_ready = True
        if self._send_allowed and not self._queue:
            try:
                self._sock.send(bytes((byte,)))
            except OSError:
                pass
            self._send_allowed -= 1
            return
        if len(self._queue) == SQ_SIZE - 1:
            raise self._abort("Physical Layer Sending Queue overflow")
        self._queue.append(byte)

    def send_frame(self, frame: bytes) -> None:
        """Queue ``frame`` for transmission over the channel."""
        for byte in encode_frame(frame):
            self._send_byte(byte)

    def _socket_send(self) -> None:
        now = self._now
        if self._send_last_ts == 0:
            self._send_last_ts = now
        if now <= self._send_last_ts:
            return
        self._send_allowed = (now - self._send_last_ts) * CHAN_BPS // 8 // 1000 * 2
        count = min(len(self._queue), self._send_allowed)
        sent = 0
        if count:
            try:
                sent = self._sock.send(bytes(self._queue[:count]))
            except OSError:
                sent = 0
            if sent <= 0:
                raise self._disconnected("TCP Disconnected.\n")
            del self._queue[:sent]
        self._send_allowed -= sent
        self._send_last_ts = now

    # Physical layer: receiver

    def _socket_recv(self) -> None:
        try:
            data = bytearray(self._sock.recv(BLKSIZE))
        except OSError:
            data = bytearray()
        if not data:
            raise self._disconnected("TCP disconnected.\n")
        self._nbits += len(data) * 4

        ber = self.config.ber
        if ber != 0.0:
            rate = self._noise / self._nbits
            fact = 3.5 if rate > ber else 6.0
            threshold = int((1.0 - (1.0 - ber) ** (fact * len(data))) * (RAND_MAX + 1.0) + 0.5)
            if self._rand.next() <= threshold:
                position = self._rand.next() % len(data)
                if data[position] & 0x0F:
                    data[position] ^= 1 << (self._rand.next() % 8)
                    self._noise += 1
                    self.dbg_warning("Impose noise on received data, %u/%u=%.1E\n",
                                     self._noise, self._nbits, self._noise / self._nbits)

        self._blocks.append(_Block(self._now + CHAN_DELAY - 10, data))

    def recv_frame(self) -> bytes:
        """Return the oldest received frame."""
        if not self._frames:
            raise self._abort("recv_frame(): Receiving Queue is empty")
        return self._frames.popleft()

    def _commit_received(self) -> None:
        block = self._blocks.popleft()
        if self._ts0 == 0:
            self._ts0 = self._now
            half = len(block.data) // 2
            if self._ts0 >= half:
                self._ts0 -= half
        self._frames.extend(self._assembler.feed(block.data))

    # Timers

    def start_timer(self, nr: int, ms: int) -> None:
        """Start data timer ``nr`` to fire ``ms`` after the queue drains."""
        if nr >= ACK_TIMER_ID:
            raise self._abort("start_timer(): timer No. must be 0~128")
        self._timers.start(nr, self._now + self.phl_sq_len() * 8000 // CHAN_BPS + ms)

    def stop_timer(self, nr: int) -> None:
        """Stop data timer ``nr``."""
        self._timers.stop(nr)

    def get_timer(self, nr: int) -> int:
        """Return the ms left on data timer ``nr``."""
        return self._timers.remaining(nr, self._now)

    def start_ack_timer(self, ms: int) -> None:
        """Start the ack timer unless it is already running."""
        self._timers.start_ack(self._now + ms)

    def stop_ack_timer(self) -> None:
        """Stop the ack timer."""
        self._timers.stop_ack()

    # Network layer

    def enable_network_layer(self) -> None:
        """Allow the network layer to offer new packets."""
        self._network_active = True

    def disable_network_layer(self) -> None:
        """Stop the network layer from offering new packets."""
        self._network_active = False

    def _network_layer_ready(self) -> bool:
        if not self._network_active:
            return False
        if self.config.flood:
            return True
        now = self._now
        if (now - self._nl_last_ts) * CHAN_BPS // 8 // 1000 < PKT_LEN * 3 // 4:
            return False
        if self.config.station == "b":
            if now // 1000 // self.config.cycle % 2 != int(self.config.ibib):
                if now - self._nl_last_ts < 4000 + self._rand.next() % 500:
                    return False
            if now < CHAN_DELAY + 3 * PKT_LEN * 8000 // CHAN_BPS:
                return False
        self._nl_last_ts = now
        return True

    def get_packet(self) -> bytes:
        """Return the next outgoing packet; only after NETWORK_LAYER_READY."""
        if not self._layer3_ready:
            raise self._abort("get_packet(): Network layer is not ready for a new packet")
        body = bytes(self._send_rand.next() & 0xFF for _ in range(PKT_LEN - 2))
        ident = (ord(self.config.station) - ord("a") + 1) * 10000 + self._pkt_no % 10000
        self._pkt_no += 1
        self._layer3_ready = False
        return _PACKET_ID.pack(ident & 0xFFFF) + body

    def put_packet(self, packet: bytes) -> None:
        """Deliver a received packet; it must be the peer's next one, intact."""
        if len(packet) != PKT_LEN:
            raise self._abort("Bad Packet length")
        for byte in packet[2:]:
            if byte != self._recv_rand.next() & 0xFF:
                raise self._abort("Network Layer received a bad packet from data link layer")
        self._rpackets += 1
        self._rbytes += len(packet)

        now = self._now
        if now - self._put_last_ts > 2000 and now > self._ts0 + 2000:
            bps = self._rbytes * 8 * 1000 / (now - self._ts0)
            error_rate = self._noise / self._nbits if self._nbits else float("nan")
            self.logger.lprintf(
                ".... %d packets received, %.0f bps, %.2f%%, Err %d (%.1e)\n",
                self._rpackets, bps, bps / CHAN_BPS * 100, self._noise, error_rate)
            self._put_last_ts = now

    # Debug output

    def dbg_event(self, fmt: str, *args: Any) -> None:
        """Log an event message; shown under the frame bit of the debug mask."""
        if self.config.debug_mask & DBG_FRAME:
            self.logger.lprintf(fmt, *args)

    def dbg_frame(self, fmt: str, *args: Any) -> None:
        """Log a frame message when the frame bit of the debug mask is set."""
        if self.config.debug_mask & DBG_FRAME:
            self.logger.lprintf(fmt, *args)

    def dbg_warning(self, fmt: str, *args: Any) -> None:
        """Log a warning when the warning bit of the debug mask is set."""
        if self.config.debug_mask & DBG_WARNING:
            self.logger.lprintf(fmt, *args)

    # Event generator

    def wait_for_event(self) -> Tuple[Event, Optional[int]]:
        """Block until the next event; return it with the timer number for timeouts.

        Raises :class:`TimeoutError` when the station's time to live is over and
        :class:`ConnectionError` when the peer goes away.
        """
        tick = self.config.tick
        while True:
            self._now = self.get_ms()

            if self._blocks and self._blocks[0].commit_ts <= self._now:
                self._commit_received()
                if self._frames:
                    return Event.FRAME_RECEIVED, None

            try:
                readable, writable, _ = select.select([self._sock], [self._sock], [], 0)
            except (OSError, ValueError):
                raise self._abort("system select()") from None

            if writable:
                self._socket_send()
            if readable:
                self._socket_recv()

            if self._network_layer_ready():
                self._layer3_ready = True
                return Event.NETWORK_LAYER_READY, None

            expired = self._timers.expired(self._now)
            if expired is not None:
                return expired

            if self._inform_phl_ready and self.phl_sq_len() < PHL_SQ_LEVEL:
                self._inform_phl_ready = False
                return Event.PHYSICAL_LAYER_READY, None

            before = self.get_ms()
            time.sleep(tick / 1000)
            slept = self.get_ms() - before
            if slept > tick + 50 and time.time() > self._last_warn + 1:
                self.logger.lprintf(
                    "** WARNING: System too busy, sleep %d ms, but be awakened %d ms later\n",
                    tick, slept)
                self._last_warn = time.time()

            if self._now > self.config.life:
                self.logger.lprintf("Quit.\n")
                raise TimeoutError("time-to-live expired")

    def close(self) -> None:
        """Close the connection to the peer station."""
        self._sock.close()


def _banner(config: Config, logger: Logger) -> None:
    logger.lprintf(
        "=============================================================\n"
        "                    Station %s                               \n"
        "-------------------------------------------------------------\n",
        config.station_name())
    logger.lprintf("Protocol.lib, version %s\n", VERSION)
    logger.lprintf("Channel: %d bps, %d ms propagation delay, bit error rate ",
                   CHAN_BPS, CHAN_DELAY)
    if config.ber > 0.0:
        logger.lprintf("%.1E\n", config.ber)
    else:
        logger.lprintf("0\n")
    log_name = getattr(logger.log_file, "name", None) or "nul"
    logger.lprintf("Log file \"%s\", TCP port %d, debug mask 0x%02x\n",
                   log_name, config.port, config.debug_mask)


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError("TCP disconnected")
        data += chunk
    return bytes(data)


def _accept_peer(config: Config, logger: Logger) -> Tuple[socket.socket, int]:
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
    with server:
        try:
            server.bind(("", config.port))
        except OSError:
            logger.lprintf("Station A: Failed to bind TCP port %u", config.port)
            raise _fatal(logger, "Station A failed to bind TCP port") from None
        server.listen(5)
        logger.lprintf("Station A is waiting for station B on TCP port %u ... ", config.port)
        try:
            sock, _ = server.accept()
        except OSError:
            raise _fatal(logger, "Station A failed to communicate with station B") from None
    logger.lprintf("Done.\n")
    (epoch,) = _EPOCH.unpack(_recv_exact(sock, _EPOCH.size))
    return sock, epoch


def _connect_peer(config: Config, logger: Logger) -> Tuple[socket.socket, int]:
    for _ in range(60):
        logger.lprintf("Station B is connecting station A (TCP port %u) ... ", config.port)
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
        try:
            sock.connect(("127.0.0.1", config.port))
        except OSError:
            sock.close()
            logger.lprintf("Failed!\n")
            time.sleep(2)
            continue
        logger.lprintf("Done.\n")
        break
    else:
        raise _fatal(logger, "Station B failed to connect station A")
    epoch = int(time.time())
    sock.sendall(_EPOCH.pack(epoch))
    return sock, epoch


def _tune_socket(sock: socket.socket) -> None:
    buf_size = 64 * 1024
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, buf_size)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, buf_size)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)


def connect(config: Config, logger: Logger) -> Protocol:
    """Print the banner, link up with the peer station and share the epoch.

    Station A listens on ``config.port`` and receives the epoch; station B
    connects to it on the local host and sends the epoch.
    """
    if config.station not in ("a", "b"):
        raise ValueError("Station name must be 'A' or 'B'")
    _banner(config, logger)
    if config.station == "a":
        sock, epoch = _accept_peer(config, logger)
    else:
        sock, epoch = _connect_peer(config, logger)
    logger.lprintf("New epoch: %s\n", time.asctime(time.localtime(epoch)))
    logger.lprintf("=================================================================\n\n")
    _tune_socket(sock)
    return Protocol(config, logger, sock, epoch)