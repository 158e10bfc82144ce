# linksim

`linksim` simulates two stations, A and B, joined by a slow and noisy
serial link. The link runs at 8000 bit/s with a 270 ms propagation delay.
A chosen bit error rate damages the data each station receives. A
selective-repeat sliding-window data link protocol runs on top of the link
and carries a stream of fixed-size 256-byte packets. The network layer at
each end makes these packets and checks them. A packet that arrives out of
order or damaged stops the station.

Each station writes timestamped log lines (`SSS.mmm` since the shared
epoch) to the terminal and to a log file. About every two seconds it
reports how many packets it has received, the throughput it reached and the
number of bit errors imposed so far.

## Installation

```
pip install .
```

To run the test suite as well:

```
pip install .[test]
pytest
```

## Running

Open two terminals on the same machine. Start station A first, then station B:

```
linksim A
linksim B
```

Station A listens on a TCP port on all interfaces. Station B connects to it
on `127.0.0.1`, and retries up to 60 times, two seconds apart. Once
connected, B sends the epoch that both stations use for their timestamps.
If you give no station name, or give a bad option, the command prints the
usage text.

### Options

```
-?, --help              print usage
-u, --utopia            error-free channel (bit error rate 0)
-f, --flood             flood traffic
-i, --ibib              set station B layer 3 sender mode as IDLE-BUSY-IDLE-BUSY-...
-n, --nolog             do not create a log file
-d, --debug=<0-7>       debug mask
-p, --port=<port#>      TCP port number (default: 59144)
-b, --ber=<ber>         bit error rate (received data only), must be below 1
-l, --log=<filename>    use the given file as the log file
-t, --ttl=<seconds>     time to live
```

Long options may be abbreviated as long as the abbreviation is unique.
Short options may be grouped, as in `-fd3`.

In the debug mask, bit 1 (value 2) shows the frames sent and received and
the receiver and timeout events. Bit 2 (value 4) shows the bit errors the
channel imposes. Bit 0 is accepted but has no effect of its own.

Examples:

```
linksim -fd3 -b 1e-4 A
linksim --flood --debug=3 --ber=1e-4 B
```

If you give no log file, each station writes to `<program>-A.log` or
`<program>-B.log`. A log file name of `nul` turns logging off, as `-n` does.
The station prints `Quit.` and exits once its time to live is over. It also
exits when the peer disconnects.

## Library use

The modules can also be used on their own:

- `linksim.crc`: `crc32(data)` and `append_crc(data)`. The register starts
  at `0xFFFFFFFF` and is not inverted at the end. A frame that ends in its
  own little-endian CRC therefore gives a checksum of zero.
- `linksim.logformat`: `format_message(fmt, *args)` does printf-style
  formatting, plus `%b` for binary and `%M` for dumps of a bytes argument.
  A bad format raises `FormatError`. `Logger(clock, stream, log_file)`
  stamps each line with the time from `clock`, which returns milliseconds.
  It also copies its output to the log file, if one is given.
- `linksim.options`: `parse_args(argv)` returns a `Config`. A bad command
  line raises `UsageError`, and `usage_text(prog)` gives the help text. A
  station name other than A or B raises `ValueError`.
- `linksim.protocol`: `Protocol` is one station's physical layer, timers
  and network layer over a connected socket. `wait_for_event()` returns an
  `Event`. `connect(config, logger)` makes the TCP rendezvous between the
  stations. Other pieces are also public: `encode_frame`, `FrameAssembler`,
  `TimerBank` and `MsvcRand`. Misuse of the layers raises `ProtocolAbort`.
- `linksim.datalink`: the frame layout (`Frame`, `FrameKind`), the window
  test `between(a, b, c)`, the `SelectiveRepeat` protocol engine, and
  `main`, which the `linksim` command runs.

```python
from linksim.crc import crc32
from linksim.datalink import Frame, FrameKind

raw = Frame(FrameKind.ACK, ack=5).encode()
assert crc32(raw) == 0
assert Frame.decode(raw) == Frame(FrameKind.ACK, 5)
```

## What it does not do

The two stations only meet over TCP on the same host: station B always
connects to `127.0.0.1`. There is no real serial line or other network
transport. The channel only damages received data; it never loses or
reorders it.