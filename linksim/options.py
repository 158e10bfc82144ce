"""Command-line configuration for one station of the simulated link."""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Tuple

DEFAULT_PORT = 59144
DEFAULT_TICK = 15
DEFAULT_CHAN_BER = 1.0e-5
DEFAULT_CYCLE = 100
DEFAULT_LIFE = 0x7FFFFF00
DEFAULT_SEED = 0x098BCDE1

NO_LOG = "nul"

_SHORT_OPTIONS = "?ufind:p:b:l:t:"

# (long name, takes an argument, equivalent short option)
_LONG_OPTIONS: Tuple[Tuple[str, bool, str], ...] = (
    ("help", False, "?"),
    ("utopia", False, "u"),
    ("flood", False, "f"),
    ("ibib", False, "i"),
    ("nolog", False, "n"),
    ("debug", True, "d"),
    ("port", True, "p"),
    ("ber", True, "b"),
    ("log", True, "l"),
    ("ttl", True, "t"),
)

_INT_RE = re.compile(r"\s*[+-]?[0-9]+")
_FLOAT_RE = re.compile(
    r"\s*[+-]?(?:[0-9]+\.?[0-9]*(?:[eE][+-]?[0-9]+)?"
    r"|\.[0-9]+(?:[eE][+-]?[0-9]+)?"
    r"|inf(?:inity)?|nan)",
    re.IGNORECASE,
)


class UsageError(Exception):
    """The command line cannot be used; the caller should show the usage text."""


@dataclass
class Config:
    """Settings of one station, as chosen on the command line."""

    station: str = "a"
    ber: float = DEFAULT_CHAN_BER
    ibib: bool = False
    flood: bool = False
    cycle: int = DEFAULT_CYCLE
    life: int = DEFAULT_LIFE
    tick: int = DEFAULT_TICK
    seed: int = DEFAULT_SEED
    debug_mask: int = 0
    port: int = DEFAULT_PORT
    log_name: str = ""

    def station_name(self) -> str:
        """Return ``"A"``, ``"B"`` or ``"XXX"`` for an unknown station."""
        return {"a": "A", "b": "B"}.get(self.station, "XXX")

    def log_name_for(self, prog: str) -> str:
        """Return the log file name as reported in the banner."""
        if self.log_name:
            return self.log_name
        base = prog[:-4] if prog.lower().endswith(".exe") else prog
        return base + ("-A.log" if self.station == "a" else "-B.log")

    def log_path(self, prog: str) -> Optional[str]:
        """Return the log file to create, or ``None`` when logging is off."""
        name = self.log_name_for(prog)
        if name.lower() == NO_LOG:
            return None
        return name


def usage_text(prog: str) -> str:
    """Return the help text printed for a bad or missing command line."""
    return (
        f"\nUsage:\n  {prog} <options> <station-name>\n"
        "\nOptions : \n"
        "    -?, --help : print this\n"
        "    -u, --utopia : utopia channel (an error-free channel)\n"
        "    -f, --flood : flood traffic\n"
        "    -i, --ibib  : set station B layer 3 sender mode as IDLE-BUSY-IDLE-BUSY-...\n"
        "    -n, --nolog : do not create log file\n"
        "    -d, --debug=<0-7>: debug mask (bit0:event, bit1:frame, bit2:warning)\n"
        f"    -p, --port=<port#> : TCP port number (default: {DEFAULT_PORT})\n"
        "    -b, --ber=<ber> : Bit Error Rate (received data only)\n"
        "    -l, --log=<filename> : using assigned file as log file\n"
        "    -t, --ttl=<seconds> : set time-to-live\n"
        "\n"
        "i.e.\n"
        f"    {prog} -fd3 -b 1e-4 A\n"
        f"    {prog} --flood --debug=3 --ber=1e-4 A\n"
        "\n"
    )


def _atoi(text: str) -> int:
    match = _INT_RE.match(text)
    return int(match.group()) if match else 0


def _strtod(text: str) -> float:
    match = _FLOAT_RE.match(text)
    return float(match.group()) if match else 0.0


def _long_option(prog: str, element: str, args: Iterator[str]) -> Tuple[str, Optional[str]]:
    body = element[2:]
    name, eq, inline = body.partition("=")
    exact = [opt for opt in _LONG_OPTIONS if opt[0] == name]
    matches = exact or [opt for opt in _LONG_OPTIONS if opt[0].startswith(name)]
    if not matches:
        raise UsageError(f"{prog}: unrecognized option `--{body}'")
    if len(matches) > 1:
        raise UsageError(f"{prog}: option `{element}' is ambiguous")
    long_name, takes_arg, key = matches[0]
    if eq:
        if not takes_arg:
            raise UsageError(f"{prog}: option `--{long_name}' doesn't allow an argument")
        return key, inline
    if takes_arg:
        value = next(args, None)
        if value is None:
            raise UsageError(f"{prog}: option `{element}' requires an argument")
        return key, value
    return key, None


def _short_options(prog: str, element: str,
                   args: Iterator[str]) -> Iterator[Tuple[str, Optional[str]]]:
    rest = element[1:]
    while rest:
        ch, rest = rest[0], rest[1:]
        position = _SHORT_OPTIONS.find(ch)
        if position < 0 or ch == ":":
            raise UsageError(f"{prog}: illegal option -- {ch}")
        if _SHORT_OPTIONS[position + 1:position + 2] == ":":
            if rest:
                yield ch, rest
                return
            value = next(args, None)
            if value is None:
                raise UsageError(f"{prog}: option requires an argument -- {ch}")
            yield ch, value
            return
        yield ch, None


def _scan(argv: Sequence[str]) -> Iterator[Tuple[Optional[str], Optional[str]]]:
    """Yield ``(option, value)`` pairs in order, and ``(None, operand)`` for operands."""
    prog = argv[0]
    permute = os.environ.get("POSIXLY_CORRECT") is None
    args = iter(argv[1:])
    for element in args:
        if element == "--":
            for operand in args:
                yield None, operand
            return
        if not element.startswith("-") or element == "-":
            yield None, element
            if not permute:
                for operand in args:
                    yield None, operand
                return
            continue
        if element.startswith("--"):
            yield _long_option(prog, element, args)
        else:
            yield from _short_options(prog, element, args)


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    """Build a :class:`Config` from a full argument vector, program name first.

    Raises :class:`UsageError` when the usage text should be shown and
    :class:`ValueError` when the station name is neither A nor B.
    """
    if argv is None:
        argv = sys.argv
    argv = list(argv)
    if len(argv) < 2:
        raise UsageError("")

    config = Config()
    operands = []
    for key, value in _scan(argv):
        if key is None:
            operands.append(value)
        elif key == "?":
            raise UsageError("")
        elif key == "u":
            config.ber = 0.0
        elif key == "f":
            config.flood = True
        elif key == "i":
            config.ibib = True
        elif key == "n":
            config.log_name = NO_LOG
        elif key == "d":
            config.debug_mask = _atoi(value)
        elif key == "p":
            config.port = _atoi(value) & 0xFFFF
        elif key == "b":
            config.ber = _strtod(value)
            if config.ber >= 1.0:
                raise UsageError(f"Bad BER {config.ber:.3f}")
        elif key == "l":
            config.log_name = value
        elif key == "t":
            config.life = _atoi(value) * 1000

    if not operands:
        raise UsageError("")

    station = operands[0][:1].lower()
    if station not in ("a", "b"):
        raise ValueError("Station name must be 'A' or 'B'")
    config.station = station
    return config