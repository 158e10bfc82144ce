"""Printf-style formatting and timestamped, teed log output."""

from __future__ import annotations

import enum
import operator
import os
import re
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, TextIO

MAX_WIDTH = 10 * 1024

_MASK64 = (1 << 64) - 1
_SIGN_BIT64 = 1 << 63
_LENGTH_MASKS = {1: _MASK64, 0: 0xFFFFFFFF, -1: 0xFFFF, -2: 0xFF}
_DIGIT_CHARS = "0123456789abcdefghijklmnopqrstuvwxyz"
_WIDTH_RE = re.compile(r"[0-9]+")
_PRECISION_RE = re.compile(r"\s*[+-]?[0-9]+")
_LINE_RE = re.compile(r"[^\n]*\n|[^\n]+")
_MEMORY_CHUNK = 252
_MEMORY_SIZED_LIMIT = (256 - 32) // 3


class FormatError(ValueError):
    """Raised when a format string or its arguments cannot be rendered."""


class _Flag(enum.IntFlag):
    NONE = 0
    SIGN = 0x01
    UPCASE = 0x02
    HASH = 0x04
    LEFT = 0x08
    SPACE = 0x10
    PLUS = 0x20
    DOT = 0x40


@dataclass
class _Spec:
    flags: _Flag = _Flag.NONE
    width: int = 0
    precision: int = 0
    pad: str = " "
    length: int = 0


class _Arguments:
    """Hands out the positional arguments of one format call in order."""

    def __init__(self, args: tuple) -> None:
        self._values: Iterator[Any] = iter(args)

    def take(self) -> Any:
        try:
            return next(self._values)
        except StopIteration:
            raise FormatError("not enough arguments for format string") from None

    def take_int(self) -> int:
        value = self.take()
        try:
            return operator.index(value)
        except TypeError:
            raise FormatError(f"integer argument expected, got {value!r}") from None

    def take_float(self) -> float:
        value = self.take()
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise FormatError(f"number argument expected, got {value!r}")
        return float(value)


def _to_base(num: int, base: int, upcase: bool) -> str:
    if base == 0 or base > 36:
        base = 10
    if num == 0:
        return "0"
    digits = []
    while num:
        num, rem = divmod(num, base)
        digits.append(_DIGIT_CHARS[rem])
    text = "".join(reversed(digits))
    return text.upper() if upcase else text


def _output_string(text: str, prefix_len: int, width: int, precision: int,
                   flags: _Flag, pad: str, precision_pad: str) -> str:
    if width == 0 and precision == 0:
        return text

    prefix, body = text[:prefix_len], text[prefix_len:]
    width -= prefix_len
    size = len(body)

    if flags & _Flag.DOT and width == 0:
        width = precision
    if not flags & _Flag.DOT:
        precision = size

    parts = []
    if not flags & _Flag.LEFT and pad == " ":
        parts.append(" " * (width - precision))
    parts.append(prefix)
    if not flags & _Flag.LEFT and pad == "0":
        parts.append("0" * (width - precision))
    parts.append(precision_pad * (precision - size))
    parts.append(body)
    if flags & _Flag.LEFT:
        parts.append(pad * (width - precision))
    return "".join(parts)


def _output_integer(num: int, spec: _Spec, conversion: str, base: int, prefix: str) -> str:
    width, precision, flags, pad = spec.width, spec.precision, spec.flags, spec.pad
    if precision > width:
        width = precision

    if conversion == "p" and num == 0:
        return _output_string("(nil)", 0, width, precision, flags, " ", " ")

    prefix_len = len(prefix)
    negative = False
    if flags & _Flag.SIGN and num & _SIGN_BIT64:
        num = ((1 << 64) - num) & _MASK64
        negative = True

    mask = _LENGTH_MASKS.get(spec.length)
    if mask is not None:
        num &= mask

    digits = _to_base(num, base, bool(flags & _Flag.UPCASE))

    if flags & _Flag.DOT and digits == "0":
        text = ""
        prefix_len = 0
    else:
        text = prefix + digits

    if negative:
        prefix_len = 1
        text = "-" + text
    elif flags & _Flag.SIGN and flags & (_Flag.PLUS | _Flag.SPACE):
        prefix_len = 1
        text = ("+" if flags & _Flag.PLUS else " ") + text

    if precision > 0:
        pad = " "
    if len(text) - prefix_len > precision:
        precision = len(text) - prefix_len

    return _output_string(text, prefix_len, width, precision, flags, pad, "0")


def _output_double(value: float, spec: _Spec, conversion: str) -> str:
    flags = spec.flags
    width = spec.width or 1
    precision = spec.precision if flags & _Flag.DOT else 6
    prefix_len = 1 if value < 0.0 else 0

    text = ("%%%d.%d%s" % (width, precision, conversion) % value).lstrip(" ")

    if flags & (_Flag.PLUS | _Flag.SPACE) and value >= 0:
        prefix_len = 1
        text = ("+" if flags & _Flag.PLUS else " ") + text

    if flags & _Flag.HASH and conversion == "f" and "." not in text:
        text += "."

    width = max(width, len(text))
    flags &= ~_Flag.DOT
    return _output_string(text, prefix_len, width, precision, flags, spec.pad, "0")


def _output_memory_block(data: Optional[bytes], spec: _Spec) -> str:
    width, precision, flags, pad = spec.width, spec.precision, spec.flags, spec.pad
    if data is None:
        return _output_string("(null)", 0, width, precision, flags, pad, " ")

    count = len(data)
    chunk = f"({count}) " if flags & _Flag.HASH else ""
    if count > _MEMORY_SIZED_LIMIT:
        width = precision = 0

    pieces = []
    for position, byte in enumerate(data, start=1):
        if pad != "0" and byte < 0x10:
            chunk += f"{byte:x}"
        else:
            chunk += f"{byte:02x}"
        if position < count:
            chunk += " "
        if len(chunk) > _MEMORY_CHUNK:
            pieces.append(_output_string(chunk, 0, width, precision, flags, pad, " "))
            chunk = ""

    if chunk:
        pieces.append(_output_string(chunk, 0, width, precision, flags, pad, " "))
    return "".join(pieces)


def _current_error_text() -> str:
    error = sys.exc_info()[1]
    if isinstance(error, OSError) and error.strerror:
        return error.strerror
    return os.strerror(0)


def _string_argument(value: Any) -> str:
    if value is None:
        return "(null)"
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("latin-1")
    return str(value)


def _char_argument(value: Any) -> str:
    if isinstance(value, str):
        if len(value) != 1:
            raise FormatError(f"single character expected, got {value!r}")
        return value
    try:
        return chr(operator.index(value) & 0xFF)
    except TypeError:
        raise FormatError(f"character argument expected, got {value!r}") from None


def _memory_argument(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise FormatError(f"bytes argument expected, got {value!r}")


def _convert(conversion: str, spec: _Spec, args: _Arguments) -> str:
    if conversion == "c":
        return _char_argument(args.take())
    if conversion == "%":
        return "%"

    if conversion in "ms":
        text = _current_error_text() if conversion == "m" else _string_argument(args.take())
        if spec.flags & _Flag.DOT and len(text) > spec.precision:
            text = text[:spec.precision]
        flags = spec.flags & ~_Flag.DOT
        return _output_string(text, 0, spec.width, 0, flags, " ", " ")

    if conversion in "bpXxdiuo":
        prefix = ""
        if conversion == "b":
            base = 2
        elif conversion in "pXx":
            base = 16
            if conversion == "p":
                prefix = "0x"
                spec.length = 1
            if conversion == "X":
                spec.flags |= _Flag.UPCASE
            if spec.flags & _Flag.HASH:
                prefix = "0X" if conversion == "X" else "0x"
        elif conversion in "diu":
            base = 10
            if conversion != "u":
                spec.flags |= _Flag.SIGN
        else:
            base = 8
            if spec.flags & _Flag.HASH:
                prefix = "0"

        raw = args.take_int()
        if spec.length > 0:
            num = raw & _MASK64
        else:
            word = raw & 0xFFFFFFFF
            if word & 0x80000000:
                word -= 1 << 32
            num = word & _MASK64
        return _output_integer(num, spec, conversion, base, prefix)

    if conversion in "gFfeE":
        return _output_double(args.take_float(), spec, conversion)

    if conversion == "M":
        return _output_memory_block(_memory_argument(args.take()), spec)

    return ""


def format_message(fmt: str, *args: Any) -> str:
    """Render ``fmt`` with ``args`` using the log printf dialect.

    Besides the usual conversions, ``%b`` prints binary and ``%M`` prints a
    bytes argument as space separated hex (``0`` pads single digits, ``#``
    prefixes the length).
    """
    arguments = _Arguments(args)
    output = []
    pos = 0
    end = len(fmt)

    while pos < end:
        percent = fmt.find("%", pos)
        if percent < 0:
            output.append(fmt[pos:])
            break
        output.append(fmt[pos:percent])
        pos = percent + 1
        spec = _Spec()

        while True:
            if pos >= end:
                raise FormatError("format string ends inside a conversion")
            ch = fmt[pos]
            pos += 1

            if ch == "#":
                spec.flags |= _Flag.HASH
            elif ch == "h":
                spec.length -= 1
            elif ch in "qL":
                spec.length += 2
            elif ch in "zl":
                spec.length += 1
            elif ch == "-":
                spec.flags |= _Flag.LEFT
            elif ch == " ":
                spec.flags |= _Flag.SPACE
            elif ch == "+":
                spec.flags |= _Flag.PLUS
            elif ch in "0123456789":
                if spec.flags & _Flag.DOT:
                    raise FormatError("field width given after precision")
                match = _WIDTH_RE.match(fmt, pos - 1)
                spec.width = int(match.group())
                if spec.width > MAX_WIDTH:
                    raise FormatError(f"field width exceeds {MAX_WIDTH}")
                if ch == "0" and not spec.flags & _Flag.LEFT:
                    spec.pad = "0"
                pos = match.end()
            elif ch == "*":
                width = arguments.take_int()
                if width < 0:
                    spec.flags |= _Flag.LEFT
                    width = -width
                if width > MAX_WIDTH:
                    raise FormatError(f"field width exceeds {MAX_WIDTH}")
                spec.width = width
            elif ch == ".":
                spec.flags |= _Flag.DOT
                if fmt.startswith("*", pos):
                    precision = arguments.take_int()
                    pos += 1
                else:
                    match = _PRECISION_RE.match(fmt, pos)
                    if match:
                        precision = int(match.group())
                        pos = match.end()
                    else:
                        precision = 0
                spec.precision = max(precision, 0)
                if spec.precision > MAX_WIDTH:
                    raise FormatError(f"precision exceeds {MAX_WIDTH}")
            else:
                output.append(_convert(ch, spec, arguments))
                break

    return "".join(output)


class Logger:
    """Writes text to a stream and an optional log file, stamping each line.

    Every line starts with ``SSS.mmm `` taken from ``clock``, a callable that
    returns elapsed milliseconds.
    """

    def __init__(self, clock: Callable[[], int], stream: Optional[TextIO] = None,
                 log_file: Optional[TextIO] = None) -> None:
        self._clock = clock
        self._stream = stream if stream is not None else sys.stdout
        self.log_file = log_file
        self._line_start = True

    def _tee(self, text: str) -> None:
        self._stream.write(text)
        if self.log_file is not None:
            self.log_file.write(text)

    def write(self, text: str) -> int:
        """Write ``text``, stamping the start of every line; return its length."""
        for piece in _LINE_RE.findall(text):
            if self._line_start:
                ms = self._clock()
                self._tee(f"{ms // 1000:03d}.{ms % 1000:03d} ")
            self._tee(piece)
            self._line_start = piece.endswith("\n")
        return len(text)

    def lprintf(self, fmt: str, *args: Any) -> int:
        """Format with :func:`format_message` and write the result."""
        return self.write(format_message(fmt, *args))

    def close(self) -> None:
        """Close the log file, if any; the stream is left open."""
        if self.log_file is not None:
            self.log_file.close()
            self.log_file = None

    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()