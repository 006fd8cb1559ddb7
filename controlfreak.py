#!/usr/bin/env python3
"""
controlfreak.py — Control Freak Program & Alarm File Tool
==========================================================

by Jason King (pcmhacking.net: kingaustraliagg)
Founder — KingAi Pty Ltd
https://github.com/KingAiCodeForge

Decode, encode and merge the program/alarm files (.FA1) that the Breville
Control Freak induction cooker reads from and writes to a USB stick.

Target Hardware:
    Device: Breville / PolyScience Control Freak
    File:   8192 byte .FA1 image, no header, no magic
    Layout: programs in $0000-$0FFF, alarms in $1000-$1FFF
            each region = 16 blocks × 256 bytes
            each block  = 7 entries × 36 bytes + 4 byte 0xFF filler

Entry Layout (36 bytes, program):
    $00-$19  name, NUL padded ASCII (alarms: $00-$13)
    $1A-$1D  unused (0)
    $1E      temperature °F, low byte
    $1F      control: bit7 +255 temp offset | bits5-6 after timer |
                      bit4 unused | bits2-3 power | bits0-1 timer start
    $20-$22  timer hours / minutes / seconds (alarms: unused)
    $23      checksum = sum($00-$22) & 0xFF

Text Format (one record per line, also what gets printed):
    name | temp | power | H:MM:SS | timer start | after timer
    name | temp | power | no timer
    name | temp                                  (alarm)

Usage:
    controlfreak PROGS.FA1 mine.txt -o MERGED.FA1 -t merged.txt
    controlfreak --no-sort a.FA1 b.FA1

Requires: Python 3.10+, rich

MIT License

Copyright (c) 2026 Jason King (pcmhacking.net: kingaustraliagg)

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""




# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 — IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import os
import re
import logging
import argparse
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from enum import IntEnum, Enum
from typing import Optional, Callable, List, Tuple, Dict, Iterable, Iterator, Union
from io import BytesIO

from rich.console import Console
from rich.logging import RichHandler

# ── Version & Metadata ──
__version__ = "0.1.0"
__app_name__ = "KingAI Control Freak Tool"
__target_device__ = "Breville Control Freak (.FA1)"

# ── Logging Setup ──
LOG_DIR = Path(os.environ.get("CONTROLFREAK_LOG_DIR", Path.home() / ".controlfreak" / "logs"))


def setup_logging(
    name: str = "controlfreak",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Root level (DEBUG captures everything to file).
        console_level: Level for console/terminal output (WARNING+ by
                       default so the printed listing isn't cluttered).
        log_dir:       Override log directory (default: ~/.controlfreak/logs,
                       or $CONTROLFREAK_LOG_DIR). If it can't be created or
                       written, only the console handler is attached.
        rich_console:  Use Rich handler for console output.

    Returns:
        Configured ``logging.Logger`` instance.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = Path(log_dir or LOG_DIR)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file: Optional[Path] = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_error: Optional[OSError] = None
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_file), encoding="utf-8")
    except OSError as e:
        # Read-only install or home dir: carry on with console logging only
        file_error = e
        log_file = None
    else:
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(file_fmt)
        logger.addHandler(fh)

    # ── Console handler: only important stuff (WARNING+ default) ──
    if rich_console:
        ch = RichHandler(
            level=console_level,
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    # Startup banner (file only)
    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    if file_error is None:
        logger.info("Log file: %s", log_file)
    else:
        logger.info("Log file disabled: %s", file_error)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger

log = setup_logging()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 — CONSTANTS & FILE LAYOUT
# ═══════════════════════════════════════════════════════════════════════

# Image layout
IMAGE_LENGTH = 8192           # whole .FA1 file
ALARM_REGION_OFFSET = 4096    # programs $0000-$0FFF, alarms $1000-$1FFF
BLOCK_LENGTH = 256
FILLER_LENGTH = 4             # 0xFF padding at the end of each block
ENTRY_LENGTH = 36             # 35 data bytes + checksum
ENTRIES_PER_BLOCK = (BLOCK_LENGTH - FILLER_LENGTH) // ENTRY_LENGTH   # 7
BLOCK_DATA_LENGTH = ENTRIES_PER_BLOCK * ENTRY_LENGTH                 # 252
FILL_BYTE = 0xFF

# Entry field offsets
CHECKSUM_OFFSET = ENTRY_LENGTH - 1   # $23
TEMP_OFFSET = 30                     # $1E
CONTROL_OFFSET = 31                  # $1F
TIMER_OFFSET = 32                    # $20-$22 hours, minutes, seconds

# Field limits
PROGRAM_NAME_LENGTH = 26
ALARM_NAME_LENGTH = 20
TEMP_MIN = 0
TEMP_MAX = 482
TEMP_MOD = 255                # bit 7 of the control byte adds this
MAX_HOURS = 72

# Entries the cooker will accept per kind (region holds 16 × 7 = 112)
MAX_ENTRIES = 80

BINARY_EXTENSIONS = (".fa1",)

PROGRAM_NAME_RE = re.compile(r"[A-Za-z0-9(),./: -]+", re.ASCII)
ALARM_NAME_RE = re.compile(r"[A-Za-z0-9 ]+", re.ASCII)
INTEGER_RE = re.compile(r"[+-]?\d+", re.ASCII)


class EntryType(Enum):
    """Which region of the image an entry lives in."""
    PROGRAM = "program"
    ALARM = "alarm"

    @property
    def plural(self) -> str:
        return f"{self.value}s"


# ── Errors ──

class ControlFreakError(Exception):
    """Base class for every .FA1 / text format error."""

class WrongLengthError(ControlFreakError):
    pass

class ChecksumMismatchError(ControlFreakError):
    pass

class TruncatedImageError(ControlFreakError):
    pass

class EntryTooLongError(ControlFreakError):
    pass

class CapacityExceededError(ControlFreakError):
    pass

class NotAnInMemoryBufferError(ControlFreakError):
    pass

class InvalidFieldError(ControlFreakError, ValueError):
    """A power level / timer start / after timer token or code is not recognised."""

    def __init__(self, kind: str, text: object):
        self.kind = kind
        self.text = text
        super().__init__(f"Invalid {kind} {text}")

class InvalidNameError(ControlFreakError, ValueError):
    pass

class NameTooLongError(ControlFreakError, ValueError):
    pass

class TemperatureOutOfRangeError(ControlFreakError, ValueError):
    pass

class TimerOutOfRangeError(ControlFreakError, ValueError):
    pass

class MalformedTextLineError(ControlFreakError, ValueError):
    pass


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 — FIELD CODECS (power, timer start, after timer, timer)
# ═══════════════════════════════════════════════════════════════════════

def _alias_key(text: str) -> str:
    return " ".join(text.split()).lower()


class _CodedField(IntEnum):
    """
    Shared behaviour for the control-byte enums.
    The int value is the wire code; ``label`` is the canonical text.
    Subclasses fill in ``_LABELS``, ``_ALIASES`` and ``_FIELD_NAME``
    after the class body (IntEnum won't take them as members).
    """

    @property
    def code(self) -> int:
        return int(self)

    @property
    def label(self) -> str:
        return type(self)._LABELS[self]

    def __str__(self) -> str:
        return self.label

    @classmethod
    def from_code(cls, code: int):
        try:
            return cls(code)
        except ValueError:
            raise InvalidFieldError(cls._FIELD_NAME, f"value {code}") from None

    @classmethod
    def parse(cls, text: str):
        member = cls._ALIASES.get(_alias_key(text))
        if member is None:
            raise InvalidFieldError(cls._FIELD_NAME, text)
        return member


class PowerLevel(_CodedField):
    """Heating speed, control byte bits 2-3."""
    SLOW = 0
    MEDIUM = 1
    FAST = 2
    MAX = 3

PowerLevel._FIELD_NAME = "power level"
PowerLevel._LABELS = {
    PowerLevel.SLOW: "Slow",
    PowerLevel.MEDIUM: "Medium",
    PowerLevel.FAST: "Fast",
    PowerLevel.MAX: "Max",
}
PowerLevel._ALIASES = {
    "slow": PowerLevel.SLOW, "low": PowerLevel.SLOW,
    "medium": PowerLevel.MEDIUM,
    "fast": PowerLevel.FAST, "high": PowerLevel.FAST,
    "max": PowerLevel.MAX,
}


class TimerStart(_CodedField):
    """When the countdown begins, control byte bits 0-1. Code 3 is invalid."""
    AT_BEGINNING = 0
    AT_SET_TEMPERATURE = 1
    AT_PROMPT = 2

TimerStart._FIELD_NAME = "timer start"
TimerStart._LABELS = {
    TimerStart.AT_BEGINNING: "At Beginning",
    TimerStart.AT_SET_TEMPERATURE: "At Set Temperature",
    TimerStart.AT_PROMPT: "At Prompt",
}
TimerStart._ALIASES = {
    "at beginning": TimerStart.AT_BEGINNING,
    "atbeginning": TimerStart.AT_BEGINNING,
    "beginning": TimerStart.AT_BEGINNING,
    "immediately": TimerStart.AT_BEGINNING,
    "at set temperature": TimerStart.AT_SET_TEMPERATURE,
    "atsettemperature": TimerStart.AT_SET_TEMPERATURE,
    "at set": TimerStart.AT_SET_TEMPERATURE,
    "at temperature": TimerStart.AT_SET_TEMPERATURE,
    "set": TimerStart.AT_SET_TEMPERATURE,
    "at prompt": TimerStart.AT_PROMPT,
    "atprompt": TimerStart.AT_PROMPT,
    "prompt": TimerStart.AT_PROMPT,
}


class AfterTimer(_CodedField):
    """What the cooker does when the countdown hits zero, control byte bits 5-6."""
    CONTINUE = 0
    STOP = 1
    KEEP_WARM = 2
    REPEAT = 3

AfterTimer._FIELD_NAME = "after timer"
AfterTimer._LABELS = {
    AfterTimer.CONTINUE: "Continue",
    AfterTimer.STOP: "Stop",
    AfterTimer.KEEP_WARM: "Keep Warm",
    AfterTimer.REPEAT: "Repeat",
}
AfterTimer._ALIASES = {
    "continue": AfterTimer.CONTINUE,
    "continue cooking": AfterTimer.CONTINUE,
    "continuecooking": AfterTimer.CONTINUE,
    "stop": AfterTimer.STOP,
    "stop cooking": AfterTimer.STOP,
    "stopcooking": AfterTimer.STOP,
    "keep warm": AfterTimer.KEEP_WARM,
    "keepwarm": AfterTimer.KEEP_WARM,
    "keep": AfterTimer.KEEP_WARM,
    "warm": AfterTimer.KEEP_WARM,
    "repeat": AfterTimer.REPEAT,
    "repeat timer": AfterTimer.REPEAT,
    "repeattimer": AfterTimer.REPEAT,
}


@dataclass(frozen=True, order=True)
class Timer:
    """Cook timer, 0:00:00 (off) up to exactly 72:00:00."""
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    def __post_init__(self):
        h, m, s = self.hours, self.minutes, self.seconds
        if (h < 0 or h > MAX_HOURS
                or (h == MAX_HOURS and (m != 0 or s != 0))
                or m < 0 or m > 59
                or s < 0 or s > 59):
            raise TimerOutOfRangeError(f"timer out of range ({h}:{m:02d}:{s:02d})")

    def is_off(self) -> bool:
        return self.hours == 0 and self.minutes == 0 and self.seconds == 0

    def __str__(self) -> str:
        if self.is_off():
            return "off"
        return f"{self.hours:2d}:{self.minutes:02d}:{self.seconds:02d}"

    @classmethod
    def parse(cls, text: str) -> "Timer":
        """Parse ``off``, ``no timer`` or ``H:MM:SS``."""
        token = _alias_key(text)
        if token in ("off", "no timer"):
            return cls.OFF
        parts = token.split(":")
        if len(parts) != 3:
            raise MalformedTextLineError(f"Invalid timer {text!r} (expected H:MM:SS, 'off' or 'no timer')")
        if not all(INTEGER_RE.fullmatch(p) for p in parts):
            raise MalformedTextLineError(f"Invalid timer {text!r}")
        h, m, s = (int(p) for p in parts)
        return cls(h, m, s)

Timer.OFF = Timer(0, 0, 0)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 — CHECKSUMMED ENTRY
# ═══════════════════════════════════════════════════════════════════════

def entry_checksum(data: bytes) -> int:
    """Additive checksum of the first 35 bytes, truncated to 8 bits."""
    if len(data) < CHECKSUM_OFFSET:
        raise WrongLengthError(f"Need at least {CHECKSUM_OFFSET} bytes for a checksum, got {len(data)}")
    return sum(data[:CHECKSUM_OFFSET]) & 0xFF


@dataclass(frozen=True)
class Entry:
    """
    One 36 byte program or alarm slot. Construction verifies length and
    checksum, so every Entry in existence is well-formed.
    """
    kind: EntryType
    data: bytes

    def __post_init__(self):
        raw = bytes(self.data)
        if len(raw) != ENTRY_LENGTH:
            raise WrongLengthError(f"Entry was {len(raw)} bytes long, should have been {ENTRY_LENGTH}")
        cs = entry_checksum(raw)
        if cs != raw[CHECKSUM_OFFSET]:
            raise ChecksumMismatchError(
                f"Checksum does not match ({cs:02x} != {raw[CHECKSUM_OFFSET]:02x})"
            )
        object.__setattr__(self, "data", raw)

    @classmethod
    def seal(cls, kind: EntryType, body: bytes) -> "Entry":
        """Build an Entry from 35 data bytes, appending the checksum."""
        if len(body) != CHECKSUM_OFFSET:
            raise WrongLengthError(f"Entry body was {len(body)} bytes long, should have been {CHECKSUM_OFFSET}")
        return cls(kind, bytes(body) + bytes([entry_checksum(body)]))

    def to_bytes(self) -> bytes:
        return bytes(self.data)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 — PROGRAM & ALARM RECORDS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ControlByte:
    """
    Entry byte $1F.
        bit 7     temperature offset (+255)
        bits 5-6  after timer
        bit 4     unused
        bits 2-3  power level
        bits 0-1  timer start
    Alarms only use bit 7.
    """
    temp_offset: bool = False
    after_timer: int = 0
    power: int = 0
    timer_start: int = 0

    TEMP_OFFSET_BIT = 0x80
    AFTER_TIMER_SHIFT = 5
    POWER_SHIFT = 2
    TIMER_START_SHIFT = 0
    FIELD_MASK = 0x03

    def pack(self) -> int:
        value = self.TEMP_OFFSET_BIT if self.temp_offset else 0
        value |= (self.after_timer & self.FIELD_MASK) << self.AFTER_TIMER_SHIFT
        value |= (self.power & self.FIELD_MASK) << self.POWER_SHIFT
        value |= (self.timer_start & self.FIELD_MASK) << self.TIMER_START_SHIFT
        return value

    @classmethod
    def unpack(cls, value: int) -> "ControlByte":
        return cls(
            temp_offset=bool(value & cls.TEMP_OFFSET_BIT),
            after_timer=(value >> cls.AFTER_TIMER_SHIFT) & cls.FIELD_MASK,
            power=(value >> cls.POWER_SHIFT) & cls.FIELD_MASK,
            timer_start=(value >> cls.TIMER_START_SHIFT) & cls.FIELD_MASK,
        )


def check_temperature(temperature: int) -> int:
    if temperature < TEMP_MIN:
        raise TemperatureOutOfRangeError(f"Temperature {temperature} too low (min {TEMP_MIN})")
    if temperature > TEMP_MAX:
        raise TemperatureOutOfRangeError(f"Temperature {temperature} too high (max {TEMP_MAX})")
    return temperature


def split_temperature(temperature: int) -> Tuple[int, bool]:
    """°F → (byte $1E, temp offset flag)."""
    if temperature > TEMP_MOD:
        return temperature - TEMP_MOD, True
    return temperature & 0xFF, False


def join_temperature(low: int, offset: bool) -> int:
    """(byte $1E, temp offset flag) → °F, clamped to TEMP_MAX against corrupt bytes."""
    temp = low + (TEMP_MOD if offset else 0)
    return min(temp, TEMP_MAX)


def _check_name(label: str, name: str, limit: int, pattern: re.Pattern) -> None:
    if not name.strip():
        raise InvalidNameError(f"{label} name blank")
    if name != name.strip():
        raise InvalidNameError(f"{label} name {name!r} has leading or trailing spaces")
    if len(name) > limit:
        raise NameTooLongError(f"{label} name {name} too long (max {limit})")
    if not pattern.fullmatch(name):
        raise InvalidNameError(f"invalid characters in {label.lower()} name {name!r}")


def _encode_name(label: str, name: str, limit: int) -> bytes:
    raw = name.encode("ascii", errors="replace")
    if len(raw) > limit:
        raise NameTooLongError(f"{label} name {name} too long (max {limit})")
    return raw.ljust(limit, b"\x00")


def _decode_name(label: str, raw: bytes, limit: int) -> str:
    end = raw.find(0, 0, limit)
    if end == 0:
        raise InvalidNameError(f"{label} name blank in entry {raw.hex().upper()}")
    if end < 0:
        end = limit
    return raw[:end].decode("latin-1")


def _split_fields(line: str) -> List[str]:
    return [tok.strip() for tok in line.strip().split("|")]


def _parse_temperature(token: str, line: str) -> int:
    if not INTEGER_RE.fullmatch(token):
        raise MalformedTextLineError(f"Invalid temperature {token!r} in {line.strip()!r}")
    return check_temperature(int(token))


@dataclass(frozen=True, order=True)
class Program:
    """
    A cooking program. Ordering is (name, temperature, power, timer,
    timer start, after timer). With the timer off, timer start and after
    timer are pinned to At Beginning / Continue.
    """
    name: str
    temperature: int
    power: PowerLevel
    timer: Timer = Timer.OFF
    timer_start: TimerStart = TimerStart.AT_BEGINNING
    after_timer: AfterTimer = AfterTimer.CONTINUE

    KIND = EntryType.PROGRAM

    def __post_init__(self):
        _check_name("Program", self.name, PROGRAM_NAME_LENGTH, PROGRAM_NAME_RE)
        check_temperature(self.temperature)
        object.__setattr__(self, "power", PowerLevel.from_code(self.power))
        if self.timer.is_off():
            object.__setattr__(self, "timer_start", TimerStart.AT_BEGINNING)
            object.__setattr__(self, "after_timer", AfterTimer.CONTINUE)
        else:
            object.__setattr__(self, "timer_start", TimerStart.from_code(self.timer_start))
            object.__setattr__(self, "after_timer", AfterTimer.from_code(self.after_timer))

    # ── Binary ──

    def to_entry(self) -> Entry:
        body = bytearray(CHECKSUM_OFFSET)
        body[0:PROGRAM_NAME_LENGTH] = _encode_name("Program", self.name, PROGRAM_NAME_LENGTH)
        low, offset = split_temperature(self.temperature)
        body[TEMP_OFFSET] = low
        body[CONTROL_OFFSET] = ControlByte(
            temp_offset=offset,
            after_timer=self.after_timer.code,
            power=self.power.code,
            timer_start=self.timer_start.code,
        ).pack()
        body[TIMER_OFFSET] = self.timer.hours
        body[TIMER_OFFSET + 1] = self.timer.minutes
        body[TIMER_OFFSET + 2] = self.timer.seconds
        return Entry.seal(EntryType.PROGRAM, bytes(body))

    def encode(self) -> bytes:
        return self.to_entry().to_bytes()

    @classmethod
    def from_entry(cls, entry: Entry) -> "Program":
        raw = entry.data
        name = _decode_name("Program", raw, PROGRAM_NAME_LENGTH)
        control = ControlByte.unpack(raw[CONTROL_OFFSET])
        timer = Timer(raw[TIMER_OFFSET], raw[TIMER_OFFSET + 1], raw[TIMER_OFFSET + 2])
        return cls(
            name=name,
            temperature=join_temperature(raw[TEMP_OFFSET], control.temp_offset),
            power=PowerLevel.from_code(control.power),
            timer=timer,
            timer_start=TimerStart.from_code(control.timer_start),
            after_timer=AfterTimer.from_code(control.after_timer),
        )

    @classmethod
    def decode(cls, raw: bytes) -> "Program":
        if len(raw) != ENTRY_LENGTH:
            raise WrongLengthError(f"Program entry was {len(raw)} bytes long, should have been {ENTRY_LENGTH}")
        return cls.from_entry(Entry(EntryType.PROGRAM, raw))

    # ── Text ──

    def __str__(self) -> str:
        head = f"{self.name:<{PROGRAM_NAME_LENGTH}} | {self.temperature:3d} | {self.power.label:>6} | "
        if self.timer.is_off():
            return head + "no timer"
        return head + (f"{str(self.timer):>8} | {self.timer_start.label:<18} | "
                       f"{self.after_timer.label}")

    @classmethod
    def parse(cls, line: str) -> "Program":
        """Parse a line in the format ``__str__`` produces (padding optional)."""
        fields = _split_fields(line)
        if len(fields) < 4:
            raise MalformedTextLineError(
                f"Program line needs name | temperature | power | timer: {line.strip()!r}"
            )
        name, temp_tok, power_tok, timer_tok = fields[:4]
        temperature = _parse_temperature(temp_tok, line)
        power = PowerLevel.parse(power_tok)
        timer = Timer.parse(timer_tok)
        if timer.is_off():
            return cls(name, temperature, power)
        if len(fields) != 6:
            raise MalformedTextLineError(
                f"Program line with a timer needs timer start | after timer: {line.strip()!r}"
            )
        return cls(name, temperature, power, timer,
                   TimerStart.parse(fields[4]), AfterTimer.parse(fields[5]))


@dataclass(frozen=True, order=True)
class Alarm:
    """A temperature alarm. Ordering is (name, temperature)."""
    name: str
    temperature: int

    KIND = EntryType.ALARM

    def __post_init__(self):
        _check_name("Alarm", self.name, ALARM_NAME_LENGTH, ALARM_NAME_RE)
        check_temperature(self.temperature)

    def to_entry(self) -> Entry:
        body = bytearray(CHECKSUM_OFFSET)
        body[0:ALARM_NAME_LENGTH] = _encode_name("Alarm", self.name, ALARM_NAME_LENGTH)
        low, offset = split_temperature(self.temperature)
        body[TEMP_OFFSET] = low
        body[CONTROL_OFFSET] = ControlByte(temp_offset=offset).pack()
        return Entry.seal(EntryType.ALARM, bytes(body))

    def encode(self) -> bytes:
        return self.to_entry().to_bytes()

    @classmethod
    def from_entry(cls, entry: Entry) -> "Alarm":
        raw = entry.data
        name = _decode_name("Alarm", raw, ALARM_NAME_LENGTH)
        control = ControlByte.unpack(raw[CONTROL_OFFSET])
        return cls(name, join_temperature(raw[TEMP_OFFSET], control.temp_offset))

    @classmethod
    def decode(cls, raw: bytes) -> "Alarm":
        if len(raw) != ENTRY_LENGTH:
            raise WrongLengthError(f"Alarm entry was {len(raw)} bytes long, should have been {ENTRY_LENGTH}")
        return cls.from_entry(Entry(EntryType.ALARM, raw))

    def __str__(self) -> str:
        # Name column is as wide as a program's so mixed listings line up
        return f"{self.name:<{PROGRAM_NAME_LENGTH}} | {self.temperature:3d}"

    @classmethod
    def parse(cls, line: str) -> "Alarm":
        fields = _split_fields(line)
        if len(fields) != 2:
            raise MalformedTextLineError(f"Alarm line needs name | temperature: {line.strip()!r}")
        return cls(fields[0], _parse_temperature(fields[1], line))


Record = Union[Program, Alarm]


def parse_line(line: str) -> Record:
    """Two or more '|' makes a program, otherwise it's an alarm."""
    if line.count("|") >= 2:
        return Program.parse(line)
    return Alarm.parse(line)


def parse_lines(lines: Iterable[str]) -> List[Record]:
    """Parse text lines, skipping blanks. Errors carry the 1-based line number."""
    records: List[Record] = []
    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            records.append(parse_line(line))
        except ControlFreakError as e:
            raise type(e)(*_with_line(e, lineno)) from e
    return records


def _with_line(err: ControlFreakError, lineno: int) -> tuple:
    if isinstance(err, InvalidFieldError):
        return err.kind, f"{err.text} (line {lineno})"
    return (f"line {lineno}: {err}",)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 — BLOCK BUFFER (region-aware .FA1 image read/write)
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class _RegionCursor:
    """
    Read/write position within one region.
    ``limit`` is the end of entry space in the current block; ``bound``
    is the end of the region.
    """
    base: int
    bound: int
    offset: int = 0
    limit: int = 0

    def __post_init__(self):
        self.offset = self.base
        self.limit = self.base + BLOCK_DATA_LENGTH

    def next_block(self) -> None:
        self.offset += FILLER_LENGTH
        self.limit += BLOCK_LENGTH
        log.debug("Region $%04X: next block, offset=$%04X limit=$%04X",
                  self.base, self.offset, self.limit)


def _new_cursors() -> Dict[EntryType, _RegionCursor]:
    return {
        EntryType.PROGRAM: _RegionCursor(0, ALARM_REGION_OFFSET),
        EntryType.ALARM: _RegionCursor(ALARM_REGION_OFFSET, IMAGE_LENGTH),
    }


class ImageReader:
    """
    Sequential entry reader over a complete 8192 byte image.
    Each region stops at its bound or at the first entry slot whose lead
    byte has the high bit set (0xFF fill).
    """

    def __init__(self, data: bytes):
        if len(data) != IMAGE_LENGTH:
            raise TruncatedImageError(
                f"Image is {len(data)} bytes, expected exactly {IMAGE_LENGTH}"
            )
        self._data = bytes(data)
        self._cursors = _new_cursors()

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ImageReader":
        p = Path(path)
        with p.open("rb") as f:
            data = f.read(IMAGE_LENGTH + 1)
        log.debug("Read %d bytes from %s", len(data), p)
        return cls(data)

    def read_entry(self, kind: EntryType) -> Optional[Entry]:
        """Next entry of ``kind``, or None when the region is exhausted."""
        cur = self._cursors[kind]
        if cur.offset >= cur.limit or cur.offset + ENTRY_LENGTH > cur.bound:
            return None
        if self._data[cur.offset] & 0x80:
            return None
        entry = Entry(kind, self._data[cur.offset:cur.offset + ENTRY_LENGTH])
        log.debug("%s entry at $%04X", kind.value, cur.offset)
        cur.offset += ENTRY_LENGTH
        if cur.offset + ENTRY_LENGTH > cur.limit:
            cur.next_block()
        return entry

    def entries(self, kind: EntryType) -> Iterator[Entry]:
        while (entry := self.read_entry(kind)) is not None:
            yield entry

    def programs(self) -> Iterator[Program]:
        for entry in self.entries(EntryType.PROGRAM):
            yield Program.from_entry(entry)

    def alarms(self) -> Iterator[Alarm]:
        for entry in self.entries(EntryType.ALARM):
            yield Alarm.from_entry(entry)

    def records(self) -> List[Record]:
        """All programs, then all alarms."""
        return [*self.programs(), *self.alarms()]


class ImageWriter:
    """
    Accumulates entries into a 0xFF-filled 8192 byte image and writes it
    to the sink in one go on close. Use as a context manager so the image
    is flushed even when an append fails part way through.

    With no path the sink is an in-memory buffer and ``getvalue()``
    returns the flushed image.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._image = bytearray([FILL_BYTE]) * IMAGE_LENGTH
        self._cursors = _new_cursors()
        self._written = False
        self._closed = False
        self._in_memory = path is None
        self._memory: Optional[bytes] = None
        self.path = Path(path) if path is not None else None
        self._sink = BytesIO() if self._in_memory else open(self.path, "wb")

    def __enter__(self) -> "ImageWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def append(self, entry: Entry) -> None:
        cur = self._cursors[entry.kind]
        n = len(entry.data)
        if cur.offset + n > cur.limit:
            cur.next_block()
        if cur.offset + n > cur.limit:
            raise EntryTooLongError(f"Entry too long ({n})")
        if cur.offset + n > cur.bound:
            raise CapacityExceededError(f"Too many {entry.kind.plural} to fit in one file")
        self._image[cur.offset:cur.offset + n] = entry.data
        log.debug("%s entry written at $%04X", entry.kind.value, cur.offset)
        cur.offset += n
        self._written = True

    def write(self, record: Record) -> None:
        self.append(record.to_entry())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._written:
                self._sink.write(bytes(self._image))
                log.debug("Flushed %d byte image to %s", IMAGE_LENGTH, self.path or "memory")
            if self._in_memory:
                self._memory = self._sink.getvalue()
        finally:
            self._sink.close()

    def getvalue(self) -> bytes:
        """Bytes flushed to an in-memory sink (empty until close)."""
        if not self._in_memory:
            raise NotAnInMemoryBufferError("cannot convert file-backed ImageWriter to bytes")
        if self._memory is not None:
            return self._memory
        return self._sink.getvalue()


def encode_image(programs: Iterable[Program], alarms: Iterable[Alarm]) -> bytes:
    """Build a complete image in memory. Empty input gives empty bytes."""
    with ImageWriter() as out:
        for rec in programs:
            out.write(rec)
        for rec in alarms:
            out.write(rec)
    return out.getvalue()


def decode_image(data: bytes) -> Tuple[List[Program], List[Alarm]]:
    reader = ImageReader(data)
    return list(reader.programs()), list(reader.alarms())


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 — SOURCES & SINKS (files)
# ═══════════════════════════════════════════════════════════════════════

def is_image_path(path: Union[str, Path]) -> bool:
    return Path(path).suffix.lower() in BINARY_EXTENSIONS


def read_image_file(path: Union[str, Path]) -> List[Record]:
    return ImageReader.from_file(path).records()


def read_text_file(path: Union[str, Path]) -> List[Record]:
    with open(path, "r", encoding="ascii", errors="replace") as f:
        return parse_lines(f)


def read_source(path: Union[str, Path]) -> List[Record]:
    """Read every record from one input, .FA1 by extension, text otherwise."""
    if is_image_path(path):
        log.info("Reading image %s", path)
        return read_image_file(path)
    log.info("Reading text %s", path)
    return read_text_file(path)


def render_report(programs: Iterable[Program], alarms: Iterable[Alarm]) -> List[str]:
    """Programs, a blank line if both kinds are present, then alarms."""
    lines = [str(p) for p in programs]
    alarm_lines = [str(a) for a in alarms]
    if lines and alarm_lines:
        lines.append("")
    return lines + alarm_lines


def write_text_file(path: Union[str, Path], lines: Iterable[str]) -> None:
    with open(path, "w", encoding="ascii") as f:
        for line in lines:
            f.write(line + "\n")


def write_image_file(path: Union[str, Path], programs: Iterable[Program],
                     alarms: Iterable[Alarm]) -> None:
    with ImageWriter(path) as out:
        for rec in programs:
            out.write(rec)
        for rec in alarms:
            out.write(rec)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 — MERGE / DEDUP / SORT
# ═══════════════════════════════════════════════════════════════════════

class RecordCollection:
    """
    Duplicate-free, insertion-ordered programs and alarms merged from any
    number of sources. Duplicates and overflow are reported through the
    event system, not raised.

    Events: duplicate(record, msg), overflow(kind, count, limit, msg),
    error(source, msg).
    """

    def __init__(self):
        self._records: Dict[EntryType, Dict[Record, None]] = {
            EntryType.PROGRAM: {},
            EntryType.ALARM: {},
        }
        self._callbacks: Dict[str, List[Callable]] = {}
        self.duplicates = 0

    # ── Event System ──

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback. Events: duplicate, overflow, error."""
        self._callbacks.setdefault(event, []).append(callback)

    def emit(self, event: str, **kwargs) -> None:
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                log.error("Event callback error: %s", e)

    # ── Accumulation ──

    def add(self, record: Record) -> bool:
        """Insert a record. Returns False (and emits ``duplicate``) if already present."""
        bucket = self._records[record.KIND]
        if record in bucket:
            self.duplicates += 1
            msg = f"Skipping duplicate {record.KIND.value} {record}"
            log.info(msg)
            self.emit("duplicate", record=record, msg=msg)
            return False
        bucket[record] = None
        return True

    def add_all(self, records: Iterable[Record]) -> int:
        return sum(1 for rec in records if self.add(rec))

    def merge_source(self, source: Union[str, Path],
                     reader: Callable[[Union[str, Path]], List[Record]] = read_source) -> int:
        """
        Read one source completely, then merge it. A failing source adds
        nothing and the error propagates; earlier sources are untouched.
        """
        records = reader(source)
        added = self.add_all(records)
        log.info("%s: %d records, %d new", source, len(records), added)
        return added

    # ── Views ──

    @property
    def programs(self) -> List[Program]:
        return list(self._records[EntryType.PROGRAM])

    @property
    def alarms(self) -> List[Alarm]:
        return list(self._records[EntryType.ALARM])

    def __len__(self) -> int:
        return sum(len(b) for b in self._records.values())

    def ordered(self, sort: bool = True) -> Tuple[List[Program], List[Alarm]]:
        """Natural order if ``sort``, else insertion order."""
        if sort:
            return sorted(self.programs), sorted(self.alarms)
        return self.programs, self.alarms

    def check_capacity(self, max_entries: int = MAX_ENTRIES) -> bool:
        """True if every kind fits; emits ``overflow`` per kind that doesn't."""
        ok = True
        for kind, bucket in self._records.items():
            count = len(bucket)
            if count > max_entries:
                ok = False
                msg = (f"Too many {kind.plural} ({count}, max {max_entries}) "
                       f"- binary file will not be written")
                log.info(msg)
                self.emit("overflow", kind=kind, count=count, limit=max_entries, msg=msg)
        return ok


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 — CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class RunConfig:
    """One merge run."""
    inputs: List[str] = field(default_factory=list)
    output: Optional[str] = None
    text_output: Optional[str] = None
    sort: bool = True
    max_entries: int = MAX_ENTRIES


def cli_log_callback(msg: str, level: str = "info", **_) -> None:
    """Print notices to stderr so stdout stays a clean listing."""
    prefix = {"info": "  ", "warning": "⚠ ", "error": "✗ ", "success": "✓ ", "debug": "  "}
    print(f"{prefix.get(level, '  ')}{msg}", file=sys.stderr)


def run(config: RunConfig, out=None) -> int:
    """Merge the inputs, print the listing, write the requested files."""
    out = out or sys.stdout
    collection = RecordCollection()
    collection.on("duplicate", lambda msg, **_: cli_log_callback(msg, "warning"))
    collection.on("overflow", lambda msg, **_: cli_log_callback(msg, "warning"))
    collection.on("error", lambda msg, **_: cli_log_callback(msg, "error"))

    failed = 0
    for source in config.inputs:
        try:
            collection.merge_source(source)
        except (ControlFreakError, OSError) as e:
            failed += 1
            log.exception("Failed to read %s", source)
            collection.emit("error", source=source, msg=f"{source}: {e}")

    programs, alarms = collection.ordered(config.sort)
    fits = collection.check_capacity(config.max_entries)

    lines = render_report(programs, alarms)
    for line in lines:
        print(line, file=out)

    if config.text_output:
        write_text_file(config.text_output, lines)
        log.info("Wrote %d lines to %s", len(lines), config.text_output)

    if config.output:
        if fits:
            write_image_file(config.output, programs, alarms)
            log.info("Wrote %d programs, %d alarms to %s",
                     len(programs), len(alarms), config.output)
        else:
            cli_log_callback(f"Not writing {config.output}", "error")
            failed += 1

    return 1 if failed else 0


def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface."""
    if args.log_dir or args.verbose:
        # Same logger object, rebuilt with the requested handlers
        for h in list(log.handlers):
            log.removeHandler(h)
            h.close()
        setup_logging(
            log_dir=Path(args.log_dir) if args.log_dir else None,
            console_level=logging.INFO if args.verbose else logging.WARNING,
        )

    config = RunConfig(
        inputs=list(args.inputs),
        output=args.output,
        text_output=args.text,
        sort=args.sort,
        max_entries=args.max_entries,
    )
    log.info("Run: %s", config)
    try:
        return run(config)
    except KeyboardInterrupt:
        print("\n\nCancelled by user", file=sys.stderr)
        return 130
    except (ControlFreakError, OSError) as e:
        print(f"\n✗ Error: {e}", file=sys.stderr)
        log.exception("CLI error")
        return 1


# ═══════════════════════════════════════════════════════════════════════
# SECTION 9 — ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="controlfreak",
        description=f"{__app_name__} v{__version__} — {__target_device__} program/alarm decoder, encoder and merger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Inputs ending in .FA1 are read as binary images, anything else as text.

Examples:
  %(prog)s PROGRAMS.FA1                           # List programs & alarms
  %(prog)s PROGRAMS.FA1 -t programs.txt           # Decode to text
  %(prog)s programs.txt -o PROGRAMS.FA1           # Encode text to image
  %(prog)s a.FA1 b.FA1 extra.txt -o MERGED.FA1    # Merge, dedup, sort
  %(prog)s --no-sort a.FA1 b.FA1                  # Keep input order
        """,
    )
    parser.add_argument("inputs", nargs="*", help=".FA1 image or text files to read")
    parser.add_argument("--output", "-o", help="Binary .FA1 output file path")
    parser.add_argument("--text", "-t", help="Text output file path")
    parser.add_argument("--no-sort", "-ns", dest="sort", action="store_false", default=True,
                        help="Keep input order instead of sorting")
    parser.add_argument("--max-entries", type=int, default=MAX_ENTRIES,
                        help=f"Max programs/alarms for a binary file (default: {MAX_ENTRIES})")
    parser.add_argument("--log-dir", help="Log file directory (default: ~/.controlfreak/logs)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show INFO log messages on the console")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.inputs:
        parser.print_help()
        return 0

    return run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
