#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
beat-patcher: Pure Python BPS (Beat Patching System) Patch Applier
==================================================================

Applies binary patches in the BPS format to a source stream, producing the
target stream one command ("hunk") at a time.

Quick Start:
-----------
    >>> from beat_patcher import apply_patch_bytes
    >>>
    >>> with open("game.sfc", "rb") as f:
    ...     source = f.read()
    >>> with open("hack.bps", "rb") as f:
    ...     patch = f.read()
    >>> target = apply_patch_bytes(source, patch, verify=True)

Step-by-step API:
----------------
    >>> verify_marker(patch_stream)
    >>> session = start(patch_stream)
    >>> while next_hunk(session, source, target, patch_stream) is HunkStatus.CONTINUE:
    ...     pass

Wire Format:
-----------
    "BPS1"                       4-byte marker
    source_size                  varint
    target_size                  varint
    metadata_size                varint, followed by metadata_size raw bytes
    command stream               token varint + payload, repeated
    source/target/patch CRC32    3 x uint32 little-endian (12-byte footer)

    token & 3 selects SourceRead / TargetRead / SourceCopy / TargetCopy,
    (token >> 2) + 1 is the transfer length.

CLI Usage:
---------
    $ beat-patcher apply original.sfc hack.bps -o patched.sfc --verify
    $ beat-patcher info hack.bps
    $ beat-patcher --help

License: GPLv3+
"""

from __future__ import annotations

__version__ = "1.0.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Engine
    'verify_marker',
    'start',
    'next_hunk',
    'iter_hunks',
    'scan_hunks',
    'apply_patch',
    'apply_patch_bytes',

    # Varint codec
    'decode_varint',
    'decode_signed',
    'encode_varint',
    'encode_signed',

    # Data structures
    'PatchSession',
    'SessionState',
    'HunkStatus',
    'Command',
    'Hunk',
    'PatchStats',
    'PatchFooter',

    # Verification
    'read_footer',
    'verify_checksums',
    'verify_target_size',

    # Compressed containers
    'CompressionType',
    'CompressionRegistry',
    'open_patch',

    # Exceptions
    'BeatPatchError',
    'FormatError',
    'PatchIOError',
    'UnknownCommandError',
    'DataIntegrityError',

    # Configuration
    'Config',
    'Colors',
    'set_verbose',

    # Constants
    'BPS_MARKER',
    'MARKER_SIZE',
    'FOOTER_LENGTH',

    # Utility functions
    'format_size',
    'main',
]

import argparse
import io
import json
import logging
import os
import struct
import sys
import time
import zlib
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, BinaryIO, Callable, ClassVar, Dict, Iterator, Optional, Sequence, cast

import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

# Normalize untyped third-party imports to `Any` for strict type-checkers.
_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)


# ============================================================================
# FORMAT CONSTANTS
# ============================================================================

BPS_MARKER = b'BPS1'  # 42 50 53 31
MARKER_SIZE = len(BPS_MARKER)

# Three little-endian CRC32 values: source, target, patch
FOOTER_LENGTH = 12
_FOOTER_STRUCT = struct.Struct('<III')

# Varint byte layout
_VARINT_DATA_MASK = 0x7F
_VARINT_TERMINAL = 0x80

# Command token layout
_COMMAND_MASK = 0x3
_COMMAND_SHIFT = 2


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration for beat-patcher behavior.

    Attributes:
        VERBOSE_LOGGING (bool): Log decoded headers and summaries at INFO
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        CHUNK_SIZE (int): Largest block moved by a single read/write pair
        VERIFY_CHECKSUMS (bool): Default for apply_patch(verify=None)
        REMOVE_PARTIAL_OUTPUT (bool): CLI deletes the output file on failure

    Example:
        >>> Config.VERIFY_CHECKSUMS = True
        >>> Config.reset_defaults()
    """
    VERBOSE_LOGGING: ClassVar[bool] = False
    USE_COLORS: ClassVar[bool] = True
    CHUNK_SIZE: ClassVar[int] = 64 * 1024
    VERIFY_CHECKSUMS: ClassVar[bool] = False
    REMOVE_PARTIAL_OUTPUT: ClassVar[bool] = True

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "VERBOSE_LOGGING": False,
            "USE_COLORS": True,
            "CHUNK_SIZE": 64 * 1024,
            "VERIFY_CHECKSUMS": False,
            "REMOVE_PARTIAL_OUTPUT": True,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('beat-patcher')
logger.setLevel(_default_log_level)


def set_verbose(verbose: bool, debug: bool = False) -> None:
    """Switch the module logger between WARNING, INFO and DEBUG."""
    Config.VERBOSE_LOGGING = verbose
    if debug:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO if verbose else logging.WARNING)


# ============================================================================
# TERMINAL COLORS - For CLI output (auto-detects TTY)
# ============================================================================

class Colors:
    """
    ANSI color helpers for terminal output.

    Disabled on non-TTY streams (pipes, redirects) or when
    Config.USE_COLORS = False.

    Example:
        >>> print(Colors.success("Patch applied"))
        [OK] Patch applied
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        """Check if colors should be enabled."""
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow with !)."""
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        """Format text as info (blue with i)."""
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text


def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1536)
        '1.50 KB'
    """
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(value) < 1024.0:
            return f"{value:.2f} {unit}" if unit != 'B' else f"{size} {unit}"
        value = value / 1024.0
    return f"{value:.2f} PB"


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class BeatPatchError(Exception):
    """
    Base exception for all beat-patcher errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code, also used as the CLI exit status hint
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class FormatError(BeatPatchError):
    """Raised when the patch does not start with the BPS1 marker."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class PatchIOError(BeatPatchError):
    """
    Raised for any seek/read/write failure on the patch, source or target.

    Short reads count as failures: a varint or payload that runs past the
    end of its stream, or a copy whose cursor points outside the stream,
    surfaces here.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=3)


class UnknownCommandError(BeatPatchError):
    """Raised when a command token selects no known executor."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=4)


class DataIntegrityError(BeatPatchError):
    """
    Raised by the optional strict checks.

    Covers CRC32 mismatches against the footer and a final output size
    that differs from the declared target size.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=5)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

class Command(IntEnum):
    """Command kinds selected by the two low bits of a token."""
    SOURCE_READ = 0
    TARGET_READ = 1
    SOURCE_COPY = 2
    TARGET_COPY = 3

    @property
    def label(self) -> str:
        return ''.join(part.capitalize() for part in self.name.split('_'))


class HunkStatus(Enum):
    """Result of one dispatcher call."""
    CONTINUE = "continue"
    DONE = "done"


class SessionState(Enum):
    READY = "ready"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class Hunk:
    """
    One decoded command.

    Attributes:
        command: Command kind
        length: Number of bytes transferred into the target (always >= 1)
        output_offset: Target position where this command started writing
        patch_offset: Patch position of the command token
    """
    command: Command
    length: int
    output_offset: int
    patch_offset: int

    def __repr__(self) -> str:
        return (
            f"Hunk({self.command.label}, len={self.length}, "
            f"out={self.output_offset}, at={self.patch_offset})"
        )


@dataclass
class PatchStats:
    """
    Per-command statistics gathered while a patch is applied.

    Example:
        >>> stats = PatchStats()
        >>> stats.record(Command.TARGET_READ, 3)
        >>> stats.bytes_written
        3
    """
    hunks: int = 0
    bytes_written: int = 0
    hunk_counts: Dict[Command, int] = field(default_factory=lambda: {c: 0 for c in Command})
    byte_counts: Dict[Command, int] = field(default_factory=lambda: {c: 0 for c in Command})

    def record(self, command: Command, length: int) -> None:
        self.hunks += 1
        self.bytes_written += length
        self.hunk_counts[command] += 1
        self.byte_counts[command] += length

    @property
    def source_read(self) -> int:
        return self.byte_counts[Command.SOURCE_READ]

    @property
    def target_read(self) -> int:
        return self.byte_counts[Command.TARGET_READ]

    @property
    def source_copy(self) -> int:
        return self.byte_counts[Command.SOURCE_COPY]

    @property
    def target_copy(self) -> int:
        return self.byte_counts[Command.TARGET_COPY]

    def as_dict(self) -> Dict[str, Any]:
        """Plain-dict view, keyed by command label, for JSON output."""
        return {
            'hunks': self.hunks,
            'bytes_written': self.bytes_written,
            'commands': {
                command.label: {
                    'hunks': self.hunk_counts[command],
                    'bytes': self.byte_counts[command],
                }
                for command in Command
            },
        }


@dataclass(frozen=True)
class PatchFooter:
    """The three CRC32 values stored in the last 12 bytes of a patch."""
    source_crc32: int
    target_crc32: int
    patch_crc32: int

    def __repr__(self) -> str:
        return (
            f"PatchFooter(source=0x{self.source_crc32:08x}, "
            f"target=0x{self.target_crc32:08x}, patch=0x{self.patch_crc32:08x})"
        )


@dataclass
class PatchSession:
    """
    Mutable state of one patch application.

    Created by start(), advanced by next_hunk(). The session owns no
    streams; the caller passes them to every call.

    Attributes:
        patch_total_length: Total byte length of the patch stream
        source_size: Declared source size from the header
        target_size: Declared target size from the header
        metadata_size: Size of the skipped metadata block
        metadata_offset: Patch position where the metadata block starts
        output_cursor: Next target position to be written
        source_cursor: Relative read position used by SourceCopy
        target_self_cursor: Relative read position used by TargetCopy
        state: READY until the footer is reached (DONE) or a command fails (ERROR)
        stats: Per-command statistics
    """
    patch_total_length: int
    source_size: int
    target_size: int
    metadata_size: int
    metadata_offset: int = MARKER_SIZE
    output_cursor: int = 0
    source_cursor: int = 0
    target_self_cursor: int = 0
    state: SessionState = SessionState.READY
    stats: PatchStats = field(default_factory=PatchStats)

    @property
    def command_end(self) -> int:
        """Patch position where the footer begins."""
        return self.patch_total_length - FOOTER_LENGTH

    @property
    def is_done(self) -> bool:
        return self.state is SessionState.DONE

    @property
    def remaining_output(self) -> int:
        return max(0, self.target_size - self.output_cursor)


# ============================================================================
# STREAM PRIMITIVES - Wrap OS/stream failures into PatchIOError
# ============================================================================

def _seek(stream: BinaryIO, position: int, what: str) -> None:
    if position < 0:
        logger.error(f"Refusing to seek {what} stream to negative position {position}")
        raise PatchIOError(f"Cannot seek {what} stream to negative position {position}")
    try:
        stream.seek(position)
    except (OSError, ValueError, OverflowError) as e:
        logger.error(f"Failed to seek {what} stream to {position}: {e}")
        raise PatchIOError(f"Failed to seek {what} stream to {position}: {e}") from e


def _tell(stream: BinaryIO, what: str) -> int:
    try:
        return stream.tell()
    except (OSError, ValueError) as e:
        logger.error(f"Failed to get {what} stream position: {e}")
        raise PatchIOError(f"Failed to get {what} stream position: {e}") from e


def _read(stream: BinaryIO, size: int, what: str) -> bytes:
    """Read up to size bytes; the result may be short at end of stream."""
    try:
        data = stream.read(size)
    except (OSError, ValueError) as e:
        logger.error(f"Error reading {what} stream: {e}")
        raise PatchIOError(f"Error reading {what} stream: {e}") from e
    return data or b''


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    data = _read(stream, size, what)
    if len(data) < size:
        logger.error(f"Unexpected end of {what} stream: wanted {size} bytes, got {len(data)}")
        raise PatchIOError(f"Unexpected end of {what} stream: wanted {size} bytes, got {len(data)}")
    return data


def _write(stream: BinaryIO, data: bytes, what: str) -> None:
    if not data:
        return
    try:
        written = stream.write(data)
    except (OSError, ValueError) as e:
        logger.error(f"Error writing {what} stream: {e}")
        raise PatchIOError(f"Error writing {what} stream: {e}") from e
    if written is not None and written < len(data):
        logger.error(f"Short write to {what} stream: {written} of {len(data)} bytes")
        raise PatchIOError(f"Short write to {what} stream: {written} of {len(data)} bytes")


def _check_short(chunk: bytes, wanted: int, what: str, position: int) -> None:
    # End of stream is an error; the partial chunk is already written by the caller.
    if len(chunk) < wanted:
        logger.error(
            f"Unexpected end of {what} stream at {position + len(chunk)} "
            f"({len(chunk)} of {wanted} bytes)"
        )
        raise PatchIOError(
            f"Unexpected end of {what} stream at {position + len(chunk)} "
            f"({len(chunk)} of {wanted} bytes)"
        )


def _chunk_sizes(length: int, limit: Optional[int] = None) -> Iterator[int]:
    chunk = Config.CHUNK_SIZE if limit is None else min(Config.CHUNK_SIZE, limit)
    chunk = max(1, chunk)
    remaining = length
    while remaining > 0:
        size = min(remaining, chunk)
        yield size
        remaining -= size


# ============================================================================
# VARINT CODEC
# ============================================================================
#
# BPS numbers are bijective base-128: every continuation byte adds the
# current shift on top of its payload, so no two byte strings decode to
# the same value. The terminal byte has its high bit set.

def decode_varint(stream: BinaryIO) -> int:
    """
    Decode one unsigned varint from the current stream position.

    Args:
        stream: Readable binary stream

    Returns:
        Decoded non-negative integer

    Raises:
        PatchIOError: If the stream ends before a terminal byte

    Example:
        >>> decode_varint(io.BytesIO(b'\\x00\\x80'))
        128
    """
    data = 0
    shift = 1
    while True:
        byte = _read(stream, 1, "patch")
        if not byte:
            logger.error("Stream ended inside a varint")
            raise PatchIOError("Unexpected end of stream while decoding varint")
        ch = byte[0]
        data += (ch & _VARINT_DATA_MASK) * shift
        if ch & _VARINT_TERMINAL:
            return data
        shift <<= 7
        data += shift


def decode_signed(stream: BinaryIO) -> int:
    """
    Decode a signed relative delta.

    The low bit of the underlying varint carries the sign, the remaining
    bits the magnitude.
    """
    value = decode_varint(stream)
    return (-1 if value & 1 else 1) * (value >> 1)


def encode_varint(value: int) -> bytes:
    """
    Encode a non-negative integer as a BPS varint.

    Raises:
        ValueError: If value is negative

    Example:
        >>> encode_varint(128)
        b'\\x00\\x80'
    """
    if value < 0:
        raise ValueError(f"Cannot encode negative value {value} as unsigned varint")
    out = bytearray()
    while True:
        data = value & _VARINT_DATA_MASK
        value >>= 7
        if value == 0:
            out.append(data | _VARINT_TERMINAL)
            return bytes(out)
        out.append(data)
        value -= 1


def encode_signed(delta: int) -> bytes:
    """Encode a relative delta: magnitude shifted left, sign in bit 0."""
    return encode_varint((abs(delta) << 1) | (1 if delta < 0 else 0))


# ============================================================================
# HEADER - Marker verification and session start
# ============================================================================

def verify_marker(patch: BinaryIO) -> None:
    """
    Check the 4-byte BPS1 marker at the start of the patch.

    Leaves the stream positioned right after the marker on success.

    Raises:
        FormatError: Marker is short or does not match
        PatchIOError: Stream could not be read
    """
    _seek(patch, 0, "patch")
    marker = _read(patch, MARKER_SIZE, "patch")
    if marker != BPS_MARKER:
        logger.error(f"Bad BPS marker: {marker!r}")
        raise FormatError(f"Not a BPS patch: expected marker {BPS_MARKER!r}, found {marker!r}")


def _decode_header_field(patch: BinaryIO, name: str) -> int:
    try:
        return decode_varint(patch)
    except PatchIOError as e:
        logger.error(f"BPS file: Failed to read {name}")
        raise PatchIOError(f"Failed to read {name} from BPS header: {e}") from e


def start(patch: BinaryIO) -> PatchSession:
    """
    Read the BPS header and create a session ready for next_hunk().

    Measures the total patch length, then decodes source size, target size
    and metadata size right after the marker and skips the metadata block.

    Args:
        patch: Readable, seekable patch stream

    Returns:
        PatchSession with all cursors at zero

    Raises:
        PatchIOError: If any seek or read fails
    """
    try:
        patch_total_length = patch.seek(0, io.SEEK_END)
    except (OSError, ValueError, OverflowError) as e:
        logger.error(f"Failed to seek to the end of patch stream: {e}")
        raise PatchIOError(f"Failed to determine patch length: {e}") from e

    _seek(patch, MARKER_SIZE, "patch")
    source_size = _decode_header_field(patch, "source size")
    target_size = _decode_header_field(patch, "target size")
    metadata_size = _decode_header_field(patch, "metadata size")
    metadata_offset = _tell(patch, "patch")

    if metadata_size > 0:
        _seek(patch, metadata_offset + metadata_size, "patch")

    logger.info(
        f"BPS file header, source_size: {source_size}, target_size: {target_size}, "
        f"metadata_size: {metadata_size}"
    )

    return PatchSession(
        patch_total_length=patch_total_length,
        source_size=source_size,
        target_size=target_size,
        metadata_size=metadata_size,
        metadata_offset=metadata_offset,
    )


# ============================================================================
# COMMAND EXECUTORS
# ============================================================================

def _source_read(session: PatchSession, length: int, source: BinaryIO,
                 target: BinaryIO, patch: BinaryIO) -> None:
    """Copy length bytes from source to target at the same offset."""
    _seek(source, session.output_cursor, "source")
    _seek(target, session.output_cursor, "target")
    for size in _chunk_sizes(length):
        position = session.output_cursor
        chunk = _read(source, size, "source")
        _write(target, chunk, "target")
        session.output_cursor += len(chunk)
        _check_short(chunk, size, "source", position)


def _target_read(session: PatchSession, length: int, source: BinaryIO,
                 target: BinaryIO, patch: BinaryIO) -> None:
    """Copy length literal bytes from the patch into the target."""
    _seek(target, session.output_cursor, "target")
    for size in _chunk_sizes(length):
        position = _tell(patch, "patch")
        chunk = _read(patch, size, "patch")
        _write(target, chunk, "target")
        session.output_cursor += len(chunk)
        _check_short(chunk, size, "patch", position)


def _source_copy(session: PatchSession, length: int, source: BinaryIO,
                 target: BinaryIO, patch: BinaryIO) -> None:
    """Copy length bytes from the source at the relative source cursor."""
    try:
        session.source_cursor += decode_signed(patch)
    except PatchIOError as e:
        logger.error("Failed to decode source relative offset data")
        raise PatchIOError(f"Failed to decode source relative offset: {e}") from e
    logger.debug(f"Source relative offset is: {session.source_cursor}")

    _seek(target, session.output_cursor, "target")
    _seek(source, session.source_cursor, "source")
    for size in _chunk_sizes(length):
        position = session.source_cursor
        chunk = _read(source, size, "source")
        _write(target, chunk, "target")
        session.output_cursor += len(chunk)
        session.source_cursor += len(chunk)
        _check_short(chunk, size, "source", position)


def _target_copy(session: PatchSession, length: int, source: BinaryIO,
                 target: BinaryIO, patch: BinaryIO) -> None:
    """
    Copy length bytes from earlier target output at the relative target cursor.

    When the read position trails the write position the ranges may
    overlap (a single byte repeated N times is encoded this way), so each
    chunk is capped at the distance between the two cursors: every byte
    read has already been written by an earlier chunk. Both cursors
    advance together, so the distance is constant for the whole command.
    """
    try:
        session.target_self_cursor += decode_signed(patch)
    except PatchIOError as e:
        logger.error("Failed to decode target relative offset data")
        raise PatchIOError(f"Failed to decode target relative offset: {e}") from e
    logger.debug(f"Target relative offset is: {session.target_self_cursor}")

    distance = session.output_cursor - session.target_self_cursor
    for size in _chunk_sizes(length, limit=distance if distance > 0 else None):
        position = session.target_self_cursor
        _seek(target, position, "target")
        chunk = _read(target, size, "target")
        _seek(target, session.output_cursor, "target")
        _write(target, chunk, "target")
        session.output_cursor += len(chunk)
        session.target_self_cursor += len(chunk)
        _check_short(chunk, size, "target", position)


_Executor = Callable[[PatchSession, int, BinaryIO, BinaryIO, BinaryIO], None]

_EXECUTORS: Dict[int, _Executor] = {
    Command.SOURCE_READ: _source_read,
    Command.TARGET_READ: _target_read,
    Command.SOURCE_COPY: _source_copy,
    Command.TARGET_COPY: _target_copy,
}


# ============================================================================
# COMMAND DISPATCHER
# ============================================================================

def _decode_token(session: PatchSession, patch: BinaryIO) -> Optional[Hunk]:
    """Decode the next command token, or return None at the footer."""
    position = _tell(patch, "patch")
    logger.debug(f"Position is: {position}")
    if position >= session.command_end:
        session.state = SessionState.DONE
        logger.info(
            f"Reached BPS footer at {position}, wrote {session.output_cursor} "
            f"of {session.target_size} bytes"
        )
        return None

    try:
        token = decode_varint(patch)
    except PatchIOError as e:
        logger.error("Couldn't get data for command and length")
        raise PatchIOError(f"Failed to decode command at patch offset {position}: {e}") from e
    command = token & _COMMAND_MASK
    length = (token >> _COMMAND_SHIFT) + 1
    logger.debug(f"Command is: {command}, length is: {length}")

    if command not in _EXECUTORS:
        logger.error(f"Unknown BPS command: {command}, aborting!")
        raise UnknownCommandError(f"Unknown BPS command {command} at patch offset {position}")
    return Hunk(Command(command), length, session.output_cursor, position)


def _is_ready(session: PatchSession) -> bool:
    if session.state is SessionState.ERROR:
        raise BeatPatchError("Patch session has already failed; start a new session")
    return session.state is SessionState.READY


def _dispatch(session: PatchSession, source: BinaryIO, target: BinaryIO,
              patch: BinaryIO) -> Optional[Hunk]:
    if not _is_ready(session):
        return None

    try:
        hunk = _decode_token(session, patch)
        if hunk is None:
            return None
        _EXECUTORS[hunk.command](session, hunk.length, source, target, patch)
    except BeatPatchError:
        session.state = SessionState.ERROR
        raise

    session.stats.record(hunk.command, hunk.length)
    return hunk


def next_hunk(session: PatchSession, source: BinaryIO, target: BinaryIO,
              patch: BinaryIO) -> HunkStatus:
    """
    Execute exactly one command from the patch.

    Args:
        session: Session returned by start()
        source: Readable, seekable source stream
        target: Readable, writable, seekable target stream
        patch: The patch stream start() was called with

    Returns:
        HunkStatus.CONTINUE after a command ran, HunkStatus.DONE once the
        footer is reached

    Raises:
        PatchIOError: A stream operation failed; the session moves to ERROR
        UnknownCommandError: The token selected no executor
        BeatPatchError: The session already failed earlier
    """
    if _dispatch(session, source, target, patch) is None:
        return HunkStatus.DONE
    return HunkStatus.CONTINUE


def iter_hunks(session: PatchSession, source: BinaryIO, target: BinaryIO,
               patch: BinaryIO) -> Iterator[Hunk]:
    """Drive next_hunk() to completion, yielding each executed Hunk."""
    while True:
        hunk = _dispatch(session, source, target, patch)
        if hunk is None:
            return
        yield hunk


def scan_hunks(session: PatchSession, patch: BinaryIO) -> Iterator[Hunk]:
    """
    Walk the command stream without a source or target.

    Literal payloads are skipped and relative deltas are applied to the
    session cursors exactly as the executors would, so output_cursor ends
    at the size the patch would produce.
    """
    while True:
        hunk = _dispatch_scan(session, patch)
        if hunk is None:
            return
        yield hunk


def _dispatch_scan(session: PatchSession, patch: BinaryIO) -> Optional[Hunk]:
    if not _is_ready(session):
        return None
    try:
        hunk = _decode_token(session, patch)
        if hunk is None:
            return None
        if hunk.command is Command.TARGET_READ:
            _seek(patch, _tell(patch, "patch") + hunk.length, "patch")
        elif hunk.command is Command.SOURCE_COPY:
            session.source_cursor += decode_signed(patch) + hunk.length
        elif hunk.command is Command.TARGET_COPY:
            session.target_self_cursor += decode_signed(patch) + hunk.length
    except BeatPatchError:
        session.state = SessionState.ERROR
        raise
    session.output_cursor += hunk.length
    session.stats.record(hunk.command, hunk.length)
    return hunk


# ============================================================================
# OPTIONAL STRICT VERIFICATION
# ============================================================================

def read_footer(patch: BinaryIO) -> PatchFooter:
    """
    Read the source/target/patch CRC32 footer, restoring the stream position.

    Raises:
        PatchIOError: Patch is shorter than the footer or cannot be read
    """
    saved = _tell(patch, "patch")
    try:
        end = patch.seek(0, io.SEEK_END)
    except (OSError, ValueError, OverflowError) as e:
        raise PatchIOError(f"Failed to determine patch length: {e}") from e
    if end < FOOTER_LENGTH:
        raise PatchIOError(f"Patch is {end} bytes, too short for a {FOOTER_LENGTH}-byte footer")
    _seek(patch, end - FOOTER_LENGTH, "patch")
    raw = _read_exact(patch, FOOTER_LENGTH, "patch")
    _seek(patch, saved, "patch")
    return PatchFooter(*_FOOTER_STRUCT.unpack(raw))


def _crc32_stream(stream: BinaryIO, what: str, limit: Optional[int] = None) -> int:
    """CRC32 of the stream from offset 0, over at most limit bytes."""
    saved = _tell(stream, what)
    _seek(stream, 0, what)
    crc = 0
    remaining = limit
    while remaining is None or remaining > 0:
        size = Config.CHUNK_SIZE if remaining is None else min(Config.CHUNK_SIZE, remaining)
        chunk = _read(stream, size, what)
        if not chunk:
            break
        crc = zlib.crc32(chunk, crc)
        if remaining is not None:
            remaining -= len(chunk)
    _seek(stream, saved, what)
    return crc & 0xFFFFFFFF


def verify_checksums(session: PatchSession, source: BinaryIO, target: BinaryIO,
                     patch: BinaryIO) -> None:
    """
    Compare source, target and patch CRC32 values against the footer.

    The target checksum covers the first target_size bytes of the target
    stream; the patch checksum covers everything but its own 4 bytes.

    Raises:
        DataIntegrityError: On the first mismatch found
    """
    footer = read_footer(patch)
    checks = (
        ("patch", footer.patch_crc32,
         _crc32_stream(patch, "patch", session.patch_total_length - 4)),
        ("source", footer.source_crc32, _crc32_stream(source, "source")),
        ("target", footer.target_crc32,
         _crc32_stream(target, "target", session.target_size)),
    )
    for name, expected, actual in checks:
        if expected != actual:
            logger.error(f"{name} checksum mismatch: expected 0x{expected:08x}, got 0x{actual:08x}")
            raise DataIntegrityError(
                f"{name.capitalize()} CRC32 mismatch: expected 0x{expected:08x}, got 0x{actual:08x}"
            )
    logger.info(f"Checksums verified: {footer!r}")


def verify_target_size(session: PatchSession) -> None:
    """Raise DataIntegrityError unless the output filled exactly target_size bytes."""
    if session.output_cursor != session.target_size:
        logger.error(
            f"Output size mismatch: wrote {session.output_cursor}, header declares {session.target_size}"
        )
        raise DataIntegrityError(
            f"Patch produced {session.output_cursor} bytes but declares a target of "
            f"{session.target_size} bytes"
        )


# ============================================================================
# APPLICATION DRIVER
# ============================================================================

def apply_patch(source: BinaryIO, target: BinaryIO, patch: BinaryIO,
                verify: Optional[bool] = None) -> PatchSession:
    """
    Apply a whole BPS patch.

    Args:
        source: Readable, seekable source stream
        target: Readable, writable, seekable target stream
        patch: Readable, seekable patch stream
        verify: Check output size and footer checksums after applying;
            defaults to Config.VERIFY_CHECKSUMS

    Returns:
        The finished PatchSession (cursors and stats)

    Raises:
        FormatError, PatchIOError, UnknownCommandError, DataIntegrityError
    """
    if verify is None:
        verify = Config.VERIFY_CHECKSUMS

    verify_marker(patch)
    session = start(patch)
    while next_hunk(session, source, target, patch) is HunkStatus.CONTINUE:
        pass

    if verify:
        verify_target_size(session)
        verify_checksums(session, source, target, patch)

    logger.info(
        f"Applied {session.stats.hunks} hunks, {session.stats.bytes_written} bytes written"
    )
    return session


def apply_patch_bytes(source: bytes, patch: bytes, verify: Optional[bool] = None) -> bytes:
    """
    Apply a BPS patch held in memory and return the target bytes.

    Example:
        >>> apply_patch_bytes(b'', patch_bytes)
    """
    target = io.BytesIO()
    apply_patch(io.BytesIO(source), target, io.BytesIO(patch), verify=verify)
    return target.getvalue()


# ============================================================================
# COMPRESSED PATCH CONTAINERS
# ============================================================================

class CompressionType(Enum):
    """Container formats a patch file may be wrapped in."""
    NONE = "none"
    ZSTD = "zstd"
    LZ4 = "lz4"


class CompressionRegistry:
    """
    Detects and unwraps compressed patch files.

    Patches are decompressed fully into memory because the engine needs a
    seekable stream.
    """
    _MAGICS: ClassVar[Dict[bytes, CompressionType]] = {
        b'\x28\xb5\x2f\xfd': CompressionType.ZSTD,
        b'\x04\x22\x4d\x18': CompressionType.LZ4,
    }
    _zstd_decompressor: ClassVar[Optional[Any]] = None

    @classmethod
    def detect(cls, head: bytes) -> CompressionType:
        """Identify the container from the first four bytes of a file."""
        return cls._MAGICS.get(bytes(head[:4]), CompressionType.NONE)

    @classmethod
    def decompress(cls, data: bytes, comp_type: CompressionType) -> bytes:
        """
        Decompress data using the specified container format.

        Raises:
            ValueError: If the compression type is not supported or the
                zstd frame is truncated
        """
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.ZSTD:
            dobj = cls._get_zstd_decompressor().decompressobj()
            result = cast(bytes, dobj.decompress(data))
            if not dobj.eof:
                raise ValueError(
                    f"Truncated zstd frame: {len(data)} compressed bytes yielded "
                    f"{len(result)} bytes without reaching the end of the frame"
                )
            return result
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.decompress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def compress(cls, data: bytes, comp_type: CompressionType) -> bytes:
        """Wrap data in a container; used for packaging and tests."""
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.ZSTD:
            return cast(bytes, _zstandard.ZstdCompressor(level=3).compress(data))
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.compress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def _get_zstd_decompressor(cls) -> Any:
        if cls._zstd_decompressor is None:
            cls._zstd_decompressor = _zstandard.ZstdDecompressor()
        return cls._zstd_decompressor


def open_patch(path: str) -> BinaryIO:
    """
    Open a patch file for reading, unwrapping zstd or LZ4 containers.

    Returns:
        The open file for plain patches, or an io.BytesIO holding the
        decompressed patch

    Raises:
        PatchIOError: File cannot be opened or decompressed
    """
    try:
        handle = open(path, 'rb')
    except OSError as e:
        logger.error(f"Cannot open patch file {path}: {e}")
        raise PatchIOError(f"Cannot open patch file {path}: {e}") from e

    try:
        head = handle.read(4)
        comp_type = CompressionRegistry.detect(head)
        if comp_type == CompressionType.NONE:
            handle.seek(0)
            return cast(BinaryIO, handle)
        data = CompressionRegistry.decompress(head + handle.read(), comp_type)
    except (OSError, ValueError, RuntimeError, zstandard.ZstdError) as e:
        handle.close()
        logger.error(f"Cannot read patch file {path}: {e}")
        raise PatchIOError(f"Cannot read patch file {path}: {e}") from e
    handle.close()
    logger.info(f"Decompressed {comp_type.value} patch {path}: {len(data)} bytes")
    return io.BytesIO(data)


# ============================================================================
# COMMAND-LINE INTERFACE
# ============================================================================

def cli_apply(args: Any) -> int:
    """Apply a BPS patch to a source file."""
    start_time = time.time()
    verify = args.verify or Config.VERIFY_CHECKSUMS

    if not args.quiet:
        print("Applying patch:")
        print(f"  Source: {args.source}")
        print(f"  Patch: {args.patch}")

    created_output = False
    try:
        with open_patch(args.patch) as patch:
            try:
                source = open(args.source, 'rb')
            except OSError as e:
                raise PatchIOError(f"Cannot open source file {args.source}: {e}") from e
            with source:
                try:
                    target = open(args.output, 'w+b')
                except OSError as e:
                    raise PatchIOError(f"Cannot open output file {args.output}: {e}") from e
                created_output = True
                with target:
                    session = apply_patch(source, target, patch, verify=verify)
    except BeatPatchError as e:
        print(Colors.error(f"Error: {e}"), file=sys.stderr)
        if created_output and not args.keep_partial and Config.REMOVE_PARTIAL_OUTPUT:
            try:
                os.unlink(args.output)
            except OSError as cleanup_error:
                logger.warning(f"Could not remove partial output {args.output}: {cleanup_error}")
        return 1

    elapsed = time.time() - start_time
    if not args.quiet:
        print(f"\n{Colors.success(f'Patched file written: {args.output}')}")
        print(f"  Size: {format_size(session.output_cursor)} ({session.output_cursor:,} bytes)")
        if session.output_cursor != session.target_size:
            print(Colors.warning(
                f"Header declares {session.target_size:,} bytes; output differs"
            ))
        if verify:
            print(f"  {Colors.success('Checksums verified')}")
        print(f"  Time: {elapsed:.2f}s")
    if args.stats:
        _print_stats(session.stats)
    return 0


def _print_stats(stats: PatchStats) -> None:
    print(f"\n{Colors.bold('Statistics:')}")
    print(f"  Hunks: {stats.hunks:,}")
    for command in Command:
        print(
            f"  {command.label:<11} {stats.hunk_counts[command]:>8,} hunks "
            f"{stats.byte_counts[command]:>12,} bytes"
        )
    print(f"  Total written: {stats.bytes_written:,} bytes")


def cli_info(args: Any) -> int:
    """Describe a BPS patch without applying it."""
    try:
        with open_patch(args.patch) as patch:
            verify_marker(patch)
            session = start(patch)
            footer = read_footer(patch)
            for _ in scan_hunks(session, patch):
                pass
    except BeatPatchError as e:
        print(Colors.error(f"Error: {e}"), file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({
            'patch_size': session.patch_total_length,
            'source_size': session.source_size,
            'target_size': session.target_size,
            'metadata_size': session.metadata_size,
            'metadata_offset': session.metadata_offset,
            'command_end': session.command_end,
            'output_size': session.output_cursor,
            'footer': {
                'source_crc32': f"{footer.source_crc32:08x}",
                'target_crc32': f"{footer.target_crc32:08x}",
                'patch_crc32': f"{footer.patch_crc32:08x}",
            },
            'stats': session.stats.as_dict(),
        }, indent=2))
        return 0

    print(Colors.bold(f"BPS patch: {args.patch}"))
    print(f"  Patch size:    {format_size(session.patch_total_length)}")
    print(f"  Source size:   {session.source_size:,} bytes")
    print(f"  Target size:   {session.target_size:,} bytes")
    print(f"  Metadata:      {session.metadata_size:,} bytes at offset {session.metadata_offset}")
    print(f"  Commands end:  offset {session.command_end}")
    print(f"  Source CRC32:  {footer.source_crc32:08x}")
    print(f"  Target CRC32:  {footer.target_crc32:08x}")
    print(f"  Patch CRC32:   {footer.patch_crc32:08x}")
    if session.output_cursor != session.target_size:
        print(Colors.warning(
            f"Commands produce {session.output_cursor:,} bytes, header declares {session.target_size:,}"
        ))
    _print_stats(session.stats)
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='beat-patcher',
        description='Apply and inspect BPS (Beat Patching System) patches.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--no-color', action='store_true', help='Disable colored output')
    subparsers = parser.add_subparsers(dest='command', required=True)

    apply_parser = subparsers.add_parser('apply', help='Apply a patch to a source file')
    apply_parser.add_argument('source', help='Original (unpatched) file')
    apply_parser.add_argument('patch', help='BPS patch file (optionally zstd/lz4 compressed)')
    apply_parser.add_argument('-o', '--output', required=True, help='Patched file to write')
    apply_parser.add_argument('--verify', action='store_true',
                              help='Check output size and CRC32 footer after applying')
    apply_parser.add_argument('--stats', action='store_true', help='Print per-command statistics')
    apply_parser.add_argument('--keep-partial', action='store_true',
                              help='Keep the output file if patching fails')
    apply_parser.add_argument('-q', '--quiet', action='store_true', help='Only print errors')
    apply_parser.add_argument('-v', '--verbose', action='count', default=0,
                              help='Log progress (-vv for per-command debug output)')
    apply_parser.set_defaults(func=cli_apply)

    info_parser = subparsers.add_parser('info', help='Show header, footer and command summary')
    info_parser.add_argument('patch', help='BPS patch file')
    info_parser.add_argument('--json', action='store_true', help='Emit JSON')
    info_parser.add_argument('-v', '--verbose', action='count', default=0)
    info_parser.set_defaults(func=cli_info)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    if args.no_color:
        Config.USE_COLORS = False
    if args.verbose:
        set_verbose(True, debug=args.verbose > 1)
    return cast(int, args.func(args))


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
