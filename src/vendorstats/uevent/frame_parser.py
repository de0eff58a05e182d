#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Uevent frame parser.

A kernel uevent datagram is a sequence of NUL-terminated strings, most of
them KEY=VALUE tokens. The framing layer appends two NUL bytes, so the
message always ends in a double NUL. Parsing scans segments up to the
first empty segment (the double NUL) and never looks past the given length.

Tokens without '=' are kept in the raw segment list but are not entered
into the key/value mapping.
"""

import logging
from typing import Dict, Iterator, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

# Largest datagram read from the uevent socket
UEVENT_MSG_LEN = 2048
# Largest framed buffer: message plus the two terminating NUL bytes
MAX_FRAME_LEN = UEVENT_MSG_LEN + 2

_TERMINATOR = b'\0\0'


class UeventFrameError(ValueError):
    """Malformed uevent framing: bad length or no double-NUL terminator."""


class KeyValueRecord:
    """
    Key/value tokens of one uevent message.

    Lookup is by key; iteration follows token order. A key that appears
    twice keeps its first position and its last value.
    len() and truthiness count key/value tokens only; bare tokens are
    visible through has_segment().
    """

    def __init__(self, pairs: Optional[List[Tuple[str, str]]] = None,
                 segments: Optional[List[str]] = None):
        self._values: Dict[str, str] = {}
        for key, value in pairs or []:
            self._values[key] = value
        self.segments: List[str] = list(segments or [])

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def has_segment(self, token: str) -> bool:
        """True if a raw segment starts with token (e.g. 'DEVTYPE=typec_partner')."""
        return any(seg.startswith(token) for seg in self.segments)

    def keys(self) -> List[str]:
        return list(self._values.keys())

    def items(self) -> List[Tuple[str, str]]:
        return list(self._values.items())

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, KeyValueRecord):
            return self.items() == other.items()
        if isinstance(other, dict):
            return self._values == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"KeyValueRecord({self._values!r})"


def split_segments(buffer: Union[bytes, bytearray, memoryview],
                   length: Optional[int] = None) -> List[str]:
    """
    Split a framed uevent buffer into its non-empty segments.

    Args:
        buffer: Raw bytes, double-NUL terminated within length
        length: Number of valid bytes in buffer (defaults to len(buffer))

    Returns:
        Segments in message order, decoded as UTF-8

    Raises:
        UeventFrameError: length is negative, exceeds the buffer or
            MAX_FRAME_LEN, or no double NUL occurs within length
    """
    data = bytes(buffer)
    if length is None:
        length = len(data)
    if isinstance(length, bool) or not isinstance(length, int):
        raise UeventFrameError(f"Invalid uevent length: {length!r}")
    if length < 0:
        raise UeventFrameError(f"Negative uevent length: {length}")
    if length > MAX_FRAME_LEN:
        raise UeventFrameError(f"Uevent length {length} exceeds maximum {MAX_FRAME_LEN}")
    if length > len(data):
        raise UeventFrameError(f"Uevent length {length} exceeds buffer size {len(data)}")
    if length == 0:
        return []

    data = data[:length]
    end = data.find(_TERMINATOR)
    if end < 0:
        raise UeventFrameError("Uevent message is not double-NUL terminated")

    segments = []
    for raw in data[:end].split(b'\0'):
        if not raw:
            break
        segments.append(raw.decode('utf-8', errors='replace'))
    return segments


def parse_uevent(buffer: Union[bytes, bytearray, memoryview],
                 length: Optional[int] = None) -> KeyValueRecord:
    """
    Parse one framed uevent datagram into a KeyValueRecord.

    Each segment is split on its first '='; the value may itself contain
    '=' characters. Segments without '=' are skipped in the mapping.
    """
    segments = split_segments(buffer, length)
    pairs = []
    for seg in segments:
        key, sep, value = seg.partition('=')
        if not sep or not key:
            logger.debug(f"Ignoring bare uevent token: {seg[:64]!r}")
            continue
        pairs.append((key, value))
    return KeyValueRecord(pairs, segments)


def frame_message(data: bytes) -> bytes:
    """Append the double-NUL terminator the parser expects."""
    return bytes(data) + _TERMINATOR
