#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Metric file readers.

Sysfs and procfs nodes are treated as "read the entire contents as a
string, or fail". Numeric helpers mirror scanf semantics: leading
whitespace is skipped and the first integer token is taken, trailing text
is ignored.
"""

import logging
import re
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r'\s*([-+]?\d+)')
_HEX_RE = re.compile(r'\s*0[xX]([0-9a-fA-F]+)')
_BARE_HEX_RE = re.compile(r'\s*(?:0[xX])?([0-9a-fA-F]+)')


class MetricReadError(OSError):
    """A metric file could not be read or did not hold the expected number."""


def read_file_to_string(path: str) -> str:
    """Read a whole metric file."""
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()
    except OSError as e:
        raise MetricReadError(f"Unable to read {path} - {e.strerror or e}") from e


def write_string_to_file(path: str, content: str):
    """Write a control value (e.g. a stats reset) to a sysfs node."""
    try:
        with open(path, 'w') as f:
            f.write(content)
    except OSError as e:
        raise MetricReadError(f"Unable to write {path} - {e.strerror or e}") from e


def parse_int(text: str) -> Optional[int]:
    """Parse the leading decimal integer of text, or a 0x-prefixed hex value."""
    match = _HEX_RE.match(text)
    if match:
        return int(match.group(1), 16)
    match = _INT_RE.match(text)
    if match:
        return int(match.group(1))
    return None


def parse_hex(text: str) -> Optional[int]:
    """Parse a hex number with or without a 0x prefix (scanf %x)."""
    match = _BARE_HEX_RE.match(text)
    return int(match.group(1), 16) if match else None


def scan_ints(text: str) -> List[int]:
    """Parse whitespace-separated integers, stopping at the first non-integer token."""
    values = []
    for token in text.split():
        try:
            values.append(int(token))
        except ValueError:
            break
    return values


def read_file_to_int(path: str) -> int:
    """Read a metric file holding one integer (decimal, or hex with a 0x prefix)."""
    contents = read_file_to_string(path)
    value = parse_int(contents)
    if value is None:
        raise MetricReadError(f"Unable to convert {path} to int: {contents.strip()[:40]!r}")
    return value


def requires(*path_attrs: str) -> Callable:
    """
    Declare the config paths a collector needs.

    The collector runner checks these before calling the collector and
    skips it when any of them is unset.
    """
    def decorator(func: Callable) -> Callable:
        func.required_paths = path_attrs
        return func
    return decorator


def missing_sources(paths_config, path_attrs) -> List[str]:
    """Return the names of required paths that are not configured."""
    missing = []
    for attr in path_attrs:
        value = getattr(paths_config, attr, None)
        if not value:
            missing.append(attr)
        elif isinstance(value, (list, tuple)) and not any(value):
            missing.append(attr)
    return missing
