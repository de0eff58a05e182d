#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Kernel uevent path: frame parsing, dispatch, socket listener and handlers.
"""

from .frame_parser import (
    MAX_FRAME_LEN,
    UEVENT_MSG_LEN,
    KeyValueRecord,
    UeventFrameError,
    frame_message,
    parse_uevent,
    split_segments,
)
from .dispatcher import EventDispatcher, InterestRule
from .listener import UeventListener, UeventTransportError, open_uevent_socket
from .handlers import UeventHandlers

__all__ = [
    'MAX_FRAME_LEN',
    'UEVENT_MSG_LEN',
    'KeyValueRecord',
    'UeventFrameError',
    'frame_message',
    'parse_uevent',
    'split_segments',
    'EventDispatcher',
    'InterestRule',
    'UeventListener',
    'UeventTransportError',
    'open_uevent_socket',
    'UeventHandlers',
]
