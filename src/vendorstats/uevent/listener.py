#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Uevent listener.

Reads kernel uevent datagrams from a netlink socket, frames and parses
them, and hands each record to the dispatcher. A failed read ends only
that iteration; after too many consecutive failures the socket is
considered broken and the listener gives up.
"""

import logging
import os
import socket
import threading
from typing import Callable, Optional

from .dispatcher import EventDispatcher
from .frame_parser import UEVENT_MSG_LEN, UeventFrameError, frame_message, parse_uevent

logger = logging.getLogger(__name__)

# Kernel uevents are multicast to netlink group 1
KERNEL_UEVENT_GROUP = 1
DEFAULT_RCVBUF_BYTES = 64 * 1024
DEFAULT_MAX_CONSECUTIVE_ERRORS = 10


class UeventTransportError(OSError):
    """The uevent socket is broken beyond recovery."""


def open_uevent_socket(receive_buffer_bytes: int = DEFAULT_RCVBUF_BYTES) -> socket.socket:
    """Open a netlink socket subscribed to kernel uevents."""
    sock = socket.socket(socket.AF_NETLINK, socket.SOCK_DGRAM, socket.NETLINK_KOBJECT_UEVENT)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, receive_buffer_bytes)
        sock.bind((0, KERNEL_UEVENT_GROUP))
    except OSError:
        sock.close()
        raise
    return sock


class UeventListener:
    """Receives, parses and dispatches kernel uevents."""

    def __init__(self, dispatcher: EventDispatcher,
                 max_message_len: int = UEVENT_MSG_LEN,
                 max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS,
                 receive_buffer_bytes: int = DEFAULT_RCVBUF_BYTES,
                 devel_log_path: Optional[str] = None,
                 socket_factory: Optional[Callable[[], socket.socket]] = None):
        """
        Initialize listener.

        Args:
            dispatcher: Receives every parsed record
            max_message_len: Largest datagram accepted; reads of this size
                or more are treated as truncated
            max_consecutive_errors: Failed iterations in a row before giving up
            receive_buffer_bytes: Socket receive buffer size
            devel_log_path: If this file already exists, every uevent is
                appended to it (developer aid, the file is never created)
            socket_factory: Opens the socket (tests inject a fake)
        """
        if not 0 < max_message_len <= UEVENT_MSG_LEN:
            raise ValueError(f"max_message_len {max_message_len} is outside 1..{UEVENT_MSG_LEN}")
        if max_consecutive_errors < 1:
            raise ValueError(f"max_consecutive_errors must be >= 1, got {max_consecutive_errors}")
        self.dispatcher = dispatcher
        self.max_message_len = max_message_len
        self.max_consecutive_errors = max_consecutive_errors
        self.devel_log_path = devel_log_path
        self._socket_factory = socket_factory or (lambda: open_uevent_socket(receive_buffer_bytes))
        self._sock: Optional[socket.socket] = None
        self._log_fd: Optional[int] = None

        self.stats = {
            'messages': 0,
            'read_errors': 0,
            'bad_length': 0,
            'parse_errors': 0,
            'foreign_senders': 0,
        }

    def _open_devel_log(self):
        if not self.devel_log_path or self._log_fd is not None:
            return
        try:
            # No O_CREAT: logging only happens if someone created the file
            self._log_fd = os.open(self.devel_log_path, os.O_WRONLY | os.O_APPEND)
        except OSError:
            self._log_fd = None

    def _log_segments(self, record):
        if self._log_fd is None:
            return
        try:
            for seg in record.segments:
                os.write(self._log_fd, seg.encode('utf-8', errors='replace') + b'\n')
            os.write(self._log_fd, b'\n')
        except OSError as e:
            logger.debug(f"Uevent devel log write failed: {e}")

    def process_uevent(self) -> bool:
        """
        Receive and dispatch one uevent.

        Returns:
            False if the read itself failed (socket error, empty or
            oversized datagram); True otherwise, including messages that
            were dropped as malformed
        """
        if self._sock is None:
            try:
                self._sock = self._socket_factory()
            except OSError as e:
                logger.error(f"Unable to open uevent socket: {e}")
                return False

        self._open_devel_log()

        try:
            data, address = self._sock.recvfrom(self.max_message_len)
        except OSError as e:
            self.stats['read_errors'] += 1
            logger.error(f"Uevent socket read failed: {e}")
            return False

        n = len(data)
        if n <= 0 or n >= self.max_message_len:
            self.stats['bad_length'] += 1
            logger.error(f"Dropping uevent with bad length {n}")
            return False

        sender = address[0] if isinstance(address, tuple) and address else 0
        if sender != 0:
            # Only the kernel (port id 0) is trusted
            self.stats['foreign_senders'] += 1
            logger.debug(f"Ignoring uevent from non-kernel sender {sender}")
            return True

        try:
            record = parse_uevent(frame_message(data))
        except UeventFrameError as e:
            self.stats['parse_errors'] += 1
            logger.error(f"Malformed uevent dropped: {e}")
            return True

        self.stats['messages'] += 1
        self._log_segments(record)
        self.dispatcher.dispatch(record)
        return True

    def listen_forever(self, stop_event: Optional[threading.Event] = None):
        """
        Process uevents until stopped.

        Raises:
            UeventTransportError: after max_consecutive_errors failed reads
        """
        consecutive_errors = 0
        logger.info("Uevent listener started")

        while stop_event is None or not stop_event.is_set():
            if self.process_uevent():
                consecutive_errors = 0
                continue

            consecutive_errors += 1
            if consecutive_errors >= self.max_consecutive_errors:
                self.close()
                raise UeventTransportError(
                    f"Too many uevent errors ({consecutive_errors} in a row); giving up"
                )

    def close(self):
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None
        if self._log_fd is not None:
            os.close(self._log_fd)
            self._log_fd = None
