#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Reporting sinks for vendorstats atoms.

Delivery is best-effort and fire-and-forget: a failed report is logged and
counted, never retried and never escalated to the caller.
"""

import logging
import queue
import threading
from typing import List, Optional

import requests

from .atom_store import AtomStore
from .atoms import Atom

logger = logging.getLogger(__name__)


class ReportSink:
    """Base class for anything that accepts atoms."""

    name = "sink"

    def __init__(self):
        self._lock = threading.Lock()
        self.stats = {
            'reported': 0,
            'failed': 0,
        }

    def start(self):
        """Acquire resources. Called once before the first report."""

    def stop(self):
        """Release resources."""

    def report(self, atom: Atom) -> bool:
        """
        Deliver one atom.

        Returns:
            True if the sink accepted the atom
        """
        with self._lock:
            ok = self._report(atom)
            if ok:
                self.stats['reported'] += 1
            else:
                self.stats['failed'] += 1
        return ok

    def _report(self, atom: Atom) -> bool:
        raise NotImplementedError


def report_atom(sink: Optional[ReportSink], atom: Atom) -> bool:
    """
    Send an atom and absorb any failure.

    Args:
        sink: Destination sink (None means the sink is unavailable)
        atom: Atom to deliver

    Returns:
        True on success, False on any failure
    """
    if sink is None:
        logger.error(f"Unable to report {atom.name}: no reporting sink")
        return False
    try:
        ok = sink.report(atom)
    except Exception as e:
        logger.error(f"Unable to report {atom.name} to {sink.name}: {e}")
        return False
    if not ok:
        logger.error(f"Unable to report {atom.name} to {sink.name}")
    return ok


class LoggingSink(ReportSink):
    """Writes each atom to the log."""

    name = "log"

    def _report(self, atom: Atom) -> bool:
        fields = ", ".join(f"{k}={v}" for k, v in atom.as_mapping().items())
        logger.info(f"[atom] {atom.name}: {fields}")
        return True


class SqliteSink(ReportSink):
    """Stores atoms in a local SQLite database."""

    name = "sqlite"

    def __init__(self, db_path: str):
        super().__init__()
        self.db_path = db_path
        self.store: Optional[AtomStore] = None

    def start(self):
        if self.store is None:
            self.store = AtomStore(self.db_path)
            self.store.init_schema()

    def stop(self):
        if self.store is not None:
            self.store.close()
            self.store = None

    def _report(self, atom: Atom) -> bool:
        if self.store is None:
            logger.error("SqliteSink.report called before start()")
            return False
        try:
            self.store.insert_atom(atom)
            return True
        except Exception as e:
            logger.error(f"Failed to insert {atom.name}: {e}")
            return False


class HttpSink(ReportSink):
    """
    Posts atoms as JSON to a stats-ingestion endpoint.

    report() only enqueues; a worker thread performs the HTTP call so uevent
    dispatch and cadence callbacks never wait on the network. A full queue
    drops the atom.
    """

    name = "http"

    def __init__(self, url: str, timeout_sec: float = 2.0, queue_max: int = 1000,
                 session: Optional[requests.Session] = None):
        super().__init__()
        if timeout_sec <= 0:
            raise ValueError(f"timeout_sec must be > 0, got {timeout_sec}")
        if queue_max < 1:
            raise ValueError(f"queue_max must be >= 1, got {queue_max}")
        self.url = url
        self.timeout_sec = timeout_sec
        self._q: "queue.Queue[Optional[Atom]]" = queue.Queue(maxsize=queue_max)
        self._session = session
        self._thread: Optional[threading.Thread] = None

        self.stats.update({
            'dropped': 0,
            'sent': 0,
            'send_errors': 0,
        })

    def start(self):
        if self._thread is not None:
            return
        if self._session is None:
            self._session = requests.Session()
        self._thread = threading.Thread(target=self._worker, name="http-sink", daemon=True)
        self._thread.start()
        logger.info(f"HTTP sink posting to {self.url}")

    def stop(self):
        if self._thread is None:
            return
        try:
            self._q.put(None, timeout=self.timeout_sec)
        except queue.Full:
            discarded = self._drain()
            logger.warning(f"HTTP sink queue still full at shutdown, discarded {discarded} atoms")
            try:
                self._q.put_nowait(None)
            except queue.Full:
                logger.warning("HTTP sink worker not signalled to stop; exiting with the process")
        self._thread.join(timeout=self.timeout_sec + 1)
        self._thread = None
        if self._session is not None:
            self._session.close()
            self._session = None

    def _report(self, atom: Atom) -> bool:
        if self._thread is None:
            logger.error("HttpSink.report called before start()")
            return False
        try:
            self._q.put_nowait(atom)
            return True
        except queue.Full:
            self.stats['dropped'] += 1
            logger.warning(f"HTTP sink queue full, dropping {atom.name}")
            return False

    def send(self, atom: Atom) -> bool:
        """Post one atom synchronously. Used by the worker thread."""
        try:
            response = self._session.post(self.url, json=atom.to_dict(), timeout=self.timeout_sec)
            response.raise_for_status()
            self.stats['sent'] += 1
            return True
        except requests.exceptions.RequestException as e:
            self.stats['send_errors'] += 1
            logger.error(f"Failed to post {atom.name} to {self.url}: {e}")
            return False
        except Exception as e:
            self.stats['send_errors'] += 1
            logger.error(f"Unexpected error posting {atom.name} to {self.url}: {e}", exc_info=True)
            return False

    def _drain(self) -> int:
        """Discard queued atoms without sending them."""
        discarded = 0
        while True:
            try:
                atom = self._q.get_nowait()
            except queue.Empty:
                return discarded
            self._q.task_done()
            if atom is not None:
                discarded += 1
                self.stats['dropped'] += 1

    def _worker(self):
        while True:
            atom = self._q.get()
            try:
                if atom is None:
                    return
                self.send(atom)
            finally:
                self._q.task_done()


class MultiSink(ReportSink):
    """Fans each atom out to several sinks; succeeds if any of them does."""

    name = "multi"

    def __init__(self, sinks: List[ReportSink]):
        super().__init__()
        self.sinks = list(sinks)

    def start(self):
        for sink in self.sinks:
            sink.start()

    def stop(self):
        for sink in self.sinks:
            try:
                sink.stop()
            except Exception as e:
                logger.error(f"Failed to stop {sink.name} sink: {e}")

    def _report(self, atom: Atom) -> bool:
        results = [report_atom(sink, atom) for sink in self.sinks]
        return any(results)
