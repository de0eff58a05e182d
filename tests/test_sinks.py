#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Tests for reporting sinks and the SQLite atom store.
"""

import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import requests

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vendorstats.atom_store import AtomStore
from vendorstats.atoms import GPU_EVENT, ZRAM_BD_STAT
from vendorstats.sinks import (
    HttpSink,
    LoggingSink,
    MultiSink,
    ReportSink,
    SqliteSink,
    report_atom,
)


def bd_stat_atom(count=3, timestamp=None):
    return (ZRAM_BD_STAT.builder()
            .set('bd_count', count).set('bd_reads', 10).set('bd_writes', 7)
            .build(timestamp=timestamp))


class FailingSink(ReportSink):
    name = "failing"

    def _report(self, atom):
        return False


class RaisingSink(ReportSink):
    name = "raising"

    def _report(self, atom):
        raise RuntimeError("transport down")


class TestReportAtom(unittest.TestCase):
    """Test failure absorption"""

    def test_success(self):
        sink = LoggingSink()
        with self.assertLogs('vendorstats.sinks', level='INFO') as logs:
            self.assertTrue(report_atom(sink, bd_stat_atom()))
        self.assertIn('zram_bd_stat: bd_count=3', logs.output[0])
        self.assertEqual(sink.stats['reported'], 1)

    def test_failure_logged(self):
        sink = FailingSink()
        with self.assertLogs('vendorstats.sinks', level='ERROR'):
            self.assertFalse(report_atom(sink, bd_stat_atom()))
        self.assertEqual(sink.stats['failed'], 1)

    def test_exception_absorbed(self):
        with self.assertLogs('vendorstats.sinks', level='ERROR'):
            self.assertFalse(report_atom(RaisingSink(), bd_stat_atom()))

    def test_no_sink(self):
        with self.assertLogs('vendorstats.sinks', level='ERROR'):
            self.assertFalse(report_atom(None, bd_stat_atom()))


class TestMultiSink(unittest.TestCase):
    """Test fan-out"""

    def test_any_success(self):
        sink = MultiSink([FailingSink(), LoggingSink()])
        with self.assertLogs('vendorstats.sinks', level='INFO'):
            self.assertTrue(sink.report(bd_stat_atom()))

    def test_all_fail(self):
        sink = MultiSink([FailingSink(), RaisingSink()])
        with self.assertLogs('vendorstats.sinks', level='ERROR'):
            self.assertFalse(sink.report(bd_stat_atom()))


class TestAtomStore(unittest.TestCase):
    """Test SQLite persistence"""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, 'nested', 'atoms.db')
        self.store = AtomStore(self.db_path)
        self.store.init_schema()

    def tearDown(self):
        self.store.close()
        self.temp_dir.cleanup()

    def test_insert_and_query(self):
        self.store.insert_atom(bd_stat_atom(count=1, timestamp=100.0))
        self.store.insert_atom(bd_stat_atom(count=2, timestamp=200.0))
        self.store.insert_atom(GPU_EVENT.builder().set('gpu_event_type', 1)
                               .set('gpu_event_info', 5).build(timestamp=150.0))

        rows = self.store.query_atoms()
        self.assertEqual([r['atom'] for r in rows], ['zram_bd_stat', 'gpu_event', 'zram_bd_stat'])
        self.assertEqual(rows[0]['values'], {'bd_count': 2, 'bd_reads': 10, 'bd_writes': 7})

        rows = self.store.query_atoms(atom_name='zram_bd_stat', since_timestamp=150.0)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['values']['bd_count'], 2)

    def test_limit(self):
        for i in range(5):
            self.store.insert_atom(bd_stat_atom(count=i, timestamp=float(i)))
        self.assertEqual(len(self.store.query_atoms(limit=2)), 2)

    def test_counts(self):
        self.store.insert_atom(bd_stat_atom())
        self.store.insert_atom(bd_stat_atom())
        self.assertEqual(self.store.get_atom_counts(), {'zram_bd_stat': 2})

    def test_init_schema_idempotent(self):
        self.store.init_schema()
        self.store.insert_atom(bd_stat_atom())
        self.assertEqual(self.store.get_atom_counts(), {'zram_bd_stat': 1})


class TestSqliteSink(unittest.TestCase):
    """Test the sqlite sink lifecycle"""

    def test_report_after_start(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, 'atoms.db')
            sink = SqliteSink(db_path)
            with self.assertLogs('vendorstats.sinks', level='ERROR'):
                self.assertFalse(sink.report(bd_stat_atom()))

            sink.start()
            self.assertTrue(sink.report(bd_stat_atom()))
            sink.stop()

            store = AtomStore(db_path)
            try:
                self.assertEqual(store.get_atom_counts(), {'zram_bd_stat': 1})
            finally:
                store.close()


class TestHttpSink(unittest.TestCase):
    """Test the queued HTTP sink with a mocked session"""

    def wait_for(self, predicate, timeout=2.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return False

    def test_posts_json(self):
        session = MagicMock()
        sink = HttpSink('http://stats.local/ingest', session=session)
        sink.start()
        try:
            self.assertTrue(sink.report(bd_stat_atom()))
            self.assertTrue(self.wait_for(lambda: sink.stats['sent'] == 1))
        finally:
            sink.stop()

        args, kwargs = session.post.call_args
        self.assertEqual(args[0], 'http://stats.local/ingest')
        self.assertEqual(kwargs['json']['atom'], 'zram_bd_stat')
        self.assertEqual(kwargs['timeout'], 2.0)
        session.close.assert_called_once()

    def test_http_error_counted_not_retried(self):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("refused")
        sink = HttpSink('http://stats.local/ingest', session=session)

        with self.assertLogs('vendorstats.sinks', level='ERROR'):
            self.assertFalse(sink.send(bd_stat_atom()))
        self.assertEqual(sink.stats['send_errors'], 1)
        self.assertEqual(session.post.call_count, 1)

    def test_status_error(self):
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("503")
        sink = HttpSink('http://stats.local/ingest', session=session)
        with self.assertLogs('vendorstats.sinks', level='ERROR'):
            self.assertFalse(sink.send(bd_stat_atom()))

    def test_full_queue_drops(self):
        sink = HttpSink('http://stats.local/ingest', queue_max=1, session=MagicMock())
        # Pretend started without a worker draining the queue
        sink._thread = MagicMock()
        self.assertTrue(sink.report(bd_stat_atom()))
        with self.assertLogs('vendorstats.sinks', level='WARNING'):
            self.assertFalse(sink.report(bd_stat_atom()))
        self.assertEqual(sink.stats['dropped'], 1)

    def test_report_before_start(self):
        sink = HttpSink('http://stats.local/ingest', session=MagicMock())
        with self.assertLogs('vendorstats.sinks', level='ERROR'):
            self.assertFalse(sink.report(bd_stat_atom()))

    def test_unexpected_send_error_keeps_worker_alive(self):
        session = MagicMock()
        session.post.side_effect = [ValueError("Timeout value connect was 0"), MagicMock()]
        sink = HttpSink('http://stats.local/ingest', session=session)
        sink.start()
        worker = sink._thread
        try:
            with self.assertLogs('vendorstats.sinks', level='ERROR') as logs:
                self.assertTrue(sink.report(bd_stat_atom()))
                self.assertTrue(self.wait_for(lambda: sink.stats['send_errors'] == 1))
            self.assertIn('Unexpected error posting zram_bd_stat', logs.output[0])

            self.assertTrue(sink.report(bd_stat_atom()))
            self.assertTrue(self.wait_for(lambda: sink.stats['sent'] == 1))
            self.assertTrue(worker.is_alive())
        finally:
            sink.stop()
        self.assertFalse(worker.is_alive())

    def test_stop_returns_with_full_queue(self):
        sink = HttpSink('http://stats.local/ingest', timeout_sec=0.05, queue_max=2,
                        session=MagicMock())
        # Started, but nothing consumes the queue
        worker = MagicMock()
        sink._thread = worker
        self.assertTrue(sink.report(bd_stat_atom()))
        self.assertTrue(sink.report(bd_stat_atom()))

        with self.assertLogs('vendorstats.sinks', level='WARNING') as logs:
            sink.stop()
        self.assertIn('discarded 2 atoms', logs.output[0])
        self.assertEqual(sink.stats['dropped'], 2)
        self.assertIsNone(sink._thread)
        worker.join.assert_called_once()


class CountingSink(ReportSink):
    name = "counting"

    def _report(self, atom):
        return True


class TestReportStats(unittest.TestCase):
    """Test sink statistics under concurrent reporters"""

    def test_counts_from_several_threads(self):
        sink = CountingSink()
        atom = bd_stat_atom()

        def reporter():
            for _ in range(2000):
                sink.report(atom)

        threads = [threading.Thread(target=reporter) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(sink.stats['reported'], 8000)
        self.assertEqual(sink.stats['failed'], 0)


if __name__ == '__main__':
    unittest.main()
