#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Sysfs collector.

Periodically samples sysfs/procfs metric files and reports them as atoms.
Collectors are grouped by cadence:

    five_min  - vmstat counter aggregation
    hourly    - vmstat report, zram mm_stat / bd_stat
    daily     - battery, block, codec, storage, speaker, resume latency, IRQ,
                partition; boot stats until they have been reported once

Each collector declares the paths it needs with @requires; the runner skips
collectors whose paths are not configured. Cumulative counters go through
the collector's DeltaStateTracker so that reports carry per-window deltas.
"""

import logging
import os
import re
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple

from .atoms import (
    BATTERY_CAPACITY,
    BLOCK_STATS_REPORTED,
    BOOT_STATS,
    CHARGE_CYCLE_BUCKETS,
    LONG_IRQ_TOP_N,
    MAX_RESUME_LATENCY_BUCKETS,
    PARTITIONS_USED_SPACE_REPORTED,
    STORAGE_UFS_HEALTH,
    STORAGE_UFS_RESET_COUNT,
    VENDOR_CHARGE_CYCLES,
    VENDOR_HARDWARE_FAILED,
    VENDOR_LONG_IRQ_STATS_REPORTED,
    VENDOR_RESUME_LATENCY_STATS,
    VENDOR_SLOW_IO,
    VENDOR_SPEAKER_IMPEDANCE,
    VM_STAT_HOURLY,
    ZRAM_BD_STAT,
    ZRAM_MM_STAT,
    AtomSchemaError,
    FailureCode,
    HardwareType,
    PartitionDirectory,
    SlowIoOperation,
)
from .config import SysfsPaths
from .delta_tracker import DeltaStateTracker
from .metric_sources import (
    MetricReadError,
    missing_sources,
    read_file_to_int,
    read_file_to_string,
    requires,
    scan_ints,
    write_string_to_file,
)
from .scheduler import CadenceScheduler
from .sinks import ReportSink, report_atom

logger = logging.getLogger(__name__)

CADENCE_FIVE_MIN = 'five_min'
CADENCE_HOURLY = 'hourly'
CADENCE_DAILY = 'daily'

ZRAM_HUGE_PAGES_KEY = 'zram.huge_pages_since_boot'
RESUME_BUCKETS_KEY = 'resume_latency.buckets'
RESUME_SUM_KEY = 'resume_latency.sum'
RESUME_COUNT_KEY = 'resume_latency.count'

_RESUME_HEADER_RES = (
    re.compile(r'Resume Latency Bucket Count:\s*(-?\d+)'),
    re.compile(r'Max Resume Latency:\s*(-?\d+)'),
    re.compile(r'Sum Resume Latency:\s*(\d+)'),
)
_RESUME_BUCKET_RE = re.compile(r'\s*-?\d+\s*-\s*(?:-?\d+|inf)ms\s*====>\s*(-?\d+)')

_IRQ_PAIR_RE = re.compile(r'\s*(-?\d+)\s+(-?\d+)\s*$')

# Field offsets in /sys/block/<dev>/stat (Documentation/ABI/stable/sysfs-block)
BLOCK_STAT_FIELDS = (
    ('read_io', 0),
    ('read_sectors', 2),
    ('read_ticks', 3),
    ('write_io', 4),
    ('write_sectors', 6),
    ('write_ticks', 7),
)


class SysfsCollector:
    """Reads metric files on each cadence and reports atoms."""

    # Retried on each daily pass until the collector reports once
    ONCE_METRICS = (
        'log_boot_stats',
    )
    FIVE_MIN_METRICS = (
        'aggregate_vmstat',
    )
    HOURLY_METRICS = (
        'log_vmstat_per_hour',
        'log_zram_mm_stat',
        'log_zram_bd_stat',
    )
    DAILY_METRICS = (
        'log_battery_capacity',
        'log_battery_charge_cycles',
        'log_block_stats',
        'log_codec_failed',
        'log_codec1_failed',
        'log_slow_io',
        'log_speaker_impedance',
        'log_ufs_lifetime',
        'log_ufs_error_stats',
        'log_resume_latency_stats',
        'log_long_irq_stats',
        'log_partition_used_space',
    )

    def __init__(self, sink: ReportSink, paths: Optional[SysfsPaths] = None,
                 tracker: Optional[DeltaStateTracker] = None):
        """
        Initialize collector.

        Args:
            sink: Destination for atoms
            paths: Metric file locations
            tracker: Previous-sample state for cumulative counters
        """
        self.sink = sink
        self.paths = paths or SysfsPaths()
        self.tracker = tracker or DeltaStateTracker("sysfs")

        # vmstat deltas accumulated across five-minute windows
        self._vmstat_window: Dict[str, int] = OrderedDict()
        self._vmstat_windows = 0

        self.reported_once = set()

        self.stats = {
            'runs': 0,
            'skipped': 0,
            'errors': 0,
        }

    # ------------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------------

    def run_metric(self, name: str) -> bool:
        """
        Run one collector by method name.

        Returns:
            True if the collector ran to completion without returning False
        """
        func = getattr(self, name)
        missing = missing_sources(self.paths, getattr(func, 'required_paths', ()))
        if missing:
            self.stats['skipped'] += 1
            logger.debug(f"{name}: skipped, not configured: {', '.join(missing)}")
            return False

        try:
            result = func()
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"{name} failed: {e}")
            return False
        self.stats['runs'] += 1
        return result is not False

    def _run_all(self, names: Tuple[str, ...]):
        for name in names:
            self.run_metric(name)

    def run_once_metrics(self):
        """Run each once-only collector that has not yet reported."""
        for name in self.ONCE_METRICS:
            if name in self.reported_once:
                continue
            if self.run_metric(name):
                self.reported_once.add(name)
                logger.info(f"{name}: reported, not run again")

    def aggregate_per_5min(self):
        self._run_all(self.FIVE_MIN_METRICS)

    def log_per_hour(self):
        self._run_all(self.HOURLY_METRICS)

    def log_per_day(self):
        self.run_once_metrics()
        self._run_all(self.DAILY_METRICS)

    def register(self, scheduler: CadenceScheduler):
        """Attach the cadence callback sets to a scheduler."""
        available = {c.name for c in scheduler.cadences}
        wiring: List[Tuple[str, Callable[[], None]]] = [
            (CADENCE_FIVE_MIN, self.aggregate_per_5min),
            (CADENCE_HOURLY, self.log_per_hour),
            (CADENCE_DAILY, self.log_per_day),
        ]
        for cadence, callback in wiring:
            if cadence not in available:
                logger.warning(f"No '{cadence}' cadence configured; {callback.__name__} will not run")
                continue
            scheduler.register(cadence, callback)

    # ------------------------------------------------------------------
    # Five-minute / hourly
    # ------------------------------------------------------------------

    @requires('vmstat_path', 'vmstat_counters')
    def aggregate_vmstat(self):
        """Add this window's vmstat counter deltas to the hourly accumulator."""
        contents = read_file_to_string(self.paths.vmstat_path)
        counters = {}
        for line in contents.splitlines():
            parts = line.split()
            if len(parts) == 2:
                try:
                    counters[parts[0]] = int(parts[1])
                except ValueError:
                    continue

        for name in self.paths.vmstat_counters:
            if name not in counters:
                logger.debug(f"vmstat counter {name} not present")
                continue
            result = self.tracker.compute_delta(f"vmstat.{name}", counters[name])
            # First sample and counter resets add nothing to the window
            self._vmstat_window[name] = self._vmstat_window.get(name, 0) + result.value_or(0)
        self._vmstat_windows += 1

    def log_vmstat_per_hour(self):
        """Report accumulated vmstat deltas and start a new accumulation."""
        if self._vmstat_windows == 0:
            return
        windows = self._vmstat_windows
        totals = self._vmstat_window
        self._vmstat_window = OrderedDict()
        self._vmstat_windows = 0

        for name, delta in totals.items():
            atom = (VM_STAT_HOURLY.builder()
                    .set('counter', name).set('delta', delta).set('windows', windows)
                    .build())
            report_atom(self.sink, atom)

    @requires('zram_mm_stat_path')
    def log_zram_mm_stat(self):
        contents = read_file_to_string(self.paths.zram_mm_stat_path)
        values = scan_ints(contents)
        # huge_pages_since_boot is missing on older kernels
        if len(values) < 8:
            logger.error(f"Unable to parse ZramMmStat {contents.strip()!r} "
                         f"from file {self.paths.zram_mm_stat_path} to int.")
            return

        orig_data_size, compr_data_size, mem_used_total = values[0:3]
        same_pages, _pages_compacted, huge_pages = values[5:8]

        # First sample is suppressed to avoid a spike from a since-boot value
        huge_pages_delta = 0
        if len(values) >= 9:
            huge_pages_delta = self.tracker.compute_delta(ZRAM_HUGE_PAGES_KEY, values[8]).value_or(0)

        atom = (ZRAM_MM_STAT.builder()
                .set('orig_data_size', orig_data_size)
                .set('compr_data_size', compr_data_size)
                .set('mem_used_total', mem_used_total)
                .set('same_pages', same_pages)
                .set('huge_pages', huge_pages)
                .set('huge_pages_since_boot', huge_pages_delta)
                .build())
        report_atom(self.sink, atom)

    @requires('zram_bd_stat_path')
    def log_zram_bd_stat(self):
        contents = read_file_to_string(self.paths.zram_bd_stat_path)
        values = scan_ints(contents)
        if len(values) < 3:
            logger.error(f"Unable to parse ZramBdStat {contents.strip()!r} "
                         f"from file {self.paths.zram_bd_stat_path} to int.")
            return
        atom = (ZRAM_BD_STAT.builder()
                .set('bd_count', values[0]).set('bd_reads', values[1]).set('bd_writes', values[2])
                .build())
        report_atom(self.sink, atom)

    # ------------------------------------------------------------------
    # Daily
    # ------------------------------------------------------------------

    @requires('cycle_count_bins_path')
    def log_battery_charge_cycles(self):
        """
        Report battery charge cycle buckets.

        The nth bucket counts how often charging raised the battery level
        within the n/N% range. Missing buckets are reported as 0.
        """
        contents = read_file_to_string(self.paths.cycle_count_bins_path)
        cycles = scan_ints(contents)
        if len(cycles) > CHARGE_CYCLE_BUCKETS:
            logger.warning(f"Got excessive battery charge cycles count {len(cycles)}")
            return
        cycles += [0] * (CHARGE_CYCLE_BUCKETS - len(cycles))

        builder = VENDOR_CHARGE_CYCLES.builder()
        for i, count in enumerate(cycles, start=1):
            builder.set(f'cycle_bucket_{i}', count)
        report_atom(self.sink, builder.build())

    @requires('battery_capacity_cc_path', 'battery_capacity_vfsoc_path')
    def log_battery_capacity(self):
        delta_cc_sum = read_file_to_int(self.paths.battery_capacity_cc_path)
        delta_vfsoc_sum = read_file_to_int(self.paths.battery_capacity_vfsoc_path)
        atom = (BATTERY_CAPACITY.builder()
                .set('delta_cc_sum', delta_cc_sum)
                .set('delta_vfsoc_sum', delta_vfsoc_sum)
                .build())
        report_atom(self.sink, atom)

    @requires('block_stat_path')
    def log_block_stats(self):
        """Report cumulative I/O counts, sectors and ticks of the block device."""
        contents = read_file_to_string(self.paths.block_stat_path)
        stats = contents.split()
        if len(stats) < self.paths.block_stats_length:
            logger.error(f"block layer stat format is incorrect {contents.strip()!r}, "
                         f"length {len(stats)}/{self.paths.block_stats_length}")
            return

        builder = BLOCK_STATS_REPORTED.builder()
        for name, index in BLOCK_STAT_FIELDS:
            try:
                builder.set(name, int(stats[index]))
            except ValueError:
                logger.error(f"Unable to parse block stat {name} {stats[index]!r} "
                             f"from {self.paths.block_stat_path}")
                return
        report_atom(self.sink, builder.build())

    @requires('boot_mounted_time_path')
    def log_boot_stats(self) -> bool:
        """
        Report how long mounting userdata took at boot.

        fsck and checkpoint times are written by init in milliseconds; while
        both still read 0 boot is not finished and False is returned so the
        next daily pass retries.
        """
        mounted_time_sec = read_file_to_int(self.paths.boot_mounted_time_path)
        fsck_time_ms = 0
        if self.paths.boot_fsck_time_ms_path:
            fsck_time_ms = read_file_to_int(self.paths.boot_fsck_time_ms_path)
        checkpoint_time_ms = 0
        if self.paths.boot_checkpoint_time_ms_path:
            checkpoint_time_ms = read_file_to_int(self.paths.boot_checkpoint_time_ms_path)

        if fsck_time_ms == 0 and checkpoint_time_ms == 0:
            logger.debug("Boot stats not yet initialized")
            return False

        atom = (BOOT_STATS.builder()
                .set('mounted_time_sec', mounted_time_sec)
                .set('fsck_time_sec', fsck_time_ms // 1000)
                .set('checkpoint_time_sec', checkpoint_time_ms // 1000)
                .build())
        return report_atom(self.sink, atom)

    def _check_codec(self, path: str, location: int):
        state = read_file_to_string(path).strip()
        if state == '0':
            return
        logger.error(f"{path} report hardware fail")
        atom = (VENDOR_HARDWARE_FAILED.builder()
                .set('hardware_type', HardwareType.CODEC)
                .set('hardware_location', location)
                .set('failure_code', FailureCode.COMPLETE)
                .build())
        report_atom(self.sink, atom)

    @requires('codec_path')
    def log_codec_failed(self):
        self._check_codec(self.paths.codec_path, 0)

    @requires('codec1_path')
    def log_codec1_failed(self):
        self._check_codec(self.paths.codec1_path, 1)

    def log_slow_io(self):
        """Report slow I/O counts and clear each counter file."""
        for path, operation in (
            (self.paths.slowio_read_cnt_path, SlowIoOperation.READ),
            (self.paths.slowio_write_cnt_path, SlowIoOperation.WRITE),
            (self.paths.slowio_unmap_cnt_path, SlowIoOperation.UNMAP),
            (self.paths.slowio_sync_cnt_path, SlowIoOperation.SYNC),
        ):
            if not path:
                continue
            try:
                self._report_slow_io_from_file(path, operation)
            except MetricReadError as e:
                logger.error(str(e))

    def _report_slow_io_from_file(self, path: str, operation: int):
        contents = read_file_to_string(path)
        try:
            count = int(contents.split()[0])
        except (IndexError, ValueError):
            logger.error(f"Unable to parse {contents.strip()!r} from file {path} to int.")
            count = 0

        if count > 0:
            try:
                atom = VENDOR_SLOW_IO.builder().set('operation', operation).set('count', count).build()
            except AtomSchemaError as e:
                logger.error(f"Slow I/O count from {path} not reportable: {e}")
            else:
                report_atom(self.sink, atom)

        # The kernel counter accumulates until cleared
        write_string_to_file(path, '0')

    @requires('impedance_path')
    def log_speaker_impedance(self):
        """Report the last-detected impedance of left and right speakers (milliohms)."""
        contents = read_file_to_string(self.paths.impedance_path)
        try:
            left, right = (float(v) for v in contents.strip().split(',')[:2])
        except ValueError:
            logger.error(f"Unable to parse speaker impedance {contents.strip()!r}")
            return

        for location, ohms in ((0, left), (1, right)):
            atom = (VENDOR_SPEAKER_IMPEDANCE.builder()
                    .set('speaker_location', location)
                    .set('impedance', int(ohms * 1000))
                    .build())
            report_atom(self.sink, atom)

    @requires('ufs_lifetime_a_path', 'ufs_lifetime_b_path', 'ufs_lifetime_c_path')
    def log_ufs_lifetime(self):
        atom = (STORAGE_UFS_HEALTH.builder()
                .set('lifetime_a', read_file_to_int(self.paths.ufs_lifetime_a_path))
                .set('lifetime_b', read_file_to_int(self.paths.ufs_lifetime_b_path))
                .set('lifetime_c', read_file_to_int(self.paths.ufs_lifetime_c_path))
                .build())
        report_atom(self.sink, atom)

    @requires('ufs_err_stats_paths')
    def log_ufs_error_stats(self):
        host_reset_count = sum(read_file_to_int(p) for p in self.paths.ufs_err_stats_paths if p)
        atom = STORAGE_UFS_RESET_COUNT.builder().set('host_reset_count', host_reset_count).build()
        report_atom(self.sink, atom)

    @requires('resume_latency_metrics_path')
    def log_resume_latency_stats(self):
        """
        Report the resume latency histogram.

        File format:
            Resume Latency Bucket Count: N
            Max Resume Latency: <ms>
            Sum Resume Latency: <ms>
            <lo> - <hi>ms ====> <count>     (N lines, the last one '<lo> - infms')

        Bucket counts are reported as deltas against the previous sample
        while the bucket count is unchanged, raw otherwise.
        """
        contents = read_file_to_string(self.paths.resume_latency_metrics_path)
        parsed = parse_resume_latency(contents)
        if parsed is None:
            logger.error(f"Unable to parse resume latency metrics from "
                         f"{self.paths.resume_latency_metrics_path}")
            return
        bucket_count, max_latency, sum_latency, counts = parsed

        bucket_result = self.tracker.compute_vector_delta(RESUME_BUCKETS_KEY, counts)
        reported = bucket_result.deltas if bucket_result.reportable else counts

        total_count = sum(counts)
        sum_result = self.tracker.compute_delta(RESUME_SUM_KEY, sum_latency)
        count_result = self.tracker.compute_delta(RESUME_COUNT_KEY, total_count)
        # Before any prior sample the baseline is zero (counts since boot)
        delta_sum = sum_latency if sum_result.is_first_sample else sum_result.delta
        delta_count = total_count if count_result.is_first_sample else count_result.delta

        if delta_sum is None or delta_count is None or delta_sum < 0 or delta_count <= 0:
            avg_latency = -1
            logger.info("average resume latency get overflow")
        else:
            avg_latency = delta_sum // delta_count

        builder = (VENDOR_RESUME_LATENCY_STATS.builder()
                   .set('max_latency', max_latency)
                   .set('avg_latency', avg_latency))
        for i, count in enumerate(reported, start=1):
            builder.set(f'resume_count_bucket_{i}', count)
        report_atom(self.sink, builder.build())

    @requires('long_irq_metrics_path', 'storm_irq_metrics_path', 'irq_stats_reset_path')
    def log_long_irq_stats(self):
        """Report long softirq/irq counts with their top-5 offenders, then reset the stats."""
        irq_contents = read_file_to_string(self.paths.long_irq_metrics_path)
        storm_contents = read_file_to_string(self.paths.storm_irq_metrics_path)

        values = parse_long_irq(irq_contents, storm_contents)
        if values is None:
            logger.error(f"Unable to parse long IRQ metrics from {self.paths.long_irq_metrics_path}")
            return

        builder = VENDOR_LONG_IRQ_STATS_REPORTED.builder()
        for name, value in zip(VENDOR_LONG_IRQ_STATS_REPORTED.field_names(), values):
            builder.set(name, value)
        report_atom(self.sink, builder.build())

        write_string_to_file(self.paths.irq_stats_reset_path, '1')

    @requires('persist_partition_path')
    def log_partition_used_space(self):
        try:
            fs_info = os.statvfs(self.paths.persist_partition_path)
        except OSError as e:
            raise MetricReadError(f"statvfs {self.paths.persist_partition_path}: {e}") from e

        atom = (PARTITIONS_USED_SPACE_REPORTED.builder()
                .set('directory', PartitionDirectory.PERSIST)
                .set('free_bytes', fs_info.f_frsize * fs_info.f_bfree)
                .set('total_bytes', fs_info.f_frsize * fs_info.f_blocks)
                .build())
        report_atom(self.sink, atom)


def parse_resume_latency(contents: str) -> Optional[Tuple[int, int, int, List[int]]]:
    """
    Parse a resume latency metrics file.

    Returns:
        (bucket_count, max_latency, sum_latency, bucket counts) or None
    """
    lines = contents.splitlines()
    if len(lines) < 3:
        return None

    header = []
    for line, pattern in zip(lines, _RESUME_HEADER_RES):
        match = pattern.match(line)
        if not match:
            return None
        header.append(int(match.group(1)))
    bucket_count, max_latency, sum_latency = header

    if bucket_count < 0 or bucket_count > MAX_RESUME_LATENCY_BUCKETS:
        return None

    counts = []
    for line in lines[3:]:
        match = _RESUME_BUCKET_RE.match(line)
        if not match:
            break
        counts.append(int(match.group(1)))

    if len(counts) != bucket_count:
        return None
    return bucket_count, max_latency, sum_latency, counts


def _take_pairs(lines: List[str], start: int) -> Tuple[List[Tuple[int, int]], int]:
    pairs = []
    i = start
    while i < len(lines):
        match = _IRQ_PAIR_RE.match(lines[i])
        if not match:
            break
        pairs.append((int(match.group(1)), int(match.group(2))))
        i += 1
    return pairs, i


def _top_pairs(pairs: List[Tuple[int, int]]) -> List[int]:
    """Flatten the first LONG_IRQ_TOP_N pairs, padding with (-1, 0)."""
    out = []
    for i in range(LONG_IRQ_TOP_N):
        num, value = pairs[i] if i < len(pairs) else (-1, 0)
        out.extend((num, value))
    return out


def _expect(lines: List[str], i: int, prefix: str) -> bool:
    return i < len(lines) and lines[i].strip().startswith(prefix)


def parse_long_irq(irq_contents: str, storm_contents: str) -> Optional[List[int]]:
    """
    Parse long IRQ and storm IRQ metric files.

    Returns:
        Values in vendor_long_irq_stats_reported field order, or None
    """
    lines = irq_contents.splitlines()
    values: List[int] = []
    i = 0

    for label in ('SOFTIRQ', 'IRQ'):
        count_prefix = f"long {label} count:"
        if not _expect(lines, i, count_prefix):
            return None
        try:
            values.append(int(lines[i].strip()[len(count_prefix):].strip()))
        except ValueError:
            return None
        i += 1
        if not _expect(lines, i, f"long {label} detail"):
            return None
        pairs, i = _take_pairs(lines, i + 1)
        values.extend(_top_pairs(pairs))

    storm_lines = storm_contents.splitlines()
    if not _expect(storm_lines, 0, "storm IRQ detail"):
        return None
    pairs, _ = _take_pairs(storm_lines, 1)
    values.extend(_top_pairs(pairs))
    return values
