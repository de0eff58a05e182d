#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Configuration for the vendorstats daemon.

The daemon reads an optional JSON file whose sections map onto the frozen
dataclasses below. Missing sections and keys fall back to defaults,
unknown keys are ignored, and a value of the wrong type or out of range
raises ConfigError naming its dotted path. Every metric path is optional:
an empty path disables that metric.
"""

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple


class ConfigError(ValueError):
    """Invalid daemon configuration."""


DEFAULT_PERIODS_SEC: Dict[str, int] = {
    'five_min': 5 * 60,
    'hourly': 60 * 60,
    'daily': 24 * 60 * 60,
}

DEFAULT_VMSTAT_COUNTERS = ('pgfault', 'pgmajfault', 'pswpin', 'pswpout', 'allocstall_normal')

# Largest uevent the listener can frame (uevent.frame_parser.UEVENT_MSG_LEN)
MAX_UEVENT_MESSAGE_LEN = 2048


@dataclass(frozen=True)
class SchedulerConfig:
    periods_sec: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PERIODS_SEC))


@dataclass(frozen=True)
class UeventConfig:
    enabled: bool = True
    max_message_len: int = MAX_UEVENT_MESSAGE_LEN
    max_consecutive_errors: int = 10
    receive_buffer_bytes: int = 64 * 1024
    devel_log_path: str = ""


@dataclass(frozen=True)
class SinkConfig:
    kinds: Tuple[str, ...] = ('log',)
    db_path: str = "data/vendorstats.db"
    url: str = ""
    timeout_sec: float = 2.0
    queue_max: int = 1000


@dataclass(frozen=True)
class SysfsPaths:
    """Metric file locations. Empty string = metric disabled."""
    cycle_count_bins_path: str = ""
    battery_capacity_cc_path: str = ""
    battery_capacity_vfsoc_path: str = ""
    codec_path: str = ""
    codec1_path: str = ""
    slowio_read_cnt_path: str = ""
    slowio_write_cnt_path: str = ""
    slowio_unmap_cnt_path: str = ""
    slowio_sync_cnt_path: str = ""
    impedance_path: str = ""
    ufs_lifetime_a_path: str = ""
    ufs_lifetime_b_path: str = ""
    ufs_lifetime_c_path: str = ""
    ufs_err_stats_paths: Tuple[str, ...] = ()
    zram_mm_stat_path: str = "/sys/block/zram0/mm_stat"
    zram_bd_stat_path: str = "/sys/block/zram0/bd_stat"
    block_stat_path: str = ""
    block_stats_length: int = 17
    boot_mounted_time_path: str = ""
    boot_fsck_time_ms_path: str = ""
    boot_checkpoint_time_ms_path: str = ""
    resume_latency_metrics_path: str = ""
    long_irq_metrics_path: str = ""
    storm_irq_metrics_path: str = ""
    irq_stats_reset_path: str = ""
    persist_partition_path: str = ""
    vmstat_path: str = "/proc/vmstat"
    vmstat_counters: Tuple[str, ...] = DEFAULT_VMSTAT_COUNTERS


@dataclass(frozen=True)
class UeventPaths:
    """Uevent match values and the files handlers read."""
    audio_uevent: str = ""
    overheat_path: str = "/sys/devices/platform/google,usbc_port_cooling_dev"
    typec_partner_uevent: str = "DEVTYPE=typec_partner"
    typec_partner_vid_path: str = "/sys/class/typec/port0-partner/identity/id_header"
    typec_partner_pid_path: str = "/sys/class/typec/port0-partner/identity/product"


@dataclass(frozen=True)
class DaemonConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    uevent: UeventConfig = field(default_factory=UeventConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)
    sysfs: SysfsPaths = field(default_factory=SysfsPaths)
    uevent_paths: UeventPaths = field(default_factory=UeventPaths)
    startup_delay_sec: float = 30.0


def _opt(d: Mapping[str, Any], path: str, default: Any) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return default
        cur = cur[part]
    return cur


def _coerce(value: Any, default: Any, path: str) -> Any:
    """Check a raw JSON value against the type of its default."""
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"Invalid config: '{path}' must be true or false")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"Invalid config: '{path}' must be an integer")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"Invalid config: '{path}' must be a number")
        return float(value)
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigError(f"Invalid config: '{path}' must be a string")
        return value
    if isinstance(default, tuple):
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"Invalid config: '{path}' must be a list of strings")
        return tuple(value)
    return value


def _section(raw: Mapping[str, Any], name: str, cls):
    section = _opt(raw, name, {})
    if not isinstance(section, Mapping):
        raise ConfigError(f"Invalid config: '{name}' must be an object")
    defaults = cls()
    values = {}
    for f in fields(cls):
        if f.name in section:
            values[f.name] = _coerce(section[f.name], getattr(defaults, f.name), f"{name}.{f.name}")
    return replace(defaults, **values)


def _periods(raw: Mapping[str, Any]) -> SchedulerConfig:
    periods = _opt(raw, "scheduler.periods_sec", None)
    if periods is None:
        return SchedulerConfig()
    if not isinstance(periods, Mapping) or not periods:
        raise ConfigError("Invalid config: 'scheduler.periods_sec' must be a non-empty object")
    out: Dict[str, int] = {}
    for name, sec in periods.items():
        if isinstance(sec, bool) or not isinstance(sec, int) or sec <= 0:
            raise ConfigError(f"Invalid config: 'scheduler.periods_sec.{name}' must be a positive integer")
        out[str(name)] = sec
    return SchedulerConfig(periods_sec=out)


def config_from_dict(raw: Mapping[str, Any]) -> DaemonConfig:
    """Build a DaemonConfig from a parsed JSON document."""
    if not isinstance(raw, Mapping):
        raise ConfigError("Invalid config: top level must be an object")

    sink_raw = _opt(raw, "sink", {})
    if isinstance(sink_raw, Mapping) and 'kind' in sink_raw and 'kinds' not in sink_raw:
        sink_raw = {**sink_raw, 'kinds': sink_raw['kind']}
    sink = _section({'sink': sink_raw}, 'sink', SinkConfig)
    _validate_sink(sink)

    delay = _coerce(_opt(raw, "startup_delay_sec", 30.0), 30.0, "startup_delay_sec")
    if delay < 0:
        raise ConfigError("Invalid config: 'startup_delay_sec' must be >= 0")

    config = DaemonConfig(
        scheduler=_periods(raw),
        uevent=_section(raw, 'uevent', UeventConfig),
        sink=sink,
        sysfs=_section(raw, 'sysfs', SysfsPaths),
        uevent_paths=_section(raw, 'uevent_paths', UeventPaths),
        startup_delay_sec=delay,
    )
    _check_limits(config)
    return config


# (section, key): (minimum, maximum or None)
_LIMITS = {
    ('uevent', 'max_message_len'): (1, MAX_UEVENT_MESSAGE_LEN),
    ('uevent', 'max_consecutive_errors'): (1, None),
    ('uevent', 'receive_buffer_bytes'): (1, None),
    ('sink', 'queue_max'): (1, None),
    ('sysfs', 'block_stats_length'): (8, None),
}


def _check_limits(config: DaemonConfig):
    for (section, key), (low, high) in _LIMITS.items():
        value = getattr(getattr(config, section), key)
        if value < low:
            raise ConfigError(f"Invalid config: '{section}.{key}' must be >= {low}")
        if high is not None and value > high:
            raise ConfigError(f"Invalid config: '{section}.{key}' must be <= {high}")
    if config.sink.timeout_sec <= 0:
        raise ConfigError("Invalid config: 'sink.timeout_sec' must be > 0")


SINK_KINDS = ('log', 'sqlite', 'http')


def _validate_sink(sink: SinkConfig):
    if not sink.kinds:
        raise ConfigError("Invalid config: 'sink.kind' needs at least one sink")
    for kind in sink.kinds:
        if kind not in SINK_KINDS:
            raise ConfigError(f"Invalid config: unknown sink kind '{kind}' (expected one of {SINK_KINDS})")
    if 'http' in sink.kinds and not sink.url:
        raise ConfigError("Invalid config: 'sink.url' is required for the http sink")


def load_config(path: Optional[str] = None) -> DaemonConfig:
    """
    Load configuration from a JSON file.

    Args:
        path: JSON file; None returns the defaults

    Returns:
        DaemonConfig
    """
    if not path:
        return DaemonConfig()
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text())
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {config_path} is not valid JSON: {e}") from None
    return config_from_dict(raw)


def with_overrides(config: DaemonConfig, sink_kinds: Optional[List[str]] = None,
                   db_path: Optional[str] = None,
                   startup_delay_sec: Optional[float] = None,
                   uevents_enabled: Optional[bool] = None) -> DaemonConfig:
    """Apply command-line overrides on top of a loaded config."""
    sink = config.sink
    if sink_kinds:
        sink = replace(sink, kinds=tuple(sink_kinds))
    if db_path:
        sink = replace(sink, db_path=db_path)
    _validate_sink(sink)

    uevent = config.uevent
    if uevents_enabled is not None:
        uevent = replace(uevent, enabled=uevents_enabled)

    delay = config.startup_delay_sec if startup_delay_sec is None else startup_delay_sec
    if delay < 0:
        raise ConfigError("Invalid config: 'startup_delay_sec' must be >= 0")
    return replace(config, sink=sink, uevent=uevent, startup_delay_sec=delay)
