#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Atom definitions for vendorstats telemetry.

An atom is one structured telemetry record: a schema name plus an ordered
list of typed scalar values. Collectors never index value arrays by field
offset; they fill an AtomBuilder by field name and the schema resolves the
order in one place.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


class AtomSchemaError(ValueError):
    """Raised when an atom does not match its schema."""


class AtomValueType(Enum):
    """Scalar types accepted by the reporting sink."""
    INT = "int"
    LONG = "long"
    FLOAT = "float"
    STRING = "string"


@dataclass(frozen=True)
class AtomValue:
    """One typed scalar value of an atom."""
    value_type: AtomValueType
    value: Any

    def __post_init__(self):
        _check_value(self.value_type, self.value)

    @classmethod
    def int_value(cls, value: int) -> "AtomValue":
        return cls(AtomValueType.INT, value)

    @classmethod
    def long_value(cls, value: int) -> "AtomValue":
        return cls(AtomValueType.LONG, value)

    @classmethod
    def float_value(cls, value: float) -> "AtomValue":
        return cls(AtomValueType.FLOAT, float(value))

    @classmethod
    def string_value(cls, value: str) -> "AtomValue":
        return cls(AtomValueType.STRING, value)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.value_type.value, 'value': self.value}


def _check_value(value_type: AtomValueType, value: Any):
    if value_type in (AtomValueType.INT, AtomValueType.LONG):
        # bool is an int subclass; reject it so flags are set explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            raise AtomSchemaError(f"{value_type.value} field needs an int, got {value!r}")
        low, high = (INT32_MIN, INT32_MAX) if value_type == AtomValueType.INT else (INT64_MIN, INT64_MAX)
        if not low <= value <= high:
            raise AtomSchemaError(f"{value} out of range for {value_type.value}")
    elif value_type == AtomValueType.FLOAT:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise AtomSchemaError(f"float field needs a number, got {value!r}")
    elif value_type == AtomValueType.STRING:
        if not isinstance(value, str):
            raise AtomSchemaError(f"string field needs a str, got {value!r}")


@dataclass(frozen=True)
class AtomField:
    """A named, typed slot in an atom schema."""
    name: str
    value_type: AtomValueType
    default: Any = None


@dataclass(frozen=True)
class AtomSchema:
    """Ordered field layout of one atom."""
    name: str
    fields: Tuple[AtomField, ...]

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> AtomField:
        for f in self.fields:
            if f.name == name:
                return f
        raise AtomSchemaError(f"Atom {self.name} has no field '{name}'")

    def builder(self) -> "AtomBuilder":
        return AtomBuilder(self)


@dataclass(frozen=True)
class Atom:
    """A fully resolved telemetry record ready for a sink."""
    name: str
    values: Tuple[AtomValue, ...]
    field_names: Tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)

    def as_mapping(self) -> Dict[str, Any]:
        """Field name -> raw value, in schema order."""
        return {name: v.value for name, v in zip(self.field_names, self.values)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'atom': self.name,
            'timestamp': self.timestamp,
            'fields': list(self.field_names),
            'values': [v.to_dict() for v in self.values],
        }


class AtomBuilder:
    """
    Collects named field values and serializes them in schema order.

    Example:
        atom = (ZRAM_BD_STAT.builder()
                .set('bd_count', 3).set('bd_reads', 10).set('bd_writes', 7)
                .build())
    """

    def __init__(self, schema: AtomSchema):
        self.schema = schema
        self._values: Dict[str, Any] = {}

    def set(self, name: str, value: Any) -> "AtomBuilder":
        atom_field = self.schema.get_field(name)
        _check_value(atom_field.value_type, value)
        self._values[name] = value
        return self

    def update(self, values: Dict[str, Any]) -> "AtomBuilder":
        for name, value in values.items():
            self.set(name, value)
        return self

    def build(self, timestamp: Optional[float] = None) -> Atom:
        values = []
        for atom_field in self.schema.fields:
            if atom_field.name in self._values:
                raw = self._values[atom_field.name]
            elif atom_field.default is not None:
                raw = atom_field.default
            else:
                raise AtomSchemaError(
                    f"Atom {self.schema.name} is missing field '{atom_field.name}'"
                )
            values.append(AtomValue(atom_field.value_type, raw))

        extra = {} if timestamp is None else {'timestamp': timestamp}
        return Atom(
            name=self.schema.name,
            values=tuple(values),
            field_names=tuple(self.schema.field_names()),
            **extra
        )


def _schema(name: str, *fields: Tuple) -> AtomSchema:
    return AtomSchema(name, tuple(AtomField(*f) for f in fields))


INT = AtomValueType.INT
LONG = AtomValueType.LONG
FLOAT = AtomValueType.FLOAT
STRING = AtomValueType.STRING


class HardwareType:
    """vendor_hardware_failed.hardware_type values."""
    UNKNOWN = 0
    MICROPHONE = 1
    CODEC = 2
    SPEAKER = 3
    FINGERPRINT = 4


class FailureCode:
    """vendor_hardware_failed.failure_code values."""
    UNKNOWN = 0
    COMPLETE = 1
    SPEAKER_HIGH_Z = 2
    SPEAKER_SHORT = 3
    FINGERPRINT_SENSOR_BROKEN = 4
    FINGERPRINT_TOO_MANY_DEAD_PIXELS = 5
    DEGRADE = 6


class SlowIoOperation:
    """vendor_slow_io.operation values."""
    UNKNOWN = 0
    READ = 1
    WRITE = 2
    UNMAP = 3
    SYNC = 4


class PartitionDirectory:
    """partitions_used_space_reported.directory values."""
    UNKNOWN = 0
    PERSIST = 1


CHARGE_CYCLE_BUCKETS = 10

VENDOR_CHARGE_CYCLES = _schema(
    'vendor_charge_cycles',
    *[(f'cycle_bucket_{i}', INT) for i in range(1, CHARGE_CYCLE_BUCKETS + 1)]
)

VENDOR_HARDWARE_FAILED = _schema(
    'vendor_hardware_failed',
    ('hardware_type', INT),
    ('hardware_location', INT),
    ('failure_code', INT),
)

VENDOR_SLOW_IO = _schema(
    'vendor_slow_io',
    ('operation', INT),
    ('count', INT),
)

VENDOR_SPEAKER_IMPEDANCE = _schema(
    'vendor_speaker_impedance',
    ('speaker_location', INT),
    ('impedance', INT),
)

BATTERY_CAPACITY = _schema(
    'battery_capacity',
    ('delta_cc_sum', INT),
    ('delta_vfsoc_sum', INT),
)

STORAGE_UFS_HEALTH = _schema(
    'storage_ufs_health',
    ('lifetime_a', INT),
    ('lifetime_b', INT),
    ('lifetime_c', INT),
)

STORAGE_UFS_RESET_COUNT = _schema(
    'storage_ufs_reset_count',
    ('host_reset_count', INT),
)

BLOCK_STATS_REPORTED = _schema(
    'block_stats_reported',
    ('read_io', LONG),
    ('read_sectors', LONG),
    ('read_ticks', LONG),
    ('write_io', LONG),
    ('write_sectors', LONG),
    ('write_ticks', LONG),
)

BOOT_STATS = _schema(
    'boot_stats',
    ('mounted_time_sec', INT),
    ('fsck_time_sec', INT),
    ('checkpoint_time_sec', INT),
)

ZRAM_MM_STAT = _schema(
    'zram_mm_stat',
    ('orig_data_size', LONG),
    ('compr_data_size', LONG),
    ('mem_used_total', LONG),
    ('same_pages', LONG),
    ('huge_pages', LONG),
    ('huge_pages_since_boot', LONG),
)

ZRAM_BD_STAT = _schema(
    'zram_bd_stat',
    ('bd_count', LONG),
    ('bd_reads', LONG),
    ('bd_writes', LONG),
)

MAX_RESUME_LATENCY_BUCKETS = 36

VENDOR_RESUME_LATENCY_STATS = _schema(
    'vendor_resume_latency_stats',
    ('max_latency', LONG),
    ('avg_latency', LONG),
    *[(f'resume_count_bucket_{i}', LONG, 0) for i in range(1, MAX_RESUME_LATENCY_BUCKETS + 1)]
)

LONG_IRQ_TOP_N = 5

VENDOR_LONG_IRQ_STATS_REPORTED = _schema(
    'vendor_long_irq_stats_reported',
    ('long_softirq_count', LONG),
    *[(f'top{i}_softirq_{part}', LONG) for i in range(1, LONG_IRQ_TOP_N + 1)
      for part in ('num', 'latency_us')],
    ('long_irq_count', LONG),
    *[(f'top{i}_irq_{part}', LONG) for i in range(1, LONG_IRQ_TOP_N + 1)
      for part in ('num', 'latency_us')],
    *[(f'storm_irq_top{i}_{part}', LONG) for i in range(1, LONG_IRQ_TOP_N + 1)
      for part in ('num', 'count')],
)

PARTITIONS_USED_SPACE_REPORTED = _schema(
    'partitions_used_space_reported',
    ('directory', INT),
    ('free_bytes', LONG),
    ('total_bytes', LONG),
)

VM_STAT_HOURLY = _schema(
    'vm_stat_hourly',
    ('counter', STRING),
    ('delta', LONG),
    ('windows', INT),
)

VENDOR_USB_PORT_OVERHEAT = _schema(
    'vendor_usb_port_overheat',
    ('plug_temperature_deci_c', INT),
    ('max_temperature_deci_c', INT),
    ('time_to_overheat_secs', INT),
    ('time_to_hysteresis_secs', INT),
    ('time_to_inactive_secs', INT),
)

PD_VID_PID = _schema(
    'pd_vid_pid',
    ('vid', INT),
    ('pid', INT),
)

GPU_EVENT = _schema(
    'gpu_event',
    ('gpu_event_type', INT),
    ('gpu_event_info', INT),
)

THERMAL_SENSOR_ABNORMALITY_DETECTED = _schema(
    'thermal_sensor_abnormality_detected',
    ('type', INT),
    ('sensor', STRING),
    ('temp', INT),
)

SCHEMAS: Dict[str, AtomSchema] = {
    s.name: s for s in (
        VENDOR_CHARGE_CYCLES,
        VENDOR_HARDWARE_FAILED,
        VENDOR_SLOW_IO,
        VENDOR_SPEAKER_IMPEDANCE,
        BATTERY_CAPACITY,
        STORAGE_UFS_HEALTH,
        STORAGE_UFS_RESET_COUNT,
        ZRAM_MM_STAT,
        ZRAM_BD_STAT,
        BLOCK_STATS_REPORTED,
        BOOT_STATS,
        VENDOR_RESUME_LATENCY_STATS,
        VENDOR_LONG_IRQ_STATS_REPORTED,
        PARTITIONS_USED_SPACE_REPORTED,
        VM_STAT_HOURLY,
        VENDOR_USB_PORT_OVERHEAT,
        PD_VID_PID,
        GPU_EVENT,
        THERMAL_SENSOR_ABNORMALITY_DETECTED,
    )
}


def get_schema(name: str) -> AtomSchema:
    """Look up a schema from the catalog by name."""
    try:
        return SCHEMAS[name]
    except KeyError:
        raise AtomSchemaError(f"Unknown atom schema: {name}") from None
