#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Vendor Stats Package.

This package collects vendor hardware/kernel metrics from kernel uevents
and sysfs files and reports them as typed atoms.
"""

__version__ = "0.1.0"
__all__ = [
    "Atom",
    "AtomSchema",
    "get_schema",
    "AtomStore",
    "DeltaStateTracker",
    "CadenceScheduler",
    "ReportSink",
    "SysfsCollector",
    "DaemonConfig",
    "load_config",
]

from .atoms import Atom, AtomSchema, get_schema
from .atom_store import AtomStore
from .delta_tracker import DeltaStateTracker
from .scheduler import CadenceScheduler
from .sinks import ReportSink
from .sysfs_collector import SysfsCollector
from .config import DaemonConfig, load_config
