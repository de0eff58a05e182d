#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Uevent domain handlers.

Each handler turns one kind of kernel uevent into atoms. Handlers are
registered on the dispatcher as interest rules; a malformed sub-field makes
the handler log and return without reporting.
"""

import logging
import os
from typing import Optional

from ..atoms import (
    GPU_EVENT,
    PD_VID_PID,
    THERMAL_SENSOR_ABNORMALITY_DETECTED,
    VENDOR_HARDWARE_FAILED,
    VENDOR_USB_PORT_OVERHEAT,
    FailureCode,
    HardwareType,
)
from ..config import UeventPaths
from ..metric_sources import MetricReadError, parse_hex, read_file_to_int, read_file_to_string
from ..sinks import ReportSink, report_atom
from .dispatcher import EventDispatcher
from .frame_parser import KeyValueRecord

logger = logging.getLogger(__name__)

# USB PD identity header / product VDO decoding
PRODUCT_TYPE_OFFSET = 23
PRODUCT_TYPE_MASK = 7
PRODUCT_TYPE_CHARGER = 3
VID_MASK = 0xFFFF
VID_GOOGLE = 0x18D1
PID_OFFSET = 2
PID_LENGTH = 4
PID_P30 = 0x4F05

# Linux THERMAL_NAME_LENGTH
THERMAL_NAME_LENGTH = 20
PIXEL_METRICS_DEVPATH = "/module/pixel_metrics"

MIC_STATUS_KEYS = {
    'MIC_BREAK_STATUS': FailureCode.COMPLETE,
    'MIC_DEGRADE_STATUS': FailureCode.DEGRADE,
}
MIC_COUNT = 3

GPU_EVENT_TYPES = {
    'KMD_ERROR': 1,
    'GPU_RESET': 2,
}

GPU_EVENT_INFOS = {name: i for i, name in enumerate((
    'CSG_REQ_STATUS_UPDATE',
    'CSG_SUSPEND',
    'CSG_SLOTS_SUSPEND',
    'CSG_GROUP_SUSPEND',
    'CSG_EP_CFG',
    'CSG_SLOTS_START',
    'GROUP_TERM',
    'QUEUE_START',
    'QUEUE_STOP',
    'QUEUE_STOP_ACK',
    'CSG_SLOT_READY',
    'L2_PM_TIMEOUT',
    'PM_TIMEOUT',
    'CSF_RESET_OK',
    'CSF_RESET_FAILED',
    'TILER_OOM',
    'PROGRESS_TIMER',
    'CS_ERROR',
    'FW_ERROR',
    'PMODE_EXIT_TIMEOUT',
    'PMODE_ENTRY_FAILURE',
    'GPU_PAGE_FAULT',
    'MMU_AS_ACTIVE_STUCK',
    'TRACE_BUF_INVALID_SLOT',
), start=1)}

THERMAL_ABNORMALITY_TYPES = {
    'UNKNOWN': 0,
    'SENSOR_STUCK': 1,
    'EXTREME_HIGH_TEMP': 2,
    'EXTREME_LOW_TEMP': 3,
    'HIGH_RISING_SPEED': 4,
    'TEMP_READ_FAIL': 5,
}

OVERHEAT_FILES = (
    ('plug_temperature_deci_c', 'plug_temp'),
    ('max_temperature_deci_c', 'max_temp'),
    ('time_to_overheat_secs', 'trip_time'),
    ('time_to_hysteresis_secs', 'hysteresis_time'),
    ('time_to_inactive_secs', 'cleared_time'),
)


class UeventHandlers:
    """Domain handlers for the uevents vendorstats cares about."""

    def __init__(self, sink: ReportSink, paths: Optional[UeventPaths] = None):
        self.sink = sink
        self.paths = paths or UeventPaths()

    def register(self, dispatcher: EventDispatcher):
        """Install one interest rule per handler."""
        if self.paths.audio_uevent:
            dispatcher.register('DEVPATH', self.handle_mic_status,
                                value_prefix=self.paths.audio_uevent, exact=True,
                                name='mic_status')
        dispatcher.register('DRIVER', self.handle_usb_port_overheat,
                            value_prefix='google,overheat_mitigation', exact=True,
                            name='usb_port_overheat')

        partner_key, sep, partner_value = self.paths.typec_partner_uevent.partition('=')
        if partner_key:
            dispatcher.register(partner_key, self.handle_typec_partner,
                                value_prefix=partner_value if sep else None,
                                name='typec_partner_id')

        dispatcher.register('DRIVER', self.handle_gpu_event, value_prefix='mali',
                            name='gpu_event')
        dispatcher.register('DEVPATH', self.handle_thermal_abnormal,
                            value_prefix=PIXEL_METRICS_DEVPATH, name='thermal_abnormal')

    def _report_hardware_failed(self, hardware_type: int, location: int, failure_code: int):
        atom = (VENDOR_HARDWARE_FAILED.builder()
                .set('hardware_type', hardware_type)
                .set('hardware_location', location)
                .set('failure_code', failure_code)
                .build())
        report_atom(self.sink, atom)

    def handle_mic_status(self, record: KeyValueRecord, devpath: str):
        """
        Report broken or degraded microphones.

        The status is either 'true' (mic 0) or a bitmask of failed mics.
        """
        for key, failure_code in MIC_STATUS_KEYS.items():
            status = record.get(key)
            if status is None:
                continue

            if status == 'true':
                self._report_hardware_failed(HardwareType.MICROPHONE, 0, failure_code)
                continue

            try:
                mask = int(status)
            except ValueError:
                logger.error(f"Invalid mic status {key}={status!r}")
                continue

            if mask == 0:
                continue
            if not 0 < mask < (1 << MIC_COUNT):
                logger.error(f"Invalid mic status {key}={mask}")
                continue
            for mic in range(MIC_COUNT):
                if mask & (1 << mic):
                    self._report_hardware_failed(HardwareType.MICROPHONE, mic, failure_code)

    def handle_usb_port_overheat(self, record: KeyValueRecord, driver: str):
        """Report USB port overheat mitigation details read from sysfs."""
        builder = VENDOR_USB_PORT_OVERHEAT.builder()
        for field_name, filename in OVERHEAT_FILES:
            path = os.path.join(self.paths.overheat_path, filename)
            try:
                value = read_file_to_int(path)
            except MetricReadError as e:
                logger.error(str(e))
                value = 0
            builder.set(field_name, value)
        report_atom(self.sink, builder.build())

    def handle_typec_partner(self, record: KeyValueRecord, value: str):
        """Report the VID/PID of Google chargers attached over USB-C PD."""
        try:
            vid_contents = read_file_to_string(self.paths.typec_partner_vid_path)
            pid_contents = read_file_to_string(self.paths.typec_partner_pid_path)
        except MetricReadError as e:
            logger.error(str(e))
            return

        vid = parse_hex(vid_contents)
        if vid is None:
            logger.error(f"Unable to parse vid {vid_contents.strip()!r} "
                         f"from file {self.paths.typec_partner_vid_path} to int.")
            return

        pid_field = pid_contents[PID_OFFSET:PID_OFFSET + PID_LENGTH]
        pid = parse_hex(pid_field)
        if pid is None:
            logger.error(f"Unable to parse pid {pid_field!r} "
                         f"from file {self.paths.typec_partner_pid_path} to int.")
            return

        if (vid & VID_MASK) != VID_GOOGLE:
            return
        # P30 does not set the charger product type
        if ((vid >> PRODUCT_TYPE_OFFSET) & PRODUCT_TYPE_MASK) != PRODUCT_TYPE_CHARGER and pid != PID_P30:
            return

        atom = PD_VID_PID.builder().set('vid', vid & VID_MASK).set('pid', pid).build()
        report_atom(self.sink, atom)

    def handle_gpu_event(self, record: KeyValueRecord, driver: str):
        event_type = record.get('GPU_UEVENT_TYPE')
        event_info = record.get('GPU_UEVENT_INFO')
        if event_type is None or event_info is None:
            return

        type_id = GPU_EVENT_TYPES.get(event_type)
        info_id = GPU_EVENT_INFOS.get(event_info)
        if type_id is None or info_id is None:
            logger.debug(f"Unknown GPU event {event_type}/{event_info}")
            return

        atom = GPU_EVENT.builder().set('gpu_event_type', type_id).set('gpu_event_info', info_id).build()
        report_atom(self.sink, atom)

    def handle_thermal_abnormal(self, record: KeyValueRecord, devpath: str):
        """
        Report a thermal sensor abnormality.

        Expected tokens:
            THERMAL_ABNORMAL_TYPE=<type>
            THERMAL_ABNORMAL_INFO=name:<sensor>,val:<int>
        """
        abnormal_type = record.get('THERMAL_ABNORMAL_TYPE')
        abnormal_info = record.get('THERMAL_ABNORMAL_INFO')
        if abnormal_type is None or abnormal_info is None:
            return
        logger.debug(f"Thermal Abnormal Type: {abnormal_type}, Thermal Abnormal Info: {abnormal_info}")

        type_id = THERMAL_ABNORMALITY_TYPES.get(abnormal_type)
        if type_id is None:
            logger.error(f"Unknown thermal abnormal event type {abnormal_type}")
            return

        info_list = abnormal_info.split(',')
        if len(info_list) != 2:
            logger.error(f"Thermal abnormal info({abnormal_info}) split size {len(info_list)} != 2")
            return

        name_msg, val_msg = info_list
        if not name_msg.startswith('name:') or not val_msg.startswith('val:'):
            logger.error(f"Invalid prefix for thermal abnormal info name({name_msg}), val({val_msg})")
            return

        name = name_msg[len('name:'):]
        if len(name) > THERMAL_NAME_LENGTH:
            logger.error(f"Invalid sensor name {name} with length {len(name)} > {THERMAL_NAME_LENGTH}")
            return

        try:
            val = int(val_msg[len('val:'):].strip())
        except ValueError:
            logger.error(f"Invalid value for thermal abnormal info: {val_msg}")
            return

        logger.info(f"Reporting Thermal Abnormal event of type: {abnormal_type}({type_id}) "
                    f"for {name} with val: {val}")
        atom = (THERMAL_SENSOR_ABNORMALITY_DETECTED.builder()
                .set('type', type_id).set('sensor', name).set('temp', val)
                .build())
        report_atom(self.sink, atom)
