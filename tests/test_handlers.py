#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Tests for uevent domain handlers.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vendorstats.atoms import FailureCode, HardwareType
from vendorstats.config import UeventPaths
from vendorstats.sinks import ReportSink
from vendorstats.uevent import EventDispatcher, UeventHandlers, parse_uevent


class CollectingSink(ReportSink):
    name = "collect"

    def __init__(self):
        super().__init__()
        self.atoms = []

    def _report(self, atom):
        self.atoms.append(atom)
        return True


def uevent(*tokens):
    return parse_uevent("\0".join(tokens).encode() + b"\0\0")


class HandlerTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.sink = CollectingSink()

    def tearDown(self):
        self.temp_dir.cleanup()

    def write(self, name, content):
        path = self.root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return str(path)

    def make_handlers(self, **paths):
        handlers = UeventHandlers(self.sink, UeventPaths(**paths))
        dispatcher = EventDispatcher()
        handlers.register(dispatcher)
        return handlers, dispatcher

    def reported(self):
        return [(a.name, a.as_mapping()) for a in self.sink.atoms]


class TestMicStatus(HandlerTestCase):
    """Test microphone break/degrade reporting"""

    def setUp(self):
        super().setUp()
        self.handlers, self.dispatcher = self.make_handlers(audio_uevent='/devices/platform/audiometrics')

    def test_true_reports_mic_zero(self):
        self.dispatcher.dispatch(uevent('DEVPATH=/devices/platform/audiometrics', 'MIC_BREAK_STATUS=true'))
        self.assertEqual(self.reported(), [('vendor_hardware_failed', {
            'hardware_type': HardwareType.MICROPHONE,
            'hardware_location': 0,
            'failure_code': FailureCode.COMPLETE,
        })])

    def test_mask_reports_each_bit(self):
        self.dispatcher.dispatch(uevent('DEVPATH=/devices/platform/audiometrics', 'MIC_DEGRADE_STATUS=5'))
        locations = [m['hardware_location'] for _, m in self.reported()]
        codes = {m['failure_code'] for _, m in self.reported()}
        self.assertEqual(locations, [0, 2])
        self.assertEqual(codes, {FailureCode.DEGRADE})

    def test_zero_is_healthy(self):
        self.dispatcher.dispatch(uevent('DEVPATH=/devices/platform/audiometrics', 'MIC_BREAK_STATUS=0'))
        self.assertEqual(self.sink.atoms, [])

    def test_out_of_range_dropped(self):
        with self.assertLogs('vendorstats.uevent.handlers', level='ERROR'):
            self.dispatcher.dispatch(uevent('DEVPATH=/devices/platform/audiometrics', 'MIC_BREAK_STATUS=9'))
        self.assertEqual(self.sink.atoms, [])

    def test_other_devpath_ignored(self):
        self.dispatcher.dispatch(uevent('DEVPATH=/devices/platform/audiometrics2', 'MIC_BREAK_STATUS=true'))
        self.assertEqual(self.sink.atoms, [])

    def test_not_registered_without_devpath(self):
        _, dispatcher = self.make_handlers()
        self.assertNotIn('mic_status', [r.label for r in dispatcher.rules])


class TestUsbPortOverheat(HandlerTestCase):
    """Test overheat mitigation reporting"""

    def test_reads_overheat_files(self):
        self.write('overheat/plug_temp', '650\n')
        self.write('overheat/max_temp', '700\n')
        self.write('overheat/trip_time', '12\n')
        self.write('overheat/hysteresis_time', '30\n')
        self.write('overheat/cleared_time', '45\n')
        _, dispatcher = self.make_handlers(overheat_path=str(self.root / 'overheat'))

        dispatcher.dispatch(uevent('DRIVER=google,overheat_mitigation'))

        self.assertEqual(self.reported(), [('vendor_usb_port_overheat', {
            'plug_temperature_deci_c': 650,
            'max_temperature_deci_c': 700,
            'time_to_overheat_secs': 12,
            'time_to_hysteresis_secs': 30,
            'time_to_inactive_secs': 45,
        })])

    def test_missing_file_reported_as_zero(self):
        self.write('overheat/plug_temp', '650\n')
        _, dispatcher = self.make_handlers(overheat_path=str(self.root / 'overheat'))

        with self.assertLogs('vendorstats.uevent.handlers', level='ERROR'):
            dispatcher.dispatch(uevent('DRIVER=google,overheat_mitigation'))

        mapping = self.reported()[0][1]
        self.assertEqual(mapping['plug_temperature_deci_c'], 650)
        self.assertEqual(mapping['time_to_inactive_secs'], 0)


class TestTypecPartner(HandlerTestCase):
    """Test Type-C partner VID/PID reporting"""

    def make(self, id_header, product):
        vid_path = self.write('partner/id_header', id_header)
        pid_path = self.write('partner/product', product)
        return self.make_handlers(typec_partner_vid_path=vid_path, typec_partner_pid_path=pid_path)

    def test_google_charger_reported(self):
        # Product type 3 (charger) in bits 23..25, Google VID
        _, dispatcher = self.make(hex((3 << 23) | 0x18d1) + '\n', '0x4f100000\n')
        dispatcher.dispatch(uevent('DEVTYPE=typec_partner'))
        self.assertEqual(self.reported(), [('pd_vid_pid', {'vid': 0x18d1, 'pid': 0x4f10})])

    def test_p30_reported_without_charger_type(self):
        _, dispatcher = self.make('0x18d1\n', '0x4f050000\n')
        dispatcher.dispatch(uevent('DEVTYPE=typec_partner'))
        self.assertEqual(self.reported(), [('pd_vid_pid', {'vid': 0x18d1, 'pid': 0x4f05})])

    def test_other_vendor_ignored(self):
        _, dispatcher = self.make(hex((3 << 23) | 0x05ac) + '\n', '0x12340000\n')
        dispatcher.dispatch(uevent('DEVTYPE=typec_partner'))
        self.assertEqual(self.sink.atoms, [])

    def test_non_charger_ignored(self):
        _, dispatcher = self.make('0x18d1\n', '0x4f100000\n')
        dispatcher.dispatch(uevent('DEVTYPE=typec_partner'))
        self.assertEqual(self.sink.atoms, [])

    def test_unparsable_vid(self):
        _, dispatcher = self.make('garbage\n', '0x4f050000\n')
        with self.assertLogs('vendorstats.uevent.handlers', level='ERROR'):
            dispatcher.dispatch(uevent('DEVTYPE=typec_partner'))
        self.assertEqual(self.sink.atoms, [])


class TestGpuEvent(HandlerTestCase):
    """Test GPU event reporting"""

    def setUp(self):
        super().setUp()
        _, self.dispatcher = self.make_handlers()

    def test_known_event(self):
        self.dispatcher.dispatch(uevent('DRIVER=mali', 'GPU_UEVENT_TYPE=GPU_RESET',
                                        'GPU_UEVENT_INFO=CSF_RESET_OK'))
        self.assertEqual(self.reported(), [('gpu_event', {'gpu_event_type': 2, 'gpu_event_info': 14})])

    def test_unknown_info_dropped(self):
        self.dispatcher.dispatch(uevent('DRIVER=mali', 'GPU_UEVENT_TYPE=KMD_ERROR',
                                        'GPU_UEVENT_INFO=NOT_A_THING'))
        self.assertEqual(self.sink.atoms, [])

    def test_missing_tokens(self):
        self.dispatcher.dispatch(uevent('DRIVER=mali'))
        self.assertEqual(self.sink.atoms, [])


class TestThermalAbnormal(HandlerTestCase):
    """Test thermal sensor abnormality reporting"""

    def setUp(self):
        super().setUp()
        _, self.dispatcher = self.make_handlers()

    def dispatch(self, abnormal_type, info):
        self.dispatcher.dispatch(uevent('DEVPATH=/module/pixel_metrics',
                                        f'THERMAL_ABNORMAL_TYPE={abnormal_type}',
                                        f'THERMAL_ABNORMAL_INFO={info}'))

    def test_reported(self):
        self.dispatch('EXTREME_HIGH_TEMP', 'name:battery,val:1250')
        self.assertEqual(self.reported(), [('thermal_sensor_abnormality_detected', {
            'type': 2, 'sensor': 'battery', 'temp': 1250,
        })])

    def test_unknown_type(self):
        with self.assertLogs('vendorstats.uevent.handlers', level='ERROR'):
            self.dispatch('MELTDOWN', 'name:battery,val:1250')
        self.assertEqual(self.sink.atoms, [])

    def test_bad_prefix(self):
        with self.assertLogs('vendorstats.uevent.handlers', level='ERROR'):
            self.dispatch('SENSOR_STUCK', 'sensor:battery,val:1250')
        self.assertEqual(self.sink.atoms, [])

    def test_name_too_long(self):
        with self.assertLogs('vendorstats.uevent.handlers', level='ERROR'):
            self.dispatch('SENSOR_STUCK', 'name:' + 'x' * 21 + ',val:10')
        self.assertEqual(self.sink.atoms, [])

    def test_bad_value(self):
        with self.assertLogs('vendorstats.uevent.handlers', level='ERROR'):
            self.dispatch('SENSOR_STUCK', 'name:battery,val:hot')
        self.assertEqual(self.sink.atoms, [])


if __name__ == '__main__':
    unittest.main()
