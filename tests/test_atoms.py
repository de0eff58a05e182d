#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Unit tests for atoms and the schema catalog.
"""

import sys
import unittest
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vendorstats.atoms import (
    SCHEMAS,
    VENDOR_LONG_IRQ_STATS_REPORTED,
    VENDOR_RESUME_LATENCY_STATS,
    ZRAM_BD_STAT,
    AtomSchemaError,
    AtomValue,
    AtomValueType,
    get_schema,
)


class TestAtomValue(unittest.TestCase):
    """Test typed values"""

    def test_int_range(self):
        AtomValue.int_value(2 ** 31 - 1)
        with self.assertRaises(AtomSchemaError):
            AtomValue.int_value(2 ** 31)

    def test_long_range(self):
        AtomValue.long_value(2 ** 40)
        with self.assertRaises(AtomSchemaError):
            AtomValue.long_value(2 ** 63)

    def test_bool_rejected(self):
        with self.assertRaises(AtomSchemaError):
            AtomValue.int_value(True)

    def test_string_and_float(self):
        self.assertEqual(AtomValue.float_value(3).value, 3.0)
        self.assertEqual(AtomValue.string_value("cpu").to_dict(), {'type': 'string', 'value': 'cpu'})
        with self.assertRaises(AtomSchemaError):
            AtomValue(AtomValueType.STRING, 5)


class TestAtomBuilder(unittest.TestCase):
    """Test schema-ordered atom construction"""

    def test_values_in_schema_order(self):
        atom = (ZRAM_BD_STAT.builder()
                .set('bd_writes', 7).set('bd_count', 3).set('bd_reads', 10)
                .build(timestamp=123.0))
        self.assertEqual(atom.name, 'zram_bd_stat')
        self.assertEqual([v.value for v in atom.values], [3, 10, 7])
        self.assertEqual(atom.as_mapping(), {'bd_count': 3, 'bd_reads': 10, 'bd_writes': 7})
        self.assertEqual(atom.timestamp, 123.0)

    def test_missing_field(self):
        with self.assertRaises(AtomSchemaError):
            ZRAM_BD_STAT.builder().set('bd_count', 3).build()

    def test_unknown_field(self):
        with self.assertRaises(AtomSchemaError):
            ZRAM_BD_STAT.builder().set('bd_erases', 3)

    def test_type_mismatch(self):
        with self.assertRaises(AtomSchemaError):
            ZRAM_BD_STAT.builder().set('bd_count', "3")

    def test_defaults_fill_unset_fields(self):
        atom = (VENDOR_RESUME_LATENCY_STATS.builder()
                .set('max_latency', 100).set('avg_latency', 10)
                .set('resume_count_bucket_1', 4)
                .build())
        mapping = atom.as_mapping()
        self.assertEqual(mapping['resume_count_bucket_1'], 4)
        self.assertEqual(mapping['resume_count_bucket_36'], 0)
        self.assertEqual(len(atom.values), 38)

    def test_to_dict(self):
        atom = ZRAM_BD_STAT.builder().update({'bd_count': 1, 'bd_reads': 2, 'bd_writes': 3}).build()
        d = atom.to_dict()
        self.assertEqual(d['atom'], 'zram_bd_stat')
        self.assertEqual(d['fields'], ['bd_count', 'bd_reads', 'bd_writes'])
        self.assertEqual(d['values'][0], {'type': 'long', 'value': 1})


class TestSchemaCatalog(unittest.TestCase):
    """Test catalog lookup"""

    def test_get_schema(self):
        self.assertIs(get_schema('zram_bd_stat'), ZRAM_BD_STAT)
        with self.assertRaises(AtomSchemaError):
            get_schema('no_such_atom')

    def test_long_irq_layout(self):
        names = VENDOR_LONG_IRQ_STATS_REPORTED.field_names()
        self.assertEqual(len(names), 32)
        self.assertEqual(names[0], 'long_softirq_count')
        self.assertEqual(names[1:3], ['top1_softirq_num', 'top1_softirq_latency_us'])
        self.assertEqual(names[11], 'long_irq_count')
        self.assertEqual(names[-1], 'storm_irq_top5_count')

    def test_field_names_unique(self):
        for schema in SCHEMAS.values():
            names = schema.field_names()
            self.assertEqual(len(names), len(set(names)), schema.name)


if __name__ == '__main__':
    unittest.main()
