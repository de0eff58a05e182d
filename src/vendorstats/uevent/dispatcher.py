#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Uevent dispatcher.

Matches parsed uevent records against interest rules and calls the
handler of every matching rule. Handlers run independently: an exception
in one is logged and counted, and the remaining handlers still run.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .frame_parser import KeyValueRecord

logger = logging.getLogger(__name__)

UeventHandler = Callable[[KeyValueRecord, str], None]


@dataclass(frozen=True)
class InterestRule:
    """
    (key, optional value prefix, handler) triple.

    The rule matches a record that contains key and, if value_prefix is
    set, whose value for key starts with value_prefix. exact=True requires
    the whole value to equal value_prefix.
    """
    key: str
    handler: UeventHandler
    value_prefix: Optional[str] = None
    exact: bool = False
    name: str = ""

    def matches(self, record: KeyValueRecord) -> bool:
        value = record.get(self.key)
        if value is None:
            return False
        if self.value_prefix is None:
            return True
        if self.exact:
            return value == self.value_prefix
        return value.startswith(self.value_prefix)

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return getattr(self.handler, '__name__', repr(self.handler))


class EventDispatcher:
    """Fans one uevent record out to all interested handlers."""

    def __init__(self):
        self._rules: List[InterestRule] = []
        self.stats: Dict[str, int] = {
            'records': 0,
            'unmatched': 0,
            'handled': 0,
            'handler_errors': 0,
        }

    def register(self, key: str, handler: UeventHandler, value_prefix: Optional[str] = None,
                 exact: bool = False, name: str = "") -> InterestRule:
        rule = InterestRule(key=key, handler=handler, value_prefix=value_prefix,
                            exact=exact, name=name)
        self._rules.append(rule)
        logger.debug(f"Registered uevent rule {rule.label}: {key}"
                     + (f"={value_prefix}" if value_prefix is not None else ""))
        return rule

    def add_rule(self, rule: InterestRule):
        self._rules.append(rule)

    @property
    def rules(self) -> List[InterestRule]:
        return list(self._rules)

    def dispatch(self, record: KeyValueRecord) -> int:
        """
        Run every matching handler for one record.

        Args:
            record: Parsed uevent

        Returns:
            Number of handlers that completed without raising
        """
        self.stats['records'] += 1
        matched = 0
        completed = 0

        for rule in self._rules:
            if not rule.matches(record):
                continue
            matched += 1
            try:
                rule.handler(record, record.get(rule.key))
                completed += 1
            except Exception as e:
                self.stats['handler_errors'] += 1
                logger.error(f"Uevent handler {rule.label} failed: {e}", exc_info=True)

        if matched == 0:
            self.stats['unmatched'] += 1
        self.stats['handled'] += completed
        return completed
