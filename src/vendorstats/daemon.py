#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Vendor stats daemon.

Listens for kernel uevents on a background thread and polls sysfs metrics
on fixed cadences on the main thread. Every observation is reported as an
atom to the configured sink(s).
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Callable, List, Optional

from .config import SINK_KINDS, ConfigError, DaemonConfig, SinkConfig, load_config, with_overrides
from .scheduler import CadenceScheduler, MonotonicTickTimer, TickTimerError, derive_cadences
from .sinks import HttpSink, LoggingSink, MultiSink, ReportSink, SqliteSink
from .sysfs_collector import SysfsCollector
from .uevent import EventDispatcher, UeventHandlers, UeventListener, UeventTransportError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def build_sink(sink_config: SinkConfig) -> ReportSink:
    """Create the sink (or fan-out of sinks) named by the config."""
    sinks: List[ReportSink] = []
    for kind in sink_config.kinds:
        if kind == 'log':
            sinks.append(LoggingSink())
        elif kind == 'sqlite':
            sinks.append(SqliteSink(sink_config.db_path))
        elif kind == 'http':
            sinks.append(HttpSink(sink_config.url, timeout_sec=sink_config.timeout_sec,
                                  queue_max=sink_config.queue_max))
        else:
            raise ConfigError(f"Unknown sink kind: {kind}")
    if len(sinks) == 1:
        return sinks[0]
    return MultiSink(sinks)


class VendorStatsDaemon:
    """Wires the uevent path and the cadence path to one sink."""

    def __init__(self, config: Optional[DaemonConfig] = None,
                 sink: Optional[ReportSink] = None,
                 timer: Optional[MonotonicTickTimer] = None,
                 socket_factory: Optional[Callable] = None):
        """
        Initialize daemon.

        Args:
            config: Daemon configuration (defaults when None)
            sink: Overrides the sink built from config.sink
            timer: Overrides the base-tick timer
            socket_factory: Overrides how the uevent socket is opened
        """
        self.config = config or DaemonConfig()
        self.stop_event = threading.Event()
        self.sink = sink or build_sink(self.config.sink)

        self.dispatcher = EventDispatcher()
        self.handlers = UeventHandlers(self.sink, self.config.uevent_paths)
        self.handlers.register(self.dispatcher)

        self.listener: Optional[UeventListener] = None
        if self.config.uevent.enabled:
            uevent = self.config.uevent
            self.listener = UeventListener(
                self.dispatcher,
                max_message_len=uevent.max_message_len,
                max_consecutive_errors=uevent.max_consecutive_errors,
                receive_buffer_bytes=uevent.receive_buffer_bytes,
                devel_log_path=uevent.devel_log_path or None,
                socket_factory=socket_factory,
            )

        base_tick, cadences = derive_cadences(self.config.scheduler.periods_sec)
        if timer is None:
            timer = MonotonicTickTimer(base_tick, stop_event=self.stop_event)
        self.scheduler = CadenceScheduler(base_tick, cadences, timer=timer)

        self.collector = SysfsCollector(self.sink, self.config.sysfs)
        self.collector.register(self.scheduler)

        self._listener_thread: Optional[threading.Thread] = None
        self.fatal_error: Optional[BaseException] = None

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def stop(self):
        self.stop_event.set()

    def _fail(self, error: BaseException):
        self.fatal_error = error
        self.stop_event.set()

    def _listen(self):
        try:
            self.listener.listen_forever(self.stop_event)
        except UeventTransportError as e:
            logger.critical(f"Uevent listener failed: {e}")
            self._fail(e)
        except Exception as e:
            logger.critical(f"Unexpected error in uevent listener: {e}", exc_info=True)
            self._fail(e)

    def start_listener(self):
        if self.listener is None:
            logger.info("Uevent listener disabled")
            return
        self._listener_thread = threading.Thread(target=self._listen, name="uevent-listener",
                                                 daemon=True)
        self._listener_thread.start()

    def run(self) -> int:
        """
        Run until stopped.

        Returns:
            Process exit status: 0 after a requested shutdown, non-zero
            after a fatal listener or timer error
        """
        logger.info("Vendor stats daemon started")
        logger.info(f"Sink: {', '.join(self.config.sink.kinds)}")
        self.sink.start()

        try:
            self.start_listener()

            delay = self.config.startup_delay_sec
            if delay > 0:
                logger.info(f"Waiting {delay:g}s before the first collection pass")
                if self.stop_event.wait(delay):
                    return self._exit_status()

            self.scheduler.run_forever()

        except TickTimerError as e:
            logger.critical(f"Cadence timer failed: {e}")
            self._fail(e)

        except KeyboardInterrupt:
            logger.info("Interrupted by user")

        finally:
            self._shutdown()

        return self._exit_status()

    def run_once(self) -> int:
        """Run every cadence once and exit."""
        self.sink.start()
        try:
            self.scheduler.run_initial()
        finally:
            self._shutdown()
        return EXIT_OK

    def _exit_status(self) -> int:
        return EXIT_FATAL if self.fatal_error is not None else EXIT_OK

    def _shutdown(self):
        """Stop the listener loop and the sink, then log statistics."""
        logger.info("Shutting down...")
        self.stop_event.set()
        # The listener thread is a daemon thread blocked in recv; it is not joined
        self.sink.stop()
        self._print_stats()
        logger.info("Shutdown complete")

    def _print_stats(self):
        logger.info("=== Vendor Stats Statistics ===")
        stats = self.scheduler.stats
        logger.info(f"Timer wakes: {stats['wakes']}, ticks: {stats['ticks']}, "
                    f"overshoots: {stats['overshoots']}, callback errors: {stats['callback_errors']}")
        for name, fired in stats['fired'].items():
            logger.info(f"  {name}: fired {fired} times")

        c = self.collector.stats
        logger.info(f"Metrics run: {c['runs']}, skipped: {c['skipped']}, errors: {c['errors']}")

        if self.listener is not None:
            u = self.listener.stats
            logger.info(f"Uevents: {u['messages']}, read errors: {u['read_errors']}, "
                        f"bad length: {u['bad_length']}, parse errors: {u['parse_errors']}")
        d = self.dispatcher.stats
        logger.info(f"Dispatched: {d['handled']} handled, {d['unmatched']} unmatched, "
                    f"{d['handler_errors']} handler errors")
        logger.info(f"Atoms reported: {self.sink.stats['reported']}, failed: {self.sink.stats['failed']}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Vendor stats daemon",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        '--config',
        default=None,
        help='Path to JSON config file'
    )

    parser.add_argument(
        '--db-path',
        default=None,
        help='SQLite database path for the sqlite sink'
    )

    parser.add_argument(
        '--sink',
        action='append',
        choices=SINK_KINDS,
        default=None,
        help='Report sink (repeat for several); overrides the config'
    )

    parser.add_argument(
        '--startup-delay',
        type=float,
        default=None,
        help='Seconds to wait before the first collection pass'
    )

    parser.add_argument(
        '--no-uevents',
        action='store_true',
        help='Do not listen for kernel uevents'
    )

    parser.add_argument(
        '--once',
        action='store_true',
        help='Run every cadence once and exit'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = with_overrides(
            load_config(args.config),
            sink_kinds=args.sink,
            db_path=args.db_path,
            startup_delay_sec=args.startup_delay,
            uevents_enabled=False if (args.no_uevents or args.once) else None,
        )
        daemon = VendorStatsDaemon(config)
    except ValueError as e:
        # ConfigError, or a component rejecting a configured value
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    if args.once:
        return daemon.run_once()

    daemon.install_signal_handlers()
    return daemon.run()


if __name__ == "__main__":
    sys.exit(main())
