# -------------------------------------------------------------------------------
# MIT License
#
# Copyright (c) 2023 - 2026 Advanced Micro Devices, Inc. All Rights Reserved.
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# -------------------------------------------------------------------------------

# Network flow telemetry agent.
#
# Supporting monitor class running one flow collector per interface plus an
# optional aggregation task that batches all interfaces into a single push.
# --

import configparser
import logging
import queue
import signal
import threading

import requests

from flowstat import utils
from flowstat.classifier import FILTERS
from flowstat.collector import InterfaceCollector
from flowstat.collector_rdma import RDMADevice
from flowstat.export import Exporter, PushError
from flowstat.metrics import FlowMetrics
from flowstat.poller import DIRECTIONS, HOOK_TC, HOOK_XDP, AttachError, attach, resolve_hook

MODES = ("xdp", "tc", "rdma")

MIN_INTERVAL_MS = 100
MAX_INTERVAL_MS = 3_600_000

# how often blocked waits re-check the stop event
STOP_POLL_SECS = 0.25


class Aggregator:
    """Counts per-interface completion signals and pushes once per round.

    After `expected` signals one push is made for the combined registry and the
    per-tick gauges are cleared; the count then restarts, so a late signal from
    an earlier round only counts towards the next one.
    """

    def __init__(self, expected: int, metrics: FlowMetrics, exporter: Exporter):
        self.expected = expected
        self.__metrics = metrics
        self.__exporter = exporter
        self.__count = 0
        self.pushes = 0

    def receive(self, interface=None) -> bool:
        """Account for one completion signal; returns True when it triggered a push."""
        self.__count += 1
        if self.__count < self.expected:
            return False
        self.__count = 0
        self.push()
        return True

    def push(self):
        families = self.__metrics.gather()
        try:
            self.__exporter.push(families)
        except PushError as e:
            logging.warning("Failed to push metrics: %s" % e)
        except requests.RequestException as e:
            logging.warning("Failed to send metrics to %s: %s" % (self.__exporter.url, e))
        except Exception as e:
            logging.warning("Failed to encode metrics: %s" % e)
        finally:
            self.pushes += 1
            self.__metrics.reset_rates()

    def run(self, done_queue: queue.Queue, stop_event: threading.Event):
        while not stop_event.is_set():
            try:
                interface = done_queue.get(timeout=STOP_POLL_SECS)
            except queue.Empty:
                continue
            self.receive(interface)
        logging.debug("Aggregation task stopped")


class Monitor:
    def __init__(self, config: configparser.ConfigParser, logFile=None, attach_fn=attach, exporter=None):

        self.config = config  # cache runtime configuration

        utils.setup_logging(logFile)

        self.enforce_global_runtime_constraints()

        settings = config["flowstat"]
        self.__mode = settings["mode"]
        self.__direction = settings["direction"]
        self.__interfaces = utils.split_interfaces(settings["interface"])
        self.__interval_ms = settings.getint("interval_ms")
        self.__hook_path = settings.get("hook_path") or None
        self.__attach = attach_fn

        self.__hook_kind = None
        if self.__mode != "rdma":
            self.__hook_kind = resolve_hook(HOOK_TC if self.__mode == "tc" else HOOK_XDP, self.__direction)

        self.__export = config["flowstat.export"].getboolean("enable", False)
        self.__exporter = exporter
        if self.__export and self.__exporter is None:
            self.__exporter = Exporter(
                config["flowstat.export"]["url"], config["flowstat.export"].getfloat("timeout_secs", 10.0)
            )

        self.__stop = threading.Event()
        self.__metrics = None
        self.__collectors = []
        self.__host_ip = utils.get_host_ip()

        logging.debug("Completed monitor initialization")

    @property
    def stop_event(self):
        return self.__stop

    @property
    def metrics(self):
        return self.__metrics

    @property
    def collectors(self):
        return self.__collectors

    def enforce_global_runtime_constraints(self):
        settings = self.config["flowstat"]

        if settings["mode"] not in MODES:
            utils.error("Unsupported monitor mode: %s (supported modes: %s)" % (settings["mode"], ", ".join(MODES)))

        if settings["direction"] not in DIRECTIONS:
            utils.error(
                "Unsupported direction: %s (supported: %s)" % (settings["direction"], ", ".join(DIRECTIONS))
            )

        try:
            interval_ms = settings.getint("interval_ms")
        except ValueError:
            utils.error("Collection interval must be an integer number of milliseconds")
        if not MIN_INTERVAL_MS <= interval_ms <= MAX_INTERVAL_MS:
            utils.error(
                "Collection interval %dms outside allowed range [%d, %d]" % (interval_ms, MIN_INTERVAL_MS, MAX_INTERVAL_MS)
            )

        if settings.get("filter", "") not in FILTERS:
            logging.warning("Unknown traffic filter '%s'; showing all traffic" % settings["filter"])

        if not utils.split_interfaces(settings["interface"]):
            utils.error("No network interface configured")

    def initMetrics(self):
        if not self.__export:
            return
        self.__metrics = FlowMetrics(self.config, self.__hook_kind or "none")
        logging.info("\nRegistering flow metrics (collect_agg=%s)" % self.config["flowstat.export"]["collect_agg"])
        self.__metrics.registerMetrics()

    def attachInterfaces(self, done_queue=None):
        """Attach the hook to every configured interface and build its collector.

        A single interface that fails to attach is fatal; with several
        interfaces the failing ones are skipped.
        """
        multi = len(self.__interfaces) > 1
        for interface in self.__interfaces:
            try:
                handle = self.__attach(interface, self.__hook_kind, self.__direction, self.__hook_path)
            except AttachError as e:
                if not multi:
                    utils.error("%s" % e)
                logging.warning("[%s] %s; skipping interface" % (interface, e))
                continue

            collector = InterfaceCollector(
                self.config,
                interface,
                handle,
                self.__stop,
                metrics=self.__metrics,
                done_queue=done_queue,
                host_ip=self.__host_ip,
            )
            self.__collectors.append(collector)

        if not self.__collectors:
            utils.error("Unable to attach to any of the configured interfaces: %s" % ", ".join(self.__interfaces))

    def install_signal_handlers(self):
        def handler(signum, frame):
            logging.info("Received signal %d, stopping..." % signum)
            self.__stop.set()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)

    def run(self):
        """Run until SIGINT/SIGTERM; returns after every task has finished."""
        self.install_signal_handlers()

        if self.__mode == "rdma":
            self.run_rdma()
            return

        filter_msg = ""
        if self.config["flowstat"].get("filter", "") not in ("", "all"):
            filter_msg = ", filter: %s" % self.config["flowstat"]["filter"]
        logging.info(
            "Starting %s flow monitoring on %d interface(s), host_ip: %s, interval: %dms%s"
            % (self.__hook_kind, len(self.__interfaces), self.__host_ip, self.__interval_ms, filter_msg)
        )
        logging.info("Interfaces: %s" % self.__interfaces)

        self.initMetrics()

        done_queue = None
        if self.__export:
            done_queue = queue.Queue(maxsize=len(self.__interfaces) * 2)

        self.attachInterfaces(done_queue)

        threads = []
        for collector in self.__collectors:
            thread = threading.Thread(target=self.__run_collector, args=(collector,), name=f"collector {collector.interface}")
            thread.start()
            threads.append(thread)

        if self.__export:
            aggregator = Aggregator(len(self.__collectors), self.__metrics, self.__exporter)
            thread = threading.Thread(target=aggregator.run, args=(done_queue, self.__stop), name="aggregator")
            thread.start()
            threads.append(thread)

        # join with a timeout so the main thread keeps servicing signals
        for thread in threads:
            while thread.is_alive():
                thread.join(STOP_POLL_SECS)

        logging.info("All interface monitors stopped")

    def __run_collector(self, collector):
        try:
            collector.run()
        except Exception:
            logging.exception("[%s] collector terminated unexpectedly" % collector.interface)

    def run_rdma(self):
        device = self.config["flowstat"]["device"]
        interface = self.__interfaces[0]
        logging.info("Starting RDMA monitoring, device: %s, interface: %s" % (device, interface))

        registry = None
        if self.__export:
            self.initMetrics()
            registry = self.__metrics.registry

        collector = RDMADevice(self.config, device, interface, registry=registry)
        collector.registerMetrics()

        aggregator = None
        if self.__export:
            aggregator = Aggregator(1, self.__metrics, self.__exporter)

        interval_secs = self.__interval_ms / 1000.0
        while not self.__stop.wait(interval_secs):
            collector.updateMetrics()
            collector.report()
            if aggregator is not None:
                aggregator.receive(device)

        logging.info("RDMA monitoring stopped")
