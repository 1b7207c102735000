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

"""Per-interface flow collection

One InterfaceCollector runs per monitored interface on its own thread. Every
interval it polls the interface's flow table, turns cumulative counters into
deltas and rates, updates the shared metrics registry and prints one console
line per active flow:

[eth0] 10.0.0.1:40000 -> 10.0.0.2:80 proto=6 [TCP] packets=50 bytes=5000 (0.00 MB/s, 0.01 Mbps) host_ip=10.0.0.1

Lifecycle: attaching -> running -> draining -> stopped. The flow table handle is
released while draining, after the tick in progress (if any) completes.
"""

import configparser
import logging
import queue
import threading
import time

from flowstat.classifier import classify, display_label, is_excluded_dns, should_display
from flowstat.flow import FlowTracker, NICRates, calculate_rates, ip_to_str
from flowstat.poller import PollError

STATE_ATTACHING = "attaching"
STATE_RUNNING = "running"
STATE_DRAINING = "draining"
STATE_STOPPED = "stopped"

# bounded wait for a completion signal that did not fit in the queue
SIGNAL_TIMEOUT_SECS = 1.0


def format_flow(interface, key, traffic_type, delta_packets, delta_bytes, bytes_per_sec, bits_per_sec, host_ip):
    src_port, dst_port = key.ports
    return "[%s] %s:%d -> %s:%d proto=%d %s packets=%d bytes=%d (%.2f MB/s, %.2f Mbps) host_ip=%s" % (
        interface,
        ip_to_str(key.src_ip),
        src_port,
        ip_to_str(key.dst_ip),
        dst_port,
        key.proto,
        display_label(traffic_type),
        delta_packets,
        delta_bytes,
        bytes_per_sec / 1024 / 1024,
        bits_per_sec / 1_000_000,
        host_ip,
    )


class InterfaceCollector:
    def __init__(
        self,
        config: configparser.ConfigParser,
        interface: str,
        handle,
        stop_event: threading.Event,
        metrics=None,
        done_queue: queue.Queue = None,
        host_ip: str = "",
        clock=time.monotonic,
    ):
        """Initialize the collector for a single interface.

        Args:
            config (configparser.ConfigParser): Cached copy of runtime configuration.
            interface (str): Interface name used in labels and console output.
            handle: Attached flow table handle (see flowstat.poller); released on stop.
            stop_event (threading.Event): Process-wide cancellation signal.
            metrics (FlowMetrics, optional): Shared registry; None disables export updates.
            done_queue (queue.Queue, optional): Receives one completion signal per tick.
            host_ip (str): Value of the host_ip label.
            clock (callable): Monotonic clock in seconds.
        """
        settings = config["flowstat"]

        self.interface = interface
        self.state = STATE_ATTACHING

        self.__handle = handle
        self.__stop = stop_event
        self.__metrics = metrics
        self.__done = done_queue
        self.__host_ip = host_ip
        self.__clock = clock

        self.__filter = settings.get("filter", "")
        self.__exclude_dns = settings.getboolean("exclude_dns", False)
        self.__console = settings.getboolean("console", True)
        self.__interval_secs = settings.getint("interval_ms", 5000) / 1000.0

        self.__tracker = FlowTracker()
        self.__last_collect = self.__clock()

    @property
    def tracker(self):
        return self.__tracker

    def run(self):
        """Collect on a fixed period until the stop event is set, then release the handle."""
        self.state = STATE_RUNNING
        self.__last_collect = self.__clock()
        next_tick = self.__last_collect + self.__interval_secs

        try:
            while not self.__stop.is_set():
                if self.__stop.wait(max(0.0, next_tick - self.__clock())):
                    break
                self.tick()
                next_tick += self.__interval_secs
                now = self.__clock()
                if next_tick < now:
                    # slow tick: drop the missed periods
                    next_tick = now + self.__interval_secs
            logging.info("[%s] stop requested, shutting down collection" % self.interface)
        finally:
            self.state = STATE_DRAINING
            self.__handle.release()
            self.state = STATE_STOPPED
            logging.info("[%s] collection stopped" % self.interface)

    def tick(self):
        """Poll the flow table once and publish the results."""
        now = self.__clock()
        interval_secs = now - self.__last_collect
        self.__last_collect = now

        active = set()
        nic_rates = NICRates()
        complete = True

        try:
            for key, stats in self.__handle.poll():
                active.add(key)
                self.__process(key, stats, interval_secs, nic_rates)
        except PollError as e:
            logging.warning("[%s] iteration error, using partial results: %s" % (self.interface, e))
            complete = False

        if self.__metrics is not None:
            self.__metrics.update_nic(nic_rates, self.interface, self.__host_ip)

        # an interrupted poll says nothing about the keys it did not reach
        if complete:
            pruned = self.__tracker.prune(active)
            if pruned:
                logging.debug("[%s] expired %d flows" % (self.interface, pruned))

        if self.__done is not None:
            self.signal_done()

    def __process(self, key, stats, interval_secs, nic_rates):
        if key.is_placeholder():
            avg_len = stats.bytes // stats.packets if stats.packets else 0
            logging.debug(
                "[%s] unparsed packets: first_u16=0x%04x pkt_len=%d avg=%d packets=%d"
                % (self.interface, key.first_u16, key.pkt_len_low, avg_len, stats.packets)
            )
            return

        if not should_display(key.proto, key.src_port, key.dst_port, self.__filter):
            return

        if self.__exclude_dns and is_excluded_dns(key.dst_ip):
            return

        delta_packets, delta_bytes = self.__tracker.update(key, stats)
        bytes_per_sec, bits_per_sec = calculate_rates(delta_bytes, interval_secs)
        traffic_type = classify(key.proto, key.src_port, key.dst_port)

        if self.__metrics is not None:
            self.__metrics.update_flow(
                key,
                stats,
                traffic_type,
                delta_packets,
                delta_bytes,
                bytes_per_sec,
                bits_per_sec,
                self.interface,
                self.__host_ip,
            )
            nic_rates.add(key, bytes_per_sec, bits_per_sec, traffic_type)

        if self.__console and delta_packets > 0:
            line = format_flow(
                self.interface,
                key,
                traffic_type,
                delta_packets,
                delta_bytes,
                bytes_per_sec,
                bits_per_sec,
                self.__host_ip,
            )
            print(line, flush=True)

    def signal_done(self):
        """Tell the aggregation task this tick finished; never blocks collection.

        Delivery is best effort: a full queue hands the signal to a short-lived
        thread that waits up to SIGNAL_TIMEOUT_SECS before dropping it.
        """
        try:
            self.__done.put_nowait(self.interface)
        except queue.Full:
            threading.Thread(
                target=self.__deliver_late,
                daemon=True,
                name=f"{self.interface} completion signal",
            ).start()

    def __deliver_late(self):
        try:
            self.__done.put(self.interface, timeout=SIGNAL_TIMEOUT_SECS)
        except queue.Full:
            logging.warning("[%s] completion signal timed out, dropping" % self.interface)
