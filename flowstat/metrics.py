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

"""Flow metrics registry

Process-wide prometheus_client registry shared by every interface collector.
Series are keyed by the flow label set, for example:

flowstat_network_bytes_total{src_ip="10.0.0.1",dst_ip="10.0.0.2",src_port="40000",dst_port="4791",protocol="254",traffic_type="RoCE_v2",interface="ib0",host_ip="10.0.0.1",collect_agg="rack1"} 5000.0
flowstat_network_flow_bits_rate{...} 8000.0
flowstat_network_nic_bytes_rate{interface="ib0",src_ip="10.0.0.1",dst_ip="10.0.0.2",protocol="254",...} 1000.0

Counters accumulate interval deltas. Gauges carry the latest tick and are
cleared after every aggregated push so flows that disappear stop reporting.
prometheus_client metrics lock internally, so collectors update them from their
own threads without further synchronization.
"""

import configparser
import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, disable_created_metrics

from flowstat.flow import FlowKey, FlowStats, NICRates, ip_to_str
from flowstat.poller import HOOK_TC
from flowstat.utils import getVersion

FLOW_LABELS = [
    "src_ip",
    "dst_ip",
    "src_port",
    "dst_port",
    "protocol",
    "traffic_type",
    "interface",
    "host_ip",
    "collect_agg",
]

NIC_LABELS = ["interface", "src_ip", "dst_ip", "protocol", "traffic_type", "host_ip", "collect_agg"]


class FlowMetrics:
    def __init__(self, config: configparser.ConfigParser, hook_kind: str, registry=None):
        """Initialize the flow metrics registry.

        Args:
            config (configparser.ConfigParser): Cached copy of runtime configuration.
            hook_kind (str): Hook in use; traffic-control hooks add a direction label.
            registry (CollectorRegistry, optional): Registry to populate (a private one by default).
        """
        logging.debug("Initializing flow metrics registry")

        self.__prefix = "flowstat_network_"
        self.__collect_agg = config["flowstat.export"].get("collect_agg", "")
        self.__mode = config["flowstat"].get("mode", "xdp")
        self.__interval_ms = config["flowstat"].get("interval_ms", "")
        self.__hook_kind = hook_kind

        self.__direction = None
        if hook_kind == HOOK_TC:
            self.__direction = config["flowstat"].get("direction", "ingress")

        self.registry = registry if registry is not None else CollectorRegistry()
        self.__counters = {}
        self.__gauges = {}

    @property
    def flow_labels(self):
        if self.__direction is None:
            return list(FLOW_LABELS)
        return FLOW_LABELS + ["direction"]

    def registerMetrics(self):
        """Register metrics of interest"""

        # one exported series per sample
        disable_created_metrics()

        # fmt: off
        counters = [
            {"metricName": "bytes",   "description": "Total network traffic in bytes"},
            {"metricName": "packets", "description": "Total network packets"},
        ]
        gauges = [
            {"metricName": "flow_bytes_rate",   "description": "Network flow rate in bytes per second",             "labels": self.flow_labels},
            {"metricName": "flow_bits_rate",    "description": "Network flow rate in bits per second",              "labels": self.flow_labels},
            {"metricName": "flow_bytes",        "description": "Cumulative flow bytes reported by the kernel table",   "labels": self.flow_labels},
            {"metricName": "flow_packets",      "description": "Cumulative flow packets reported by the kernel table", "labels": self.flow_labels},
            {"metricName": "nic_bytes_rate",    "description": "Per address pair rate in bytes per second",         "labels": NIC_LABELS},
            {"metricName": "nic_bits_rate",     "description": "Per address pair rate in bits per second",          "labels": NIC_LABELS},
        ]
        # fmt: on

        for item in counters:
            metric = self.__prefix + item["metricName"]
            self.__counters[item["metricName"]] = Counter(
                metric, item["description"], labelnames=self.flow_labels, registry=self.registry
            )
            logging.info("--> [registered] %s_total (counter)" % metric)

        for item in gauges:
            metric = self.__prefix + item["metricName"]
            self.__gauges[item["metricName"]] = Gauge(
                metric, item["description"], labelnames=item["labels"], registry=self.registry
            )
            logging.info("--> [registered] %s (gauge)" % metric)

        self.__info = Gauge(
            "flowstat_info",
            "Info metric",
            labelnames=["version", "mode", "hook", "interval_ms", "collect_agg"],
            registry=self.registry,
        )
        self.__info.labels(
            version=getVersion(),
            mode=self.__mode,
            hook=self.__hook_kind,
            interval_ms=self.__interval_ms,
            collect_agg=self.__collect_agg,
        ).set(1)

    def __labels(self, key: FlowKey, traffic_type: str, interface: str, host_ip: str):
        src_port, dst_port = key.ports
        labels = {
            "src_ip": ip_to_str(key.src_ip),
            "dst_ip": ip_to_str(key.dst_ip),
            "src_port": str(src_port),
            "dst_port": str(dst_port),
            "protocol": str(key.proto),
            "traffic_type": traffic_type,
            "interface": interface,
            "host_ip": host_ip,
            "collect_agg": self.__collect_agg,
        }
        if self.__direction is not None:
            labels["direction"] = self.__direction
        return labels

    def update_flow(
        self,
        key: FlowKey,
        stats: FlowStats,
        traffic_type: str,
        delta_packets: int,
        delta_bytes: int,
        bytes_per_sec: float,
        bits_per_sec: float,
        interface: str,
        host_ip: str,
    ):
        labels = self.__labels(key, traffic_type, interface, host_ip)

        self.__gauges["flow_bytes_rate"].labels(**labels).set(bytes_per_sec)
        self.__gauges["flow_bits_rate"].labels(**labels).set(bits_per_sec)
        self.__gauges["flow_bytes"].labels(**labels).set(stats.bytes)
        self.__gauges["flow_packets"].labels(**labels).set(stats.packets)

        self.__counters["bytes"].labels(**labels).inc(delta_bytes)
        self.__counters["packets"].labels(**labels).inc(delta_packets)

    def update_nic(self, rates: NICRates, interface: str, host_ip: str):
        for nic_key, (bytes_per_sec, bits_per_sec, traffic_type) in rates.items():
            labels = {
                "interface": interface,
                "src_ip": ip_to_str(nic_key.src_ip),
                "dst_ip": ip_to_str(nic_key.dst_ip),
                "protocol": str(nic_key.proto),
                "traffic_type": traffic_type,
                "host_ip": host_ip,
                "collect_agg": self.__collect_agg,
            }
            self.__gauges["nic_bytes_rate"].labels(**labels).set(bytes_per_sec)
            self.__gauges["nic_bits_rate"].labels(**labels).set(bits_per_sec)

    def gather(self):
        """Return the current metric families."""
        return list(self.registry.collect())

    def reset_rates(self):
        """Drop every per-tick gauge series; counters keep accumulating."""
        for gauge in self.__gauges.values():
            gauge.clear()
