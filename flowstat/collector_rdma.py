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

"""RDMA device monitoring

Implements prometheus gauges for an RDMA device and its companion network
interface, read from /sys/class/infiniband and /proc/net/dev. Example metrics:

flowstat_rdma_port_rcv_bytes{device="mlx5_0",port="1"} 1.2884901888e+010
flowstat_rdma_port_state_info{device="mlx5_0",port="1",state="ACTIVE",rate="200 Gb/sec (4X HDR)"} 1.0
flowstat_rdma_interface_rx_bytes{interface="ibs8f0"} 5.36870912e+08
flowstat_rdma_interface_bandwidth_bytes_per_second{interface="ibs8f0"} 1.048576e+06
"""

import configparser
import logging
import shutil
import subprocess
import time
from pathlib import Path

from prometheus_client import REGISTRY, Gauge

# fmt: off
PORT_COUNTERS = [
    {"file": "port_rcv_data",     "metricName": "port_rcv_bytes",     "scale": 4, "description": "RDMA port received (bytes)"},
    {"file": "port_xmit_data",    "metricName": "port_xmit_bytes",    "scale": 4, "description": "RDMA port transmitted (bytes)"},
    {"file": "port_rcv_packets",  "metricName": "port_rcv_packets",   "scale": 1, "description": "RDMA port received (packets)"},
    {"file": "port_xmit_packets", "metricName": "port_xmit_packets",  "scale": 1, "description": "RDMA port transmitted (packets)"},
]

# field positions after the "iface:" token in /proc/net/dev
INTERFACE_COUNTERS = [
    {"field": 0,  "metricName": "interface_rx_bytes",   "description": "Interface received (bytes)"},
    {"field": 1,  "metricName": "interface_rx_packets", "description": "Interface received (packets)"},
    {"field": 2,  "metricName": "interface_rx_errors",  "description": "Interface receive errors"},
    {"field": 8,  "metricName": "interface_tx_bytes",   "description": "Interface transmitted (bytes)"},
    {"field": 9,  "metricName": "interface_tx_packets", "description": "Interface transmitted (packets)"},
    {"field": 10, "metricName": "interface_tx_errors",  "description": "Interface transmit errors"},
]
# fmt: on


def safe_delta(current: int, previous: int) -> int:
    # Treat counter resets as a delta of 0 for derived metrics.
    delta = current - previous
    return delta if delta >= 0 else 0


def parse_ibstat(output: str):
    """Extract port state and rate from `ibstat <device>` output."""
    info = {}
    for line in output.splitlines():
        line = line.strip()
        if ":" not in line:
            continue
        name, value = [x.strip() for x in line.split(":", 1)]
        if name == "State":
            info["state"] = value
        elif name == "Rate":
            info["rate"] = value
    return info


class RDMADevice:
    def __init__(
        self,
        config: configparser.ConfigParser,
        device: str,
        interface: str,
        registry=None,
        ib_base_path="/sys/class/infiniband",
        net_dev_path="/proc/net/dev",
    ):
        """Initialize the RDMA device collector.

        Args:
            config (configparser.ConfigParser): Cached copy of runtime configuration.
            device (str): RDMA device name (e.g. mlx5_0).
            interface (str): Network interface carrying the device traffic.
            registry (CollectorRegistry, optional): Registry for the gauges (default global registry).
        """
        logging.debug("Initializing RDMA data collector")

        self.__prefix = "flowstat_rdma_"
        self.__device = device
        self.__interface = interface
        self.__registry = registry if registry is not None else REGISTRY
        self.__ib_base_path = Path(ib_base_path)
        self.__net_dev_path = Path(net_dev_path)

        # Port counter files indexed by port and counter, e.g.
        #   {"1": {"port_rcv_data": "/sys/class/infiniband/mlx5_0/ports/1/counters/port_rcv_data"}}
        self.__port_paths = {}
        self.__metrics = {}

        self.__values = {}
        self.__prev_values = {}
        self.__port_info = {}
        self.__bandwidth = None
        self.__prev_ts = None
        self.__start = time.monotonic()

    def registerMetrics(self):
        """Register metrics of interest"""

        ports_dir = self.__ib_base_path / self.__device / "ports"
        if ports_dir.is_dir():
            for port in sorted(ports_dir.iterdir()):
                for item in PORT_COUNTERS:
                    path = port / "counters" / item["file"]
                    if path.is_file():
                        self.__port_paths.setdefault(port.name, {})[item["file"]] = path
        else:
            logging.warning("RDMA device %s not found under %s" % (self.__device, self.__ib_base_path))

        for item in PORT_COUNTERS:
            metric = self.__prefix + item["metricName"]
            self.__metrics[item["metricName"]] = Gauge(
                metric, item["description"], labelnames=["device", "port"], registry=self.__registry
            )
            logging.info("--> [registered] %s (gauge)" % metric)

        metric = self.__prefix + "port_state_info"
        self.__metrics["port_state_info"] = Gauge(
            metric, "RDMA port state", labelnames=["device", "port", "state", "rate"], registry=self.__registry
        )
        logging.info("--> [registered] %s (gauge)" % metric)

        for item in INTERFACE_COUNTERS:
            metric = self.__prefix + item["metricName"]
            self.__metrics[item["metricName"]] = Gauge(
                metric, item["description"], labelnames=["interface"], registry=self.__registry
            )
            logging.info("--> [registered] %s (gauge)" % metric)

        metric = self.__prefix + "interface_bandwidth_bytes_per_second"
        self.__metrics["interface_bandwidth"] = Gauge(
            metric, "Interface rx+tx bandwidth (bytes/s)", labelnames=["interface"], registry=self.__registry
        )
        logging.info("--> [registered] %s (gauge)" % metric)

    def read_port_info(self, port: str):
        """Return {"state": ..., "rate": ...} for a port from sysfs, or ibstat as a fallback."""
        port_dir = self.__ib_base_path / self.__device / "ports" / port
        info = {}
        try:
            # e.g. "4: ACTIVE" and "200 Gb/sec (4X HDR)"
            info["state"] = (port_dir / "state").read_text().strip().split(":", 1)[-1].strip()
            info["rate"] = (port_dir / "rate").read_text().strip()
            return info
        except OSError:
            pass

        if shutil.which("ibstat") is None:
            return info
        try:
            result = subprocess.run(
                ["ibstat", self.__device, port], capture_output=True, text=True, timeout=5, check=True
            )
            info = parse_ibstat(result.stdout)
        except (subprocess.SubprocessError, OSError) as e:
            logging.debug("RDMA: ibstat %s failed: %s" % (self.__device, e))
        return info

    def read_interface_stats(self):
        """Read byte/packet/error counters for the interface from /proc/net/dev."""
        stats = {}
        try:
            with open(self.__net_dev_path, "r") as f:
                for line in f:
                    if ":" not in line:
                        continue
                    name, data = line.split(":", 1)
                    if name.strip() != self.__interface:
                        continue
                    fields = data.split()
                    for item in INTERFACE_COUNTERS:
                        if item["field"] < len(fields):
                            stats[item["metricName"]] = int(fields[item["field"]])
                    break
        except OSError as e:
            logging.warning("Failed reading %s: %s" % (self.__net_dev_path, e))
        return stats

    def updateMetrics(self):
        """Update registered metrics of interest"""

        values = {}
        for port, paths in self.__port_paths.items():
            for item in PORT_COUNTERS:
                path = paths.get(item["file"])
                if path is None:
                    continue
                try:
                    # data counters are reported as octets divided by 4
                    value = int(path.read_text().strip()) * item["scale"]
                except (OSError, ValueError) as e:
                    logging.debug("RDMA: failed reading %s: %s" % (path, e))
                    continue
                values[(port, item["metricName"])] = value
                self.__metrics[item["metricName"]].labels(device=self.__device, port=port).set(value)

        self.__metrics["port_state_info"].clear()
        for port in self.__port_paths or {"1": None}:
            info = self.read_port_info(port)
            if info:
                self.__port_info[port] = info
                self.__metrics["port_state_info"].labels(
                    device=self.__device, port=port, state=info.get("state", ""), rate=info.get("rate", "")
                ).set(1)

        interface_stats = self.read_interface_stats()
        for name, value in interface_stats.items():
            values[name] = value
            self.__metrics[name].labels(interface=self.__interface).set(value)

        now = time.monotonic()
        if self.__prev_ts is not None and "interface_rx_bytes" in self.__values:
            dt = now - self.__prev_ts
            delta = safe_delta(values.get("interface_rx_bytes", 0), self.__values["interface_rx_bytes"])
            delta += safe_delta(values.get("interface_tx_bytes", 0), self.__values.get("interface_tx_bytes", 0))
            self.__bandwidth = delta / dt if dt > 0 else 0.0
            self.__metrics["interface_bandwidth"].labels(interface=self.__interface).set(self.__bandwidth)

        self.__prev_values = self.__values
        self.__values = values
        self.__prev_ts = now
        return

    def delta(self, name):
        if name not in self.__values or name not in self.__prev_values:
            return None
        return safe_delta(self.__values[name], self.__prev_values[name])

    def report(self):
        """Log a human-readable summary of the latest sample."""
        logging.info("=== RDMA statistics ===")
        logging.info("device: %s  interface: %s  uptime: %.2fs" % (self.__device, self.__interface, time.monotonic() - self.__start))
        for port, info in sorted(self.__port_info.items()):
            logging.info("  port %s: state=%s rate=%s" % (port, info.get("state", "?"), info.get("rate", "?")))
        logging.info(
            "  tx: %d bytes, %d packets, %d errors"
            % (
                self.__values.get("interface_tx_bytes", 0),
                self.__values.get("interface_tx_packets", 0),
                self.__values.get("interface_tx_errors", 0),
            )
        )
        logging.info(
            "  rx: %d bytes, %d packets, %d errors"
            % (
                self.__values.get("interface_rx_bytes", 0),
                self.__values.get("interface_rx_packets", 0),
                self.__values.get("interface_rx_errors", 0),
            )
        )
        if self.__bandwidth is not None:
            logging.info(
                "  delta: tx %s bytes, rx %s bytes, bandwidth %.2f MB/s"
                % (self.delta("interface_tx_bytes"), self.delta("interface_rx_bytes"), self.__bandwidth / (1024 * 1024))
            )
