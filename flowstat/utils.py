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

"""Supporting utilities: runtime configuration, logging and host/interface lookups."""

import configparser
import logging
import os
import platform
import socket
import sys

from pyroute2 import IPRoute

import flowstat

# fmt: off
DEFAULTS = {
    "flowstat": {
        "interface":   "",
        "mode":        "xdp",
        "direction":   "ingress",
        "device":      "mlx5_0",
        "filter":      "",
        "exclude_dns": "False",
        "interval_ms": "5000",
        "console":     "True",
        "hook_path":   "",
    },
    "flowstat.export": {
        "enable":       "False",
        "url":          "http://localhost:8428/api/v1/import/prometheus",
        "collect_agg":  "",
        "timeout_secs": "10",
    },
}

ENVIRONMENT = {
    ("flowstat", "interface"):          "NETWORK_INTERFACE",
    ("flowstat", "mode"):               "MONITOR_MODE",
    ("flowstat", "direction"):          "TC_DIRECTION",
    ("flowstat", "device"):             "RDMA_DEVICE",
    ("flowstat", "filter"):             "TRAFFIC_FILTER",
    ("flowstat", "exclude_dns"):        "EXCLUDE_DNS",
    ("flowstat", "interval_ms"):        "COLLECT_INTERVAL_MS",
    ("flowstat", "console"):            "CONSOLE_OUTPUT",
    ("flowstat", "hook_path"):          "FLOWSTAT_HOOK_PATH",
    ("flowstat.export", "enable"):      "METRICS_ENABLED",
    ("flowstat.export", "url"):         "METRICS_URL",
    ("flowstat.export", "collect_agg"): "COLLECT_AGG",
}
# fmt: on

DEFAULT_INTERFACE = "eth0"
DEFAULT_RDMA_INTERFACE = "ibs8f0"


def error(message):
    """Log an error message and exit"""
    logging.error("")
    logging.error("[ERROR]: %s" % message)
    logging.error("")
    sys.exit(1)


def setup_logging(logFile=None):
    logLevel = os.environ.get("FLOWSTAT_LOG_LEVEL", "INFO").upper()
    if logFile:
        hostname = platform.node().split(".", 1)[0]
        logging.basicConfig(
            format=f"[{hostname}: %(asctime)s] %(message)s",
            level=logLevel,
            filename=logFile,
            datefmt="%H:%M:%S",
        )
    else:
        logging.basicConfig(format="%(message)s", level=logLevel, stream=sys.stdout)


def readConfig(configFile=None, overrides=None, environ=None):
    """Resolve runtime configuration.

    Precedence: explicit overrides, then environment variables, then the
    optional config file, then built-in defaults.

    Args:
        configFile (str, optional): INI file with [flowstat] and [flowstat.export] sections.
        overrides (dict, optional): {(section, key): value} from the command line; None values are skipped.
        environ (dict, optional): environment mapping (defaults to os.environ).

    Returns:
        configparser.ConfigParser: resolved configuration.
    """
    config = configparser.ConfigParser()
    config.read_dict(DEFAULTS)

    if configFile:
        if not os.path.isfile(configFile):
            error("Unable to access runtime config file %s" % configFile)
        logging.debug("Reading runtime config from %s" % configFile)
        config.read(configFile)

    if environ is None:
        environ = os.environ
    for (section, key), variable in ENVIRONMENT.items():
        value = environ.get(variable)
        if value:
            config[section][key] = value

    for (section, key), value in (overrides or {}).items():
        if value is not None:
            config[section][key] = str(value)

    if not config["flowstat"]["interface"]:
        if config["flowstat"]["mode"] == "rdma":
            config["flowstat"]["interface"] = DEFAULT_RDMA_INTERFACE
        else:
            config["flowstat"]["interface"] = DEFAULT_INTERFACE

    return config


def split_interfaces(value):
    return [name.strip() for name in value.split(",") if name.strip()]


def getVersion():
    return flowstat.__version__


def interface_index(name):
    """Return the kernel index of a network interface, or None if it does not exist."""
    with IPRoute() as ipr:
        indices = ipr.link_lookup(ifname=name)
    return indices[0] if indices else None


def list_interfaces():
    """Print available network interfaces with their link state."""
    with IPRoute() as ipr:
        links = ipr.get_links()

    print("Available network interfaces:")
    for link in links:
        name = link.get_attr("IFLA_IFNAME")
        flags = link["flags"]
        state = "up" if flags & 0x1 else "down"
        print("  %-15s %s (flags: 0x%x)" % (name, state, flags))


def get_host_ip():
    """Return the primary IPv4 address of this host.

    Uses the source address the kernel would pick for an outbound route (no
    packet is sent), falling back to the first non-loopback address.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        pass
    finally:
        sock.close()

    try:
        with IPRoute() as ipr:
            for addr in ipr.get_addr(family=socket.AF_INET):
                address = addr.get_attr("IFA_ADDRESS")
                if address and not address.startswith("127."):
                    return address
    except Exception as e:
        logging.debug("Unable to enumerate host addresses: %s" % e)

    return "127.0.0.1"
