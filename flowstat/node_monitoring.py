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

# Network flow telemetry agent: command-line entry point.
#
# Examples:
#   flowstat -m xdp -i eth0                          # XDP monitoring on eth0
#   flowstat -m xdp -i ibs8f0,ibs9f0 -f roce         # RoCE traffic on two interfaces
#   flowstat -m tc -i eth0 --direction egress        # egress traffic via tc hook
#   flowstat -m rdma -d mlx5_0 -i ibs8f0             # RDMA device statistics
#   flowstat -i eth0 --export --url http://vm:8428/api/v1/write --collect-agg rack1
# --

import argparse

from pyroute2.netlink.exceptions import NetlinkError

from flowstat import utils
from flowstat.classifier import FILTERS
from flowstat.monitor import MODES, Monitor
from flowstat.poller import DIRECTIONS


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Network flow telemetry agent")
    parser.add_argument("-i", "--interface", help="Network interface name(s), comma separated (env: NETWORK_INTERFACE)")
    parser.add_argument("-m", "--mode", choices=MODES, help="Monitoring mode (env: MONITOR_MODE, default: xdp)")
    parser.add_argument("--direction", choices=DIRECTIONS, help="Traffic direction for the tc hook (env: TC_DIRECTION)")
    parser.add_argument("-d", "--device", help="RDMA device name for rdma mode (env: RDMA_DEVICE, default: mlx5_0)")
    parser.add_argument(
        "-f", "--filter", help="Traffic filter: %s (env: TRAFFIC_FILTER)" % ", ".join(x for x in FILTERS if x)
    )
    parser.add_argument("--exclude-dns", action="store_true", default=None, help="Exclude traffic to public DNS resolvers")
    parser.add_argument("--interval", type=int, help="Collection interval in milliseconds (100-3600000, default: 5000)")
    parser.add_argument("--quiet", action="store_true", help="Disable per-flow console output")
    parser.add_argument("--export", action="store_true", default=None, help="Push metrics to a remote store")
    parser.add_argument("--url", help="Remote store import or remote-write URL (env: METRICS_URL)")
    parser.add_argument("--collect-agg", help="Collection group tag attached to every series (env: COLLECT_AGG)")
    parser.add_argument("--hook-path", help="Hook program source (default: packaged flow_monitor.c)")
    parser.add_argument("--configfile", help="Runtime configuration file")
    parser.add_argument("--logfile", help="Write log messages to file")
    parser.add_argument("-l", "--list", action="store_true", help="List available network interfaces and exit")
    return parser.parse_args(argv)


def overrides_from_args(args):
    return {
        ("flowstat", "interface"): args.interface,
        ("flowstat", "mode"): args.mode,
        ("flowstat", "direction"): args.direction,
        ("flowstat", "device"): args.device,
        ("flowstat", "filter"): args.filter,
        ("flowstat", "exclude_dns"): args.exclude_dns,
        ("flowstat", "interval_ms"): args.interval,
        ("flowstat", "console"): False if args.quiet else None,
        ("flowstat", "hook_path"): args.hook_path,
        ("flowstat.export", "enable"): args.export,
        ("flowstat.export", "url"): args.url,
        ("flowstat.export", "collect_agg"): args.collect_agg,
    }


def main(argv=None):
    args = parse_args(argv)

    if args.list:
        utils.list_interfaces()
        return

    config = utils.readConfig(args.configfile, overrides_from_args(args))
    monitor = Monitor(config, logFile=args.logfile)

    # single interface mode: verify it exists before loading the hook
    interfaces = utils.split_interfaces(config["flowstat"]["interface"])
    if config["flowstat"]["mode"] != "rdma" and len(interfaces) == 1:
        try:
            index = utils.interface_index(interfaces[0])
        except (NetlinkError, OSError) as e:
            utils.error("Unable to look up network interface '%s': %s" % (interfaces[0], e))
        if index is None:
            utils.list_interfaces()
            utils.error("Network interface '%s' does not exist; use -i to select one" % interfaces[0])

    monitor.run()


if __name__ == "__main__":
    main()
