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

from unittest import mock

import pytest
from prometheus_client import CollectorRegistry

from flowstat.collector_rdma import RDMADevice, parse_ibstat, safe_delta

NET_DEV = """Inter-|   Receive                                                |  Transmit
 face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
    lo:     100       1    0    0    0     0          0         0      100       1    0    0    0     0       0          0
ibs8f0: {rx} 2000 3 0 0 0 0 0 {tx} 4000 5 0 0 0 0 0
"""

IBSTAT = """CA 'mlx5_0'
	CA type: MT4123
	Number of ports: 1
	Port 1:
		State: Active
		Physical state: LinkUp
		Rate: 200
		Base lid: 0
"""


def write_counters(tmp_path, rcv_data, xmit_data):
    counters = tmp_path / "infiniband" / "mlx5_0" / "ports" / "1" / "counters"
    counters.mkdir(parents=True, exist_ok=True)
    (counters / "port_rcv_data").write_text("%d\n" % rcv_data)
    (counters / "port_xmit_data").write_text("%d\n" % xmit_data)
    (counters / "port_rcv_packets").write_text("10\n")
    (counters / "port_xmit_packets").write_text("20\n")
    port = counters.parent
    (port / "state").write_text("4: ACTIVE\n")
    (port / "rate").write_text("200 Gb/sec (4X HDR)\n")


def write_net_dev(tmp_path, rx, tx):
    path = tmp_path / "net_dev"
    path.write_text(NET_DEV.format(rx=rx, tx=tx))
    return path


@pytest.fixture
def device(tmp_path, make_config):
    write_counters(tmp_path, 1000, 2000)
    net_dev = write_net_dev(tmp_path, 1_000_000, 3_000_000)
    registry = CollectorRegistry()
    device = RDMADevice(
        make_config(mode="rdma"),
        "mlx5_0",
        "ibs8f0",
        registry=registry,
        ib_base_path=str(tmp_path / "infiniband"),
        net_dev_path=str(net_dev),
    )
    device.registerMetrics()
    return device, registry


class TestHelpers:
    def test_safe_delta(self):
        assert safe_delta(150, 100) == 50
        assert safe_delta(10, 100) == 0

    def test_parse_ibstat(self):
        assert parse_ibstat(IBSTAT) == {"state": "Active", "rate": "200"}
        assert parse_ibstat("") == {}


class TestRDMADevice:
    def test_port_counters(self, device):
        device, registry = device
        device.updateMetrics()

        labels = {"device": "mlx5_0", "port": "1"}
        assert registry.get_sample_value("flowstat_rdma_port_rcv_bytes", labels) == 4000
        assert registry.get_sample_value("flowstat_rdma_port_xmit_bytes", labels) == 8000
        assert registry.get_sample_value("flowstat_rdma_port_rcv_packets", labels) == 10
        assert registry.get_sample_value(
            "flowstat_rdma_port_state_info", dict(labels, state="ACTIVE", rate="200 Gb/sec (4X HDR)")
        ) == 1

    def test_interface_counters(self, device):
        device, registry = device
        info = device.read_interface_stats()

        assert info["interface_rx_bytes"] == 1_000_000
        assert info["interface_rx_packets"] == 2000
        assert info["interface_rx_errors"] == 3
        assert info["interface_tx_bytes"] == 3_000_000
        assert info["interface_tx_packets"] == 4000
        assert info["interface_tx_errors"] == 5

        device.updateMetrics()
        assert registry.get_sample_value("flowstat_rdma_interface_tx_bytes", {"interface": "ibs8f0"}) == 3_000_000

    def test_bandwidth(self, tmp_path, make_config):
        write_counters(tmp_path, 1000, 2000)
        net_dev = write_net_dev(tmp_path, 1_000_000, 3_000_000)
        registry = CollectorRegistry()

        with mock.patch("flowstat.collector_rdma.time") as clock:
            clock.monotonic.side_effect = [0.0, 10.0, 12.0, 13.0]
            device = RDMADevice(
                make_config(mode="rdma"),
                "mlx5_0",
                "ibs8f0",
                registry=registry,
                ib_base_path=str(tmp_path / "infiniband"),
                net_dev_path=str(net_dev),
            )
            device.registerMetrics()
            device.updateMetrics()
            assert registry.get_sample_value(
                "flowstat_rdma_interface_bandwidth_bytes_per_second", {"interface": "ibs8f0"}
            ) is None

            write_net_dev(tmp_path, 2_000_000, 5_000_000)
            device.updateMetrics()
            device.report()

        # (1 MB rx + 2 MB tx) over 2 seconds
        assert registry.get_sample_value(
            "flowstat_rdma_interface_bandwidth_bytes_per_second", {"interface": "ibs8f0"}
        ) == 1_500_000
        assert device.delta("interface_rx_bytes") == 1_000_000
        assert device.delta("interface_tx_bytes") == 2_000_000

    def test_missing_device(self, tmp_path, make_config, caplog):
        registry = CollectorRegistry()
        device = RDMADevice(
            make_config(mode="rdma"),
            "mlx5_9",
            "ibs8f0",
            registry=registry,
            ib_base_path=str(tmp_path),
            net_dev_path=str(tmp_path / "absent"),
        )
        device.registerMetrics()

        with mock.patch("flowstat.collector_rdma.shutil.which", return_value=None):
            device.updateMetrics()

        assert "not found" in caplog.text
        assert registry.get_sample_value("flowstat_rdma_port_rcv_bytes", {"device": "mlx5_9", "port": "1"}) is None

    def test_ibstat_fallback(self, tmp_path, make_config):
        device = RDMADevice(make_config(mode="rdma"), "mlx5_0", "ibs8f0", registry=CollectorRegistry(), ib_base_path=str(tmp_path))
        result = mock.Mock(stdout=IBSTAT)
        with mock.patch("flowstat.collector_rdma.shutil.which", return_value="/usr/sbin/ibstat"):
            with mock.patch("flowstat.collector_rdma.subprocess.run", return_value=result) as run:
                assert device.read_port_info("1") == {"state": "Active", "rate": "200"}
        assert run.call_args.args[0] == ["ibstat", "mlx5_0", "1"]
