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

import errno
from unittest import mock

import pytest
from pyroute2.netlink.exceptions import NetlinkError

import flowstat.poller
from flowstat.flow import FLOW_KEY_FORMAT, FLOW_STATS_FORMAT, FlowStats
from flowstat.poller import (
    HOOK_TC,
    HOOK_XDP,
    TC_PARENTS,
    AttachError,
    PollError,
    TCHandle,
    XDPHandle,
    attach,
    resolve_hook,
    tc_directions,
)


def raw_record(src_ip, dst_ip, packets, nbytes):
    return FLOW_KEY_FORMAT.pack(src_ip, dst_ip, 0, 0, 6, 0, 0, 0), FLOW_STATS_FORMAT.pack(packets, nbytes, 0)


class BrokenTable:
    def __init__(self, records):
        self.records = records

    def items(self):
        yield from self.records
        raise OSError("map changed during iteration")


class TestResolve:
    @pytest.mark.parametrize(
        "hook_kind,direction,expected",
        [
            (HOOK_XDP, "ingress", HOOK_XDP),
            (HOOK_XDP, "egress", HOOK_TC),
            (HOOK_XDP, "both", HOOK_TC),
            (HOOK_TC, "ingress", HOOK_TC),
            (HOOK_TC, "both", HOOK_TC),
        ],
    )
    def test_resolve_hook(self, hook_kind, direction, expected):
        assert resolve_hook(hook_kind, direction) == expected

    def test_tc_directions(self):
        assert tc_directions("both") == ["ingress", "egress"]
        assert tc_directions("egress") == ["egress"]


class TestPoll:
    def test_decodes_records(self):
        bpf = mock.Mock()
        bpf.get_table.return_value.items.return_value = [raw_record(1, 2, 100, 15000), raw_record(3, 4, 5, 500)]
        handle = XDPHandle("eth0", 2, bpf)

        records = list(handle.poll())

        bpf.get_table.assert_called_once_with("flows")
        assert [(key.src_ip, key.dst_ip) for key, _ in records] == [(1, 2), (3, 4)]
        assert records[0][1] == FlowStats(100, 15000, 0)

    def test_partial_results(self):
        bpf = mock.Mock()
        bpf.get_table.return_value = BrokenTable([raw_record(1, 2, 100, 15000)])
        handle = XDPHandle("eth0", 2, bpf)

        seen = []
        with pytest.raises(PollError):
            for record in handle.poll():
                seen.append(record)
        assert len(seen) == 1


    def test_missing_table(self):
        bpf = mock.Mock()
        bpf.get_table.side_effect = KeyError("flows")
        handle = XDPHandle("eth0", 2, bpf)

        with pytest.raises(PollError):
            list(handle.poll())


class TestXDPHandle:
    def test_native_attach(self):
        bpf = mock.Mock()
        handle = XDPHandle("eth0", 2, bpf)

        handle.attach()
        bpf.load_func.assert_called_once_with("xdp_monitor", bpf.XDP)
        bpf.attach_xdp.assert_called_once_with("eth0", bpf.load_func.return_value, 0)

        handle.release()
        bpf.remove_xdp.assert_called_once_with("eth0", 0)
        bpf.cleanup.assert_called_once()

    def test_skb_fallback(self):
        bpf = mock.Mock(XDP_FLAGS_SKB_MODE=2)
        bpf.attach_xdp.side_effect = [Exception("driver does not support XDP"), None]
        handle = XDPHandle("eth0", 2, bpf)

        handle.attach()
        assert bpf.attach_xdp.call_args_list[1] == mock.call("eth0", bpf.load_func.return_value, 2)

        handle.release()
        bpf.remove_xdp.assert_called_once_with("eth0", 2)

    def test_attach_failure(self):
        bpf = mock.Mock(XDP_FLAGS_SKB_MODE=2)
        bpf.attach_xdp.side_effect = Exception("nope")
        with pytest.raises(AttachError):
            XDPHandle("eth0", 2, bpf).attach()


class TestTCHandle:
    def test_attach_both_directions(self):
        bpf = mock.Mock()
        ipr = mock.Mock()
        # nothing left over from an earlier run
        ipr.tc.side_effect = [NetlinkError(errno.ENOENT), NetlinkError(errno.ENOENT), NetlinkError(errno.EINVAL), None, None, None]
        handle = TCHandle("eth0", 7, bpf, "both", ipr=ipr)

        handle.attach()

        bpf.load_func.assert_called_once_with("tc_monitor", bpf.SCHED_CLS)
        calls = ipr.tc.call_args_list
        assert calls[3] == mock.call("add", "clsact", 7)
        for call, direction in zip(calls[4:], ("ingress", "egress")):
            assert call.args == ("add-filter", "bpf", 7, ":1")
            assert call.kwargs["parent"] == TC_PARENTS[direction]
            assert call.kwargs["direct_action"] is True
            assert call.kwargs["fd"] == bpf.load_func.return_value.fd

    def test_release_tolerates_absent_rules(self):
        bpf = mock.Mock()
        ipr = mock.Mock()
        handle = TCHandle("eth0", 7, bpf, "ingress", ipr=ipr)
        handle.attach()

        ipr.tc.reset_mock()
        ipr.tc.side_effect = NetlinkError(errno.ENOENT)
        handle.release()
        handle.release()

        assert ipr.tc.call_args_list == [
            mock.call("del-filter", "bpf", 7, ":1", parent="ffff:fff2"),
            mock.call("del", "clsact", 7),
        ]
        ipr.close.assert_called_once()
        bpf.cleanup.assert_called_once()

    def test_existing_qdisc(self):
        bpf = mock.Mock()
        ipr = mock.Mock()
        ipr.tc.side_effect = [None, None, NetlinkError(errno.EEXIST), None]
        TCHandle("eth0", 7, bpf, "ingress", ipr=ipr).attach()
        assert ipr.tc.call_args_list[-1].args[0] == "add-filter"

    def test_filter_failure(self):
        bpf = mock.Mock()
        ipr = mock.Mock()
        ipr.tc.side_effect = [None, None, None, NetlinkError(errno.EPERM), None, None]
        handle = TCHandle("eth0", 7, bpf, "ingress", ipr=ipr)

        with pytest.raises(AttachError):
            handle.attach()
        ipr.close.assert_called_once()


class TestAttach:
    def test_missing_interface(self, monkeypatch):
        monkeypatch.setattr(flowstat.poller, "interface_index", lambda name: None)
        with pytest.raises(AttachError, match="not found"):
            attach("nosuch0", HOOK_XDP)

    @pytest.mark.parametrize("failure", [NetlinkError(errno.EPERM), PermissionError(errno.EPERM, "Operation not permitted")])
    def test_interface_lookup_failure(self, monkeypatch, failure):
        def lookup(name):
            raise failure

        monkeypatch.setattr(flowstat.poller, "interface_index", lookup)
        with pytest.raises(AttachError, match="unable to look up"):
            attach("eth0", HOOK_XDP)

    def test_netlink_socket_failure_cleans_up(self, monkeypatch):
        bpf = mock.Mock()
        monkeypatch.setattr(flowstat.poller, "load_hook", lambda hook_path=None: bpf)
        with mock.patch("flowstat.poller.IPRoute", side_effect=PermissionError(errno.EPERM, "Operation not permitted")):
            with pytest.raises(AttachError, match="netlink socket"):
                attach("eth0", HOOK_TC, index=2)
        bpf.cleanup.assert_called_once()

    def test_invalid_arguments(self):
        with pytest.raises(AttachError):
            attach("eth0", "kprobe")
        with pytest.raises(AttachError):
            attach("eth0", HOOK_XDP, "sideways")

    def test_missing_hook_program(self, tmp_path):
        with pytest.raises(AttachError, match="not found"):
            attach("eth0", HOOK_XDP, index=2, hook_path=tmp_path / "absent.c")

    def test_attach_failure_cleans_up(self, monkeypatch):
        bpf = mock.Mock(XDP_FLAGS_SKB_MODE=2)
        bpf.attach_xdp.side_effect = Exception("nope")
        monkeypatch.setattr(flowstat.poller, "load_hook", lambda hook_path=None: bpf)

        with pytest.raises(AttachError):
            attach("eth0", HOOK_XDP, index=2)
        bpf.cleanup.assert_called_once()

    def test_egress_uses_tc(self, monkeypatch):
        bpf = mock.Mock()
        monkeypatch.setattr(flowstat.poller, "load_hook", lambda hook_path=None: bpf)
        with mock.patch("flowstat.poller.IPRoute") as iproute:
            handle = attach("eth0", HOOK_XDP, "egress", index=2)

        assert isinstance(handle, TCHandle)
        assert handle.hook_kind == HOOK_TC
        assert iproute.return_value.tc.call_args_list[-1].kwargs["parent"] == TC_PARENTS["egress"]
