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

import pytest

from flowstat import utils
from flowstat.flow import FlowKey, FlowStats, ntohs, str_to_ip


def make_key(src, dst, src_port=0, dst_port=0, proto=6):
    """Build a FlowKey the way the hook stores it (ports in network byte order)."""
    return FlowKey(str_to_ip(src), str_to_ip(dst), ntohs(src_port), ntohs(dst_port), proto)


class FakeHandle:
    """Stand-in for an attached flow table; each poll() consumes the next snapshot."""

    hook_kind = "xdp"

    def __init__(self, snapshots=None):
        self.snapshots = list(snapshots or [[]])
        self.released = 0

    def poll(self):
        records = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        for record in records:
            if isinstance(record, Exception):
                raise record
            yield record

    def release(self):
        self.released += 1


class FakeClock:
    def __init__(self, *times):
        self.times = list(times)

    def __call__(self):
        return self.times.pop(0) if len(self.times) > 1 else self.times[0]


@pytest.fixture
def make_config():
    def factory(**overrides):
        values = {}
        for name, value in overrides.items():
            section = "flowstat.export" if name in ("enable", "url", "collect_agg", "timeout_secs") else "flowstat"
            values[(section, name)] = value
        return utils.readConfig(overrides=values, environ={})

    return factory
