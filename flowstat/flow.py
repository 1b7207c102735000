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

"""Flow records and the delta/rate engine

The hook program keeps one cumulative counter entry per flow in a kernel hash
table. Each record is decoded into a (FlowKey, FlowStats) pair and folded into a
per-interface FlowTracker, which turns cumulative counters into interval deltas:

  tick 1: packets=100 bytes=15000 (first sighting)  -> delta (100, 15000)
  tick 2: packets=150 bytes=20000 (5.0s later)      -> delta (50, 5000), 1000 B/s
"""

import socket
import struct
from typing import NamedTuple

# Kernel record layout (native little-endian host, see bpf/flow_monitor.c):
#   struct flow_key   { u32 src_ip; u32 dst_ip; u16 src_port; u16 dst_port;
#                       u8 proto; u8 pkt_len_low; u16 first_u16; u32 padding; }
#   struct flow_stats { u64 packets; u64 bytes; u64 last_update; }
FLOW_KEY_FORMAT = struct.Struct("<IIHHBBHI")
FLOW_STATS_FORMAT = struct.Struct("<QQQ")
FLOW_STATS_FORMAT_NO_TS = struct.Struct("<QQ")

# Protocol byte of frames the hook identifies by ether-type (low byte of 0x8915/0x8914)
PROTO_ROCE_V1 = 0x15
PROTO_INFINIBAND = 0x14
ETHERTYPE_PROTOS = (PROTO_ROCE_V1, PROTO_INFINIBAND)


class FlowKey(NamedTuple):
    src_ip: int
    dst_ip: int
    src_port: int
    dst_port: int
    proto: int
    pkt_len_low: int = 0
    first_u16: int = 0
    padding: int = 0

    @classmethod
    def unpack(cls, data: bytes) -> "FlowKey":
        return cls(*FLOW_KEY_FORMAT.unpack_from(data))

    def is_placeholder(self) -> bool:
        """Records the hook could not parse are stored with both addresses zero.

        Frames recognized by ether-type carry MAC bytes in the address fields
        and are always real flows, even when those bytes happen to be zero.
        """
        if self.proto in ETHERTYPE_PROTOS:
            return False
        return self.src_ip == 0 and self.dst_ip == 0

    @property
    def ports(self):
        """Source and destination ports in host byte order."""
        return ntohs(self.src_port), ntohs(self.dst_port)


class FlowStats(NamedTuple):
    packets: int
    bytes: int
    last_update: int = 0

    @classmethod
    def unpack(cls, data: bytes) -> "FlowStats":
        if len(data) >= FLOW_STATS_FORMAT.size:
            return cls(*FLOW_STATS_FORMAT.unpack_from(data))
        return cls(*FLOW_STATS_FORMAT_NO_TS.unpack_from(data))


def ip_to_str(ip: int) -> str:
    """Format an address read from the table (network order bytes, little-endian u32)."""
    return socket.inet_ntoa(struct.pack("<I", ip))


def str_to_ip(address: str) -> int:
    """Inverse of ip_to_str()."""
    return struct.unpack("<I", socket.inet_aton(address))[0]


def ntohs(port: int) -> int:
    """Swap a 16-bit port stored in network byte order to host order."""
    return ((port & 0xFF) << 8) | ((port >> 8) & 0xFF)


def calculate_delta(current: FlowStats, last: FlowStats, exists: bool):
    """Return (delta_packets, delta_bytes) between two cumulative readings.

    A counter that went backwards is taken as a fresh entry (the hook evicted and
    recreated it), so its delta is the current value rather than a wraparound
    difference.
    """
    if not exists:
        return current.packets, current.bytes

    if current.packets >= last.packets:
        delta_packets = current.packets - last.packets
    else:
        delta_packets = current.packets

    if current.bytes >= last.bytes:
        delta_bytes = current.bytes - last.bytes
    else:
        delta_bytes = current.bytes

    return delta_packets, delta_bytes


def calculate_rates(delta_bytes: int, interval_secs: float):
    """Return (bytes_per_sec, bits_per_sec) for a measured interval."""
    if interval_secs <= 0:
        return 0.0, 0.0
    bytes_per_sec = delta_bytes / interval_secs
    return bytes_per_sec, bytes_per_sec * 8


class FlowTracker:
    """Last-seen counters for a single interface.

    Owned by exactly one InterfaceCollector; never shared between threads.
    """

    def __init__(self):
        self.__last_seen = {}

    def __len__(self):
        return len(self.__last_seen)

    def __contains__(self, key):
        return key in self.__last_seen

    def get(self, key):
        return self.__last_seen.get(key)

    def update(self, key: FlowKey, stats: FlowStats):
        """Record the current reading for key and return its (delta_packets, delta_bytes)."""
        last = self.__last_seen.get(key)
        delta = calculate_delta(stats, last, last is not None)
        self.__last_seen[key] = stats
        return delta

    def prune(self, active_keys) -> int:
        """Forget every key absent from the latest poll; return how many were dropped."""
        stale = [key for key in self.__last_seen if key not in active_keys]
        for key in stale:
            del self.__last_seen[key]
        return len(stale)


class NICKey(NamedTuple):
    src_ip: int
    dst_ip: int
    proto: int


class NICRates:
    """Per-tick link-level rates summed over flows sharing (src_ip, dst_ip, proto)."""

    def __init__(self):
        self.__rates = {}

    def __len__(self):
        return len(self.__rates)

    def add(self, key: FlowKey, bytes_per_sec: float, bits_per_sec: float, traffic_type: str):
        nic_key = NICKey(key.src_ip, key.dst_ip, key.proto)
        if nic_key in self.__rates:
            prev_bytes, prev_bits, _ = self.__rates[nic_key]
            self.__rates[nic_key] = (prev_bytes + bytes_per_sec, prev_bits + bits_per_sec, traffic_type)
        else:
            self.__rates[nic_key] = (bytes_per_sec, bits_per_sec, traffic_type)

    def items(self):
        return self.__rates.items()
