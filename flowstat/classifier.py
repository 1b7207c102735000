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

"""Traffic classification

Maps the (protocol, ports) triple of a flow record onto a traffic category.
Ports arrive in network byte order exactly as the hook stored them.
"""

from flowstat.flow import PROTO_INFINIBAND, PROTO_ROCE_V1, ntohs, str_to_ip

ROCE_V2_PORT = 4791

# Markers written into the protocol byte by the hook program
PROTO_TCP = 6
PROTO_UDP = 17
PROTO_ROCE_V2 = 0xFE  # UDP/4791 tagged in kernel

ROCE_V2 = "RoCE_v2"
ROCE_V2_UDP = "RoCE_v2_UDP"
UDP = "UDP"
TCP = "TCP"
ROCE_V1_IBOE = "RoCE_v1_IBoE"
INFINIBAND = "InfiniBand"
OTHER = "Other"

CATEGORIES = (ROCE_V2, ROCE_V2_UDP, UDP, TCP, ROCE_V1_IBOE, INFINIBAND, OTHER)

FILTERS = ("", "all", "roce", "roce_v1", "roce_v2", "tcp", "udp", "ib")

# fmt: off
DISPLAY_LABELS = {
    ROCE_V2:      "RoCE v2",
    ROCE_V2_UDP:  "RoCE v2/UDP",
    TCP:          "TCP",
    UDP:          "UDP",
    ROCE_V1_IBOE: "RoCE v1/IBoE",
    INFINIBAND:   "InfiniBand",
    OTHER:        "Other",
}

# Public resolvers (AliDNS, 114DNS, Google, Cloudflare)
DNS_RESOLVERS = frozenset(
    str_to_ip(address) for address in (
        "223.5.5.5", "223.6.6.6",
        "114.114.114.114", "114.114.115.115",
        "8.8.8.8", "8.8.4.4",
        "1.1.1.1", "1.0.0.1",
    )
)
# fmt: on


def is_roce_v2_port(src_port_net: int, dst_port_net: int) -> bool:
    return ntohs(src_port_net) == ROCE_V2_PORT or ntohs(dst_port_net) == ROCE_V2_PORT


def classify(proto: int, src_port_net: int, dst_port_net: int) -> str:
    """Return the traffic category of a flow record."""
    if proto == PROTO_ROCE_V2:
        return ROCE_V2
    if proto == PROTO_TCP:
        return TCP
    if proto == PROTO_UDP:
        if is_roce_v2_port(src_port_net, dst_port_net):
            return ROCE_V2_UDP
        return UDP
    if proto == PROTO_ROCE_V1:
        return ROCE_V1_IBOE
    if proto == PROTO_INFINIBAND:
        return INFINIBAND
    return OTHER


def should_display(proto: int, src_port_net: int, dst_port_net: int, traffic_filter: str) -> bool:
    """Apply a user traffic filter; unknown filter values let everything through."""
    if traffic_filter in ("", "all"):
        return True

    category = classify(proto, src_port_net, dst_port_net)
    is_roce_v2 = category in (ROCE_V2, ROCE_V2_UDP)
    is_roce_v1 = category == ROCE_V1_IBOE

    if traffic_filter == "roce":
        return is_roce_v2 or is_roce_v1
    elif traffic_filter == "roce_v1":
        return is_roce_v1
    elif traffic_filter == "roce_v2":
        return is_roce_v2
    elif traffic_filter == "tcp":
        return proto == PROTO_TCP
    elif traffic_filter == "udp":
        return proto == PROTO_UDP
    elif traffic_filter == "ib":
        return category == INFINIBAND
    return True


def is_excluded_dns(dst_ip: int) -> bool:
    return dst_ip in DNS_RESOLVERS


def display_label(category: str) -> str:
    return "[%s]" % DISPLAY_LABELS.get(category, DISPLAY_LABELS[OTHER])
