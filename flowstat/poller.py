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

"""Hook attachment and flow table polling

attach() loads the packaged hook program through bcc, attaches it to a network
interface and returns a handle owning both the attachment and the `flows` table:

  handle = attach("eth0", HOOK_XDP, "ingress")
  for key, stats in handle.poll():
      ...
  handle.release()

The earliest-receive (XDP) hook only sees ingress traffic; requesting egress or
both with it selects the traffic-control (clsact) hook instead.
"""

import errno
import logging
from pathlib import Path

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError

from flowstat.flow import FlowKey, FlowStats
from flowstat.utils import interface_index

HOOK_XDP = "xdp"
HOOK_TC = "tc"
HOOK_KINDS = (HOOK_XDP, HOOK_TC)

DIRECTIONS = ("ingress", "egress", "both")

DEFAULT_HOOK_PATH = Path(__file__).parent / "bpf" / "flow_monitor.c"
TABLE_NAME = "flows"

# clsact pseudo-parents for ingress/egress classifiers
TC_PARENTS = {"ingress": "ffff:fff2", "egress": "ffff:fff3"}

# netlink errors meaning "nothing to remove"
ABSENT_ERRNOS = (errno.ENOENT, errno.EINVAL, errno.ENODEV)


class AttachError(Exception):
    """Hook program could not be loaded or attached to an interface."""


class PollError(Exception):
    """Flow table iteration stopped before reaching the end."""


def resolve_hook(hook_kind: str, direction: str) -> str:
    if hook_kind == HOOK_XDP and direction != "ingress":
        logging.info("XDP only supports ingress; using tc hook for direction=%s" % direction)
        return HOOK_TC
    return hook_kind


def tc_directions(direction: str):
    if direction == "both":
        return ["ingress", "egress"]
    return [direction]


def load_hook(hook_path=None):
    """Compile and load the hook program; returns a bcc BPF object."""
    path = Path(hook_path) if hook_path else DEFAULT_HOOK_PATH
    if not path.is_file():
        raise AttachError(f"hook program not found: {path}")

    # bcc is distributed with the kernel toolchain (python3-bpfcc), not on PyPI
    try:
        from bcc import BPF
    except ImportError as e:
        raise AttachError(f"unable to import bcc python bindings: {e}")

    try:
        return BPF(src_file=str(path), cflags=["-w"])
    except Exception as e:
        raise AttachError(f"failed to load hook program {path}: {e}")


class FlowTableHandle:
    """Attached hook plus its flow table; subclasses implement attach/detach."""

    hook_kind = None

    def __init__(self, interface: str, index: int, bpf, direction: str = "ingress"):
        self.interface = interface
        self.index = index
        self.direction = direction
        self._bpf = bpf
        self._released = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()
        return False

    def poll(self):
        """Yield (FlowKey, FlowStats) for every record currently in the table.

        Raises PollError if iteration fails part way; records already yielded
        remain valid for the current tick.
        """
        try:
            table = self._bpf.get_table(TABLE_NAME)
            for key, value in table.items():
                yield FlowKey.unpack(bytes(key)), FlowStats.unpack(bytes(value))
        except Exception as e:
            raise PollError(f"[{self.interface}] flow table iteration failed: {e}") from e

    def attach(self):
        raise NotImplementedError

    def detach(self):
        raise NotImplementedError

    def release(self):
        """Detach the hook and free kernel resources; safe to call more than once."""
        if self._released:
            return
        self._released = True
        try:
            self.detach()
        finally:
            self._bpf.cleanup()
        logging.info("[%s] %s hook released" % (self.interface, self.hook_kind))


class XDPHandle(FlowTableHandle):
    hook_kind = HOOK_XDP
    program = "xdp_monitor"

    def __init__(self, interface, index, bpf, direction="ingress"):
        super().__init__(interface, index, bpf, direction)
        self.__flags = 0

    def attach(self):
        try:
            fn = self._bpf.load_func(self.program, self._bpf.XDP)
        except Exception as e:
            raise AttachError(f"[{self.interface}] failed to load {self.program}: {e}")

        try:
            self._bpf.attach_xdp(self.interface, fn, 0)
        except Exception as e:
            # drivers without native XDP support still accept generic mode
            logging.debug("[%s] native XDP attach failed (%s); retrying in skb mode" % (self.interface, e))
            self.__flags = self._bpf.XDP_FLAGS_SKB_MODE
            try:
                self._bpf.attach_xdp(self.interface, fn, self.__flags)
            except Exception as e:
                raise AttachError(f"[{self.interface}] failed to attach XDP program: {e}")

        logging.info("[%s] XDP program attached (flags=%d)" % (self.interface, self.__flags))

    def detach(self):
        try:
            self._bpf.remove_xdp(self.interface, self.__flags)
        except Exception as e:
            logging.warning("[%s] failed to detach XDP program: %s" % (self.interface, e))


class TCHandle(FlowTableHandle):
    hook_kind = HOOK_TC
    program = "tc_monitor"

    def __init__(self, interface, index, bpf, direction="ingress", ipr=None):
        super().__init__(interface, index, bpf, direction)
        if ipr is None:
            try:
                ipr = IPRoute()
            except (NetlinkError, OSError) as e:
                raise AttachError(f"[{interface}] unable to open netlink socket: {e}")
        self.__ipr = ipr

    def __tolerate_absent(self, *args, **kwargs):
        try:
            self.__ipr.tc(*args, **kwargs)
        except NetlinkError as e:
            if e.code in ABSENT_ERRNOS:
                logging.debug("[%s] tc %s: already absent" % (self.interface, args[0]))
            else:
                logging.warning("[%s] tc %s failed: %s" % (self.interface, args[0], e))

    def __remove_rules(self):
        for direction in tc_directions(self.direction):
            self.__tolerate_absent("del-filter", "bpf", self.index, ":1", parent=TC_PARENTS[direction])
        self.__tolerate_absent("del", "clsact", self.index)

    def attach(self):
        try:
            self.__install()
        except AttachError:
            self.__ipr.close()
            raise
        logging.info("[%s] tc program attached (direction=%s)" % (self.interface, self.direction))

    def __install(self):
        try:
            fn = self._bpf.load_func(self.program, self._bpf.SCHED_CLS)
        except Exception as e:
            raise AttachError(f"[{self.interface}] failed to load {self.program}: {e}")

        # leftovers from a previous run that stopped mid-setup
        self.__remove_rules()

        try:
            self.__ipr.tc("add", "clsact", self.index)
        except NetlinkError as e:
            if e.code != errno.EEXIST:
                raise AttachError(f"[{self.interface}] failed to add clsact qdisc: {e}")
            logging.debug("[%s] clsact qdisc already present" % self.interface)

        for direction in tc_directions(self.direction):
            try:
                self.__ipr.tc(
                    "add-filter",
                    "bpf",
                    self.index,
                    ":1",
                    fd=fn.fd,
                    name=fn.name,
                    parent=TC_PARENTS[direction],
                    classid=1,
                    direct_action=True,
                )
            except NetlinkError as e:
                self.__remove_rules()
                raise AttachError(f"[{self.interface}] failed to add tc {direction} filter: {e}")

    def detach(self):
        try:
            self.__remove_rules()
        finally:
            self.__ipr.close()


def attach(interface: str, hook_kind: str, direction: str = "ingress", hook_path=None, index=None):
    """Attach the hook to interface and return its FlowTableHandle.

    Raises AttachError when the interface does not exist, the hook program
    cannot be loaded or the kernel refuses the attachment.
    """
    if hook_kind not in HOOK_KINDS:
        raise AttachError(f"unsupported hook kind: {hook_kind}")
    if direction not in DIRECTIONS:
        raise AttachError(f"unsupported direction: {direction}")

    hook_kind = resolve_hook(hook_kind, direction)

    if index is None:
        try:
            index = interface_index(interface)
        except (NetlinkError, OSError) as e:
            raise AttachError(f"unable to look up network interface {interface}: {e}")
        if index is None:
            raise AttachError(f"network interface {interface} not found")

    bpf = load_hook(hook_path)
    try:
        if hook_kind == HOOK_XDP:
            handle = XDPHandle(interface, index, bpf, direction)
        else:
            handle = TCHandle(interface, index, bpf, direction)
        handle.attach()
    except AttachError:
        bpf.cleanup()
        raise
    return handle
