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

"""Metrics export

Pushes gathered metric families to a remote time-series store. The wire format
is selected from the destination path:

  .../api/v1/import/prometheus  -> text exposition format (text/plain)
  .../api/v1/write              -> remote-write protobuf, snappy block compressed

Any other path falls back to the text format.
"""

import logging
import time
from urllib.parse import urlparse

import requests
import snappy
from prometheus_client import generate_latest

from flowstat import remote_write

TEXT_IMPORT_SUFFIX = "/api/v1/import/prometheus"
REMOTE_WRITE_SUFFIX = "/api/v1/write"

FORMAT_TEXT = "text"
FORMAT_REMOTE_WRITE = "remote_write"

REMOTE_WRITE_HEADERS = {
    "Content-Encoding": "snappy",
    "Content-Type": "application/x-protobuf",
    "X-Prometheus-Remote-Write-Version": "0.1.0",
}
TEXT_HEADERS = {"Content-Type": "text/plain"}


class PushError(Exception):
    """Remote store rejected a push."""

    def __init__(self, status_code, body):
        super().__init__(f"remote store returned status {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class _Families:
    """Adapter exposing already gathered families through the registry collect() protocol."""

    def __init__(self, families):
        self.__families = families

    def collect(self):
        return self.__families


def detect_format(url: str) -> str:
    path = urlparse(url).path
    if REMOTE_WRITE_SUFFIX in path:
        return FORMAT_REMOTE_WRITE
    if TEXT_IMPORT_SUFFIX not in path:
        logging.debug("No known import suffix in %s; using text format" % url)
    return FORMAT_TEXT


def encode_text(families) -> bytes:
    return generate_latest(_Families(families))


def build_write_request(families, timestamp_ms=None):
    """Convert metric families into a WriteRequest, one time series per sample."""
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000

    request = remote_write.WriteRequest()
    for family in families:
        for sample in family.samples:
            series = request.timeseries.add()
            labels = [("__name__", sample.name)] + list(sample.labels.items())
            for name, value in sorted(labels):
                series.labels.add(name=name, value=value)
            series.samples.add(value=float(sample.value), timestamp=timestamp_ms)
    return request


def encode_remote_write(families, timestamp_ms=None) -> bytes:
    request = build_write_request(families, timestamp_ms)
    return snappy.compress(request.SerializeToString())


class Exporter:
    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self.format = detect_format(url)

        if self.format == FORMAT_REMOTE_WRITE:
            logging.info("Metrics export: %s [remote write protocol (protobuf + snappy)]" % url)
        else:
            logging.info("Metrics export: %s [text format]" % url)

    def encode(self, families):
        """Return (payload, headers) for the configured wire format."""
        if self.format == FORMAT_REMOTE_WRITE:
            return encode_remote_write(families), dict(REMOTE_WRITE_HEADERS)
        return encode_text(families), dict(TEXT_HEADERS)

    def push(self, families):
        """POST families to the remote store.

        Raises:
            PushError: the store answered with a non-2xx status.
            requests.RequestException: the request itself failed.
        """
        payload, headers = self.encode(families)
        response = requests.post(self.url, data=payload, headers=headers, timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            raise PushError(response.status_code, response.text)
        logging.debug("Pushed %d bytes to %s (status %d)" % (len(payload), self.url, response.status_code))
