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

"""Prometheus remote-write messages

Message classes for the remote-write v1 protocol (prometheus/prompb/remote.proto
and types.proto), built at import time from a file descriptor so no generated
code has to be shipped:

  message WriteRequest { repeated TimeSeries timeseries = 1; }
  message TimeSeries   { repeated Label labels = 1; repeated Sample samples = 2; }
  message Label        { string name = 1; string value = 2; }
  message Sample       { double value = 1; int64 timestamp = 2; }
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

FieldDescriptorProto = descriptor_pb2.FieldDescriptorProto

# fmt: off
MESSAGES = [
    ("Label", [
        ("name",       1, FieldDescriptorProto.TYPE_STRING,  None),
        ("value",      2, FieldDescriptorProto.TYPE_STRING,  None),
    ]),
    ("Sample", [
        ("value",      1, FieldDescriptorProto.TYPE_DOUBLE,  None),
        ("timestamp",  2, FieldDescriptorProto.TYPE_INT64,   None),
    ]),
    ("TimeSeries", [
        ("labels",     1, FieldDescriptorProto.TYPE_MESSAGE, ".prometheus.Label"),
        ("samples",    2, FieldDescriptorProto.TYPE_MESSAGE, ".prometheus.Sample"),
    ]),
    ("WriteRequest", [
        ("timeseries", 1, FieldDescriptorProto.TYPE_MESSAGE, ".prometheus.TimeSeries"),
    ]),
]
# fmt: on


def build_pool():
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = "flowstat/prometheus_remote.proto"
    file_proto.package = "prometheus"
    file_proto.syntax = "proto3"

    for message_name, fields in MESSAGES:
        message = file_proto.message_type.add()
        message.name = message_name
        for field_name, number, field_type, type_name in fields:
            field = message.field.add()
            field.name = field_name
            field.number = number
            field.type = field_type
            if type_name:
                field.type_name = type_name
                field.label = FieldDescriptorProto.LABEL_REPEATED
            else:
                field.label = FieldDescriptorProto.LABEL_OPTIONAL

    pool = descriptor_pool.DescriptorPool()
    pool.Add(file_proto)
    return pool


_pool = build_pool()

Label = message_factory.GetMessageClass(_pool.FindMessageTypeByName("prometheus.Label"))
Sample = message_factory.GetMessageClass(_pool.FindMessageTypeByName("prometheus.Sample"))
TimeSeries = message_factory.GetMessageClass(_pool.FindMessageTypeByName("prometheus.TimeSeries"))
WriteRequest = message_factory.GetMessageClass(_pool.FindMessageTypeByName("prometheus.WriteRequest"))
