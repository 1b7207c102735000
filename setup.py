# Packaging for the flowstat network flow telemetry agent.
#
# The hook program is compiled at runtime by bcc, which is distributed with
# the kernel toolchain (python3-bpfcc / bcc-tools) rather than on PyPI, so it
# is not listed in install_requires.

import re
from pathlib import Path

from setuptools import setup


def read_version():
    init = Path(__file__).parent / "flowstat" / "__init__.py"
    match = re.search(r'^__version__ = "([^"]+)"', init.read_text(), re.M)
    return match.group(1)


setup(
    name="flowstat",
    version=read_version(),
    description="Network flow telemetry agent (XDP/tc flow accounting with Prometheus export)",
    license="MIT",
    python_requires=">=3.8",
    packages=["flowstat"],
    package_data={"flowstat": ["bpf/*.c"]},
    install_requires=[
        "prometheus_client>=0.17",
        "requests",
        "pyroute2",
        "protobuf>=4.22",
        "python-snappy",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "flowstat=flowstat.node_monitoring:main",
        ],
    },
)
