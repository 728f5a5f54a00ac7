# Copyright 2014 Scalyr Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ------------------------------------------------------------------------
#
# Note, this setup is based on the Sample Project example from Python
# Packaging Authority.
#
# Note, to release a new version of the package
# 1.  Edit the version number in statspoller_agent/__statspoller__.py
# 2.  Build:
#     python setup.py sdist bdist_wheel

from setuptools import setup, find_packages  # Always prefer setuptools over distutils
from codecs import open  # To use a consistent encoding
from os import path

import re

here = path.abspath(path.dirname(__file__))


def get_version():
    # Read without importing the package, its dependencies may not be installed yet.
    with open(path.join(here, "statspoller_agent", "__statspoller__.py"), encoding="utf-8") as f:
        match = re.search(r'^STATSPOLLER_VERSION\s*=\s*"([^"]+)"', f.read(), re.M)
    if match is None:
        raise RuntimeError("Unable to find the version string.")
    return match.group(1)


# Get the long description from the relevant file
with open(path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="statspoller-agent",
    version=get_version(),
    description="Polls MongoDB, MySQL, Apache and other services and forwards their metrics to Graphite "
    "and OpenTSDB",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="Apache",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Monitoring",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
    ],
    keywords="monitoring metrics graphite opentsdb mongodb",
    packages=find_packages(exclude=["tests*"]),
    python_requires=">=3.8",
    # Run-time dependencies.
    install_requires=[
        "orjson",
        "psutil",
        "pymongo>=4.0",
        "PyMySQL",
        "requests",
    ],
    extras_require={
        "test": ["mock", "pytest"],
    },
    entry_points={
        "console_scripts": [
            "statspoller-agent=statspoller_agent.agent_main:main",
        ],
    },
)
