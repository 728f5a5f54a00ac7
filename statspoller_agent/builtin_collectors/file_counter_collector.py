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
"""Counts the regular files of a directory.

The count of the configured directory is reported under the directory's name.  With `recursive` enabled, the
count of every sub directory is also reported, under the path of the sub directory relative to the configured
one.  Dots in directory names are replaced by `-` so they do not split the metric path.
"""

import os

from statspoller_agent.metric import sanitize_path_segment
from statspoller_agent.metric_collector import (
    BadCollectorConfiguration,
    MetricCollector,
    define_config_option,
)

__collector__ = __name__

define_config_option(
    __collector__,
    "directory",
    "Required. The directory whose files are counted.",
    required_option=True,
    convert_to=str,
)
define_config_option(
    __collector__,
    "recursive",
    "Optional (defaults to false). If true, every sub directory is counted separately as well.",
    default=False,
    convert_to=bool,
)
define_config_option(
    __collector__,
    "prefix",
    "Optional (defaults to `FileCounter`). The prefix of every metric path.",
    default="FileCounter",
    convert_to=str,
)


def count_files(directory, recursive=False):
    """Returns a dict mapping the relative path segments of every counted directory to its number of files.

    The key of `directory` itself is the empty tuple.
    """
    counts = {}
    if not recursive:
        with os.scandir(directory) as entries:
            counts[()] = sum(1 for entry in entries if entry.is_file(follow_symlinks=False))
        return counts

    for current, _, files in os.walk(directory):
        relative = os.path.relpath(current, directory)
        key = () if relative == os.curdir else tuple(relative.split(os.sep))
        counts[key] = sum(
            1 for name in files if not os.path.islink(os.path.join(current, name))
        )
    return counts


class FileCounterCollector(MetricCollector):
    def _initialize(self):
        self.__directory = os.path.abspath(self._config.get("directory"))
        self.__recursive = self._config.get("recursive")
        self.__root_name = sanitize_path_segment(os.path.basename(self.__directory.rstrip(os.sep)))
        if not self.__root_name:
            raise BadCollectorConfiguration(
                "The directory of collector %s cannot be the file system root" % self.collector_id,
                "directory",
            )

    def poll(self):
        if not os.path.isdir(self.__directory):
            self._logger.warning(
                "Directory %s does not exist, no file counts are reported",
                self.__directory,
                error_code="missingDirectory",
                limit_once_per_x_secs=3600,
                limit_key="file-counter-%s" % self.collector_id,
            )
            return []

        samples = []
        for key, count in sorted(count_files(self.__directory, self.__recursive).items()):
            segments = [self.__root_name] + [sanitize_path_segment(segment) for segment in key]
            samples.append((".".join(segments), count))
        return samples
