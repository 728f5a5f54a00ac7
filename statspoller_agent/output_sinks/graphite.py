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

from statspoller_agent.metric import format_value, graphite_sanitize
from statspoller_agent.output_sinks.base import TcpLineSink

DEFAULT_GRAPHITE_PORT = 2003


class GraphiteSink(TcpLineSink):
    """Sends metrics using the Graphite plaintext protocol: `<path> <value> <epoch-seconds>`."""

    def _format_line(self, metric):
        path = graphite_sanitize(
            metric.path,
            sanitize=self._config.sanitize_metrics,
            substitute=self._config.substitute_characters,
        )
        return "%s %s %d\n" % (path, format_value(metric.value), metric.timestamp_secs)
