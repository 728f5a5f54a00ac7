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

from statspoller_agent.output_sinks.base import (
    GRAPHITE,
    OPENTSDB_HTTP,
    OPENTSDB_TELNET,
    OutputSink,
    SendError,
    SinkConfig,
)
from statspoller_agent.output_sinks.graphite import GraphiteSink
from statspoller_agent.output_sinks.opentsdb import OpenTsdbHttpSink, OpenTsdbTelnetSink

SINK_CLASSES = {
    GRAPHITE: GraphiteSink,
    OPENTSDB_TELNET: OpenTsdbTelnetSink,
    OPENTSDB_HTTP: OpenTsdbHttpSink,
}


def create_sink(sink_config):
    """Returns the sink instance for `sink_config`.

    @type sink_config: SinkConfig
    @rtype: OutputSink
    """
    return SINK_CLASSES[sink_config.kind](sink_config)


__all__ = [
    "GRAPHITE",
    "OPENTSDB_HTTP",
    "OPENTSDB_TELNET",
    "OutputSink",
    "SendError",
    "SinkConfig",
    "GraphiteSink",
    "OpenTsdbTelnetSink",
    "OpenTsdbHttpSink",
    "create_sink",
]
