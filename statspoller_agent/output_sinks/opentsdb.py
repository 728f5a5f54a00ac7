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
"""OpenTSDB sinks, over the telnet style `put` protocol and over the HTTP `/api/put` endpoint.

OpenTSDB refuses data points without at least one tag.  Unless tags are configured, every point is tagged with
`host=<short hostname>`.
"""

import requests

from statspoller_agent import util
from statspoller_agent.metric import format_value, opentsdb_sanitize
from statspoller_agent.output_sinks.base import OutputSink, SendError, TcpLineSink

DEFAULT_OPENTSDB_PORT = 4242


class _OpenTsdbFormatting(object):
    """Metric name and tag handling shared by both OpenTSDB sinks."""

    def _init_tags(self):
        tags = self._config.tags or {"host": util.get_hostname()}
        self._tags = dict(
            (self._sanitize(str(key)), self._sanitize(str(value))) for key, value in tags.items()
        )

    def _sanitize(self, value):
        return opentsdb_sanitize(
            value,
            sanitize=self._config.sanitize_metrics,
            substitute=self._config.substitute_characters,
        )


class OpenTsdbTelnetSink(_OpenTsdbFormatting, TcpLineSink):
    """Sends `put <metric> <epoch-millis> <value> <tagk=tagv ...>` lines over TCP."""

    def __init__(self, sink_config):
        TcpLineSink.__init__(self, sink_config)
        self._init_tags()
        self.__tags_text = " ".join("%s=%s" % (k, v) for k, v in sorted(self._tags.items()))

    def _format_line(self, metric):
        return "put %s %d %s %s\n" % (
            self._sanitize(metric.path),
            metric.timestamp,
            format_value(metric.value),
            self.__tags_text,
        )


class OpenTsdbHttpSink(_OpenTsdbFormatting, OutputSink):
    """POSTs each batch as a JSON array of `{metric, timestamp, value, tags}` objects."""

    def __init__(self, sink_config):
        OutputSink.__init__(self, sink_config)
        self._init_tags()
        self.__session = None

    def _serialize(self, chunk):
        return util.json_encode(
            [
                {
                    "metric": self._sanitize(metric.path),
                    "timestamp": metric.timestamp,
                    "value": metric.value,
                    "tags": self._tags,
                }
                for metric in chunk
            ],
            binary=True,
        )

    def __check_session(self):
        if self.__session is None:
            self.__session = requests.Session()
            self.__session.headers.update({"Content-Type": "application/json"})
        return self.__session

    def _send(self, payload, metric_count):
        session = self.__check_session()
        try:
            response = session.post(
                self._config.url, data=payload, timeout=self._config.connect_timeout
            )
        except requests.RequestException:
            # The session may hold a broken pooled connection, the next attempt starts a fresh one.
            self.close()
            raise

        if not 200 <= response.status_code < 300:
            raise SendError(
                "%s responded with status %d: %s"
                % (self._config.url, response.status_code, response.text[:200])
            )

    def close(self):
        if self.__session is not None:
            self.__session.close()
            self.__session = None
