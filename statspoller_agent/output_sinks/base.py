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

import collections
import socket
import threading

from statspoller_agent import agent_logging

log = agent_logging.getLogger(__name__)

GRAPHITE = "graphite"
OPENTSDB_TELNET = "opentsdb_telnet"
OPENTSDB_HTTP = "opentsdb_http"

DEFAULT_MAX_BATCH_SIZE = 1000
DEFAULT_CONNECT_TIMEOUT = 10.0

SinkConfig = collections.namedtuple(
    "SinkConfig",
    [
        "kind",
        "sink_id",
        "enabled",
        "host",
        "port",
        "url",
        "retry_attempts",
        "max_batch_size",
        "sanitize_metrics",
        "substitute_characters",
        "connect_timeout",
        "tags",
    ],
    defaults=(
        None,  # host
        None,  # port
        None,  # url
        2,  # retry_attempts
        DEFAULT_MAX_BATCH_SIZE,
        True,  # sanitize_metrics
        True,  # substitute_characters
        DEFAULT_CONNECT_TIMEOUT,
        None,  # tags
    ),
)


class SendError(Exception):
    """Raised by a sink when one delivery attempt fails."""

    pass


def create_connection_helper(host, port, timeout=None):
    """Creates and returns a socket connected to host:port with the specified timeout.

    @param timeout: The timeout in seconds used for all blocking operations on the socket.
    @raise OSError: If no address of the host accepts the connection.
    """
    err = None
    for af, socktype, proto, _, sa in socket.getaddrinfo(host, port, 0, socket.SOCK_STREAM):
        sock = None
        try:
            sock = socket.socket(af, socktype, proto)
            if timeout is not None:
                sock.settimeout(timeout)
            sock.connect(sa)
            return sock
        except OSError as e:
            err = e
            if sock is not None:
                sock.close()

    if err is not None:
        raise err
    raise OSError("getaddrinfo returned an empty list for %s:%s" % (host, port))


class OutputSink(object):
    """Delivers batches of metrics to one backend.

    `send_batch` splits what it is given into network operations of at most `max_batch_size` metrics and tries each
    one `retry_attempts + 1` times.  A disabled sink discards everything and reports success.

    Batches that failed while the dispatcher consumed them anyway are kept in the sink's pending queue and resent
    first on the next tick.

    Derived classes implement `_send`, which performs one attempt for one chunk and raises on failure.
    """

    def __init__(self, sink_config):
        """
        @type sink_config: SinkConfig
        """
        self._config = sink_config
        self.__pending = []
        self.__pending_lock = threading.Lock()

        self.total_attempts = 0
        self.total_metrics_sent = 0
        self.total_failed_batches = 0

    @property
    def sink_id(self):
        return self._config.sink_id

    @property
    def enabled(self):
        return self._config.enabled

    @property
    def max_batch_size(self):
        return self._config.max_batch_size

    @property
    def retry_attempts(self):
        return self._config.retry_attempts

    def send_batch(self, metrics):
        """Sends the metrics.

        @type metrics: list[statspoller_agent.metric.Metric]
        @return: True if every metric was delivered, or the sink is disabled.
        @rtype: bool
        """
        if not self.enabled or not metrics:
            return True

        for start in range(0, len(metrics), self.max_batch_size):
            chunk = metrics[start : start + self.max_batch_size]
            if not self.__send_with_retries(chunk):
                self.total_failed_batches += 1
                return False
        return True

    def __send_with_retries(self, chunk):
        try:
            payload = self._serialize(chunk)
        except Exception as e:
            log.warning(
                "%s could not serialize %d metrics: %s",
                self.sink_id,
                len(chunk),
                str(e),
                error_code="serializeFailed",
            )
            return False

        total_attempts = self.retry_attempts + 1
        last_error = None

        for attempt in range(1, total_attempts + 1):
            self.total_attempts += 1
            try:
                self._send(payload, len(chunk))
                self.total_metrics_sent += len(chunk)
                log.log(
                    agent_logging.DEBUG_LEVEL_1,
                    "%s delivered %d metrics on attempt %d",
                    self.sink_id,
                    len(chunk),
                    attempt,
                )
                return True
            except Exception as e:
                last_error = e
                log.log(
                    agent_logging.DEBUG_LEVEL_1,
                    "%s failed delivery attempt %d of %d: %s",
                    self.sink_id,
                    attempt,
                    total_attempts,
                    str(e),
                )

        log.warning(
            "%s failed to deliver %d metrics after %d attempts: %s",
            self.sink_id,
            len(chunk),
            total_attempts,
            str(last_error),
            error_code="sendFailed",
        )
        return False

    def _serialize(self, chunk):
        """Returns the payload sent for `chunk`."""
        raise NotImplementedError()

    def _send(self, payload, metric_count):
        """Performs one delivery attempt.  Raises on failure."""
        raise NotImplementedError()

    def queue_for_retry(self, metrics):
        """Keeps metrics this sink failed to deliver so they are sent again on the next tick."""
        if not self.enabled or not metrics:
            return
        with self.__pending_lock:
            self.__pending.extend(metrics)

    def take_pending(self, now_ms, max_age_ms):
        """Removes and returns the pending metrics that are not stale yet.

        @return: A tuple of the fresh metrics and the number of stale metrics dropped.
        @rtype: (list, int)
        """
        with self.__pending_lock:
            pending = self.__pending
            self.__pending = []

        fresh = [metric for metric in pending if not metric.is_stale(now_ms, max_age_ms)]
        return fresh, len(pending) - len(fresh)

    @property
    def pending_count(self):
        with self.__pending_lock:
            return len(self.__pending)

    def close(self):
        pass

    def __repr__(self):
        return "%s(%s)" % (self.__class__.__name__, self.sink_id)


class TcpLineSink(OutputSink):
    """A sink writing newline delimited records over a new TCP connection for every attempt."""

    def _send(self, payload, metric_count):
        sock = create_connection_helper(
            self._config.host, self._config.port, timeout=self._config.connect_timeout
        )
        try:
            sock.sendall(payload)
        finally:
            sock.close()

    def _serialize(self, chunk):
        return "".join(self._format_line(metric) for metric in chunk).encode("utf-8")

    def _format_line(self, metric):
        raise NotImplementedError()
