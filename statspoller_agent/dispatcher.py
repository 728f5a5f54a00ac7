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
"""Moves metrics from the collectors' buffers to the output sinks.

Every tick, for each buffer:

  1. read the complete lines not consumed yet;
  2. drop the metrics older than `max_metric_age`;
  3. add the global metric name prefix;
  4. send the metrics to every enabled sink, in batches of at most that sink's `max_batch_size`;
  5. consume what was read if every batch was delivered by at least one sink.

A sink that failed a batch which was consumed anyway keeps it in its own pending queue and resends it, if it is
still fresh, at the start of the next tick.  If no sink delivered a batch, nothing is consumed and the same lines
are read again on the next tick.
"""

from statspoller_agent import agent_logging
from statspoller_agent.util import StoppableThread, current_time_ms

log = agent_logging.getLogger(__name__)


class MetricDispatcher(StoppableThread):
    def __init__(self, configuration, buffers, sinks, fake_clock=None):
        """
        @param configuration: The agent configuration.
        @param buffers: The buffers to drain.
        @param sinks: Every configured sink, enabled or not.

        @type configuration: statspoller_agent.configuration.Configuration
        @type buffers: list[statspoller_agent.metric_buffer.MetricBuffer]
        @type sinks: list[statspoller_agent.output_sinks.OutputSink]
        """
        StoppableThread.__init__(self, name="metric dispatcher thread", fake_clock=fake_clock)
        self.__buffers = list(buffers)
        self.__sinks = list(sinks)
        self.__enabled_sinks = [sink for sink in self.__sinks if sink.enabled]

        self.__max_metric_age = configuration.max_metric_age
        if configuration.always_check_output_files:
            self.__tick_interval = configuration.check_output_files_interval
        else:
            self.__tick_interval = configuration.output_interval

        if configuration.global_metric_name_prefix_enabled:
            self.__global_prefix = configuration.global_metric_name_prefix_value
        else:
            self.__global_prefix = None

        self.total_ticks = 0
        self.total_stale_metrics = 0
        self.total_consumed_metrics = 0

    @property
    def tick_interval(self):
        return self.__tick_interval

    def run_and_propagate(self):
        log.info(
            "Starting metric dispatcher for %d buffers and %d enabled sinks, checking every %.1f secs",
            len(self.__buffers),
            len(self.__enabled_sinks),
            self.__tick_interval,
        )
        while self._run_state.is_running():
            tick_start = self._time()
            self.__run_tick_safely()
            elapsed = self._time() - tick_start
            self._run_state.sleep_but_awaken_if_stopped(max(0.0, self.__tick_interval - elapsed))

        # Flush whatever the collectors appended before they were stopped.
        self.__run_tick_safely()
        for sink in self.__sinks:
            sink.close()
        log.info("Metric dispatcher stopped")

    def __run_tick_safely(self):
        # noinspection PyBroadException
        try:
            self.run_tick()
        except Exception:
            log.exception(
                "Metric dispatcher tick failed", error_code="dispatchError", limit_once_per_x_secs=300
            )

    def run_tick(self):
        """Runs one dispatch pass over the sinks' pending queues and every buffer."""
        self.total_ticks += 1
        now_ms = current_time_ms(self._fake_clock)

        for sink in self.__enabled_sinks:
            self.__resend_pending(sink, now_ms)

        for buffer in self.__buffers:
            # noinspection PyBroadException
            try:
                self.dispatch_buffer(buffer, now_ms)
            except Exception:
                log.exception(
                    "Failed to dispatch buffer %s",
                    buffer,
                    error_code="dispatchError",
                    limit_once_per_x_secs=300,
                    limit_key="dispatch-%s" % buffer,
                )

    def __resend_pending(self, sink, now_ms):
        pending, stale_count = sink.take_pending(now_ms, self.__max_metric_age)
        self.__record_stale(stale_count, sink)
        if pending and not sink.send_batch(pending):
            sink.queue_for_retry(pending)

    def dispatch_buffer(self, buffer, now_ms):
        """Sends the pending metrics of one buffer and consumes them once delivered.

        @return: True if what was read has been consumed.
        @rtype: bool
        """
        pending_read = buffer.read_pending()
        if pending_read.is_empty:
            return True

        fresh = [
            metric
            for metric in pending_read.metrics
            if not metric.is_stale(now_ms, self.__max_metric_age)
        ]
        self.__record_stale(len(pending_read.metrics) - len(fresh), buffer)

        if self.__global_prefix:
            fresh = [metric.with_prefix(self.__global_prefix) for metric in fresh]

        # Maps each sink to the batches it failed to deliver.
        failures = {}
        for sink in self.__enabled_sinks:
            for batch in _split(fresh, sink.max_batch_size):
                if not sink.send_batch(batch):
                    failures.setdefault(sink, []).append(batch)

        if failures and not self.__delivered_by_some_sink(failures):
            log.warning(
                "No sink accepted the metrics of %s, they will be sent again on the next tick",
                buffer,
                error_code="undelivered",
                limit_once_per_x_secs=60,
                limit_key="undelivered-%s" % buffer,
            )
            return False

        buffer.commit(pending_read)
        self.total_consumed_metrics += len(fresh)

        for sink, batches in failures.items():
            for batch in batches:
                sink.queue_for_retry(batch)
        return True

    def __delivered_by_some_sink(self, failures):
        """Returns True if every metric was delivered by at least one enabled sink."""
        if len(failures) < len(self.__enabled_sinks):
            return True

        # Every sink failed at least one batch.  Sinks batch differently, so check metric by metric.
        failed_everywhere = None
        for batches in failures.values():
            failed = set()
            for batch in batches:
                failed.update(id(metric) for metric in batch)
            if failed_everywhere is None:
                failed_everywhere = failed
            else:
                failed_everywhere &= failed
        return not failed_everywhere

    def __record_stale(self, stale_count, source):
        if stale_count <= 0:
            return
        self.total_stale_metrics += stale_count
        log.log(
            agent_logging.DEBUG_LEVEL_1,
            "Dropped %d metrics of %s older than %d ms",
            stale_count,
            source,
            self.__max_metric_age,
        )


def _split(metrics, batch_size):
    for start in range(0, len(metrics), batch_size):
        yield metrics[start : start + batch_size]
