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

import mock

from statspoller_agent.dispatcher import MetricDispatcher
from statspoller_agent.metric import Metric
from statspoller_agent.metric_buffer import MemoryMetricBuffer
from statspoller_agent.output_sinks import GRAPHITE, OutputSink, SinkConfig
from statspoller_agent.test_base import AgentTestCase
from statspoller_agent.util import FakeClock


class RecordingSink(OutputSink):
    """Records delivered metrics.  While `down` is True every attempt fails."""

    def __init__(self, sink_id, enabled=True, max_batch_size=1000, down=False):
        OutputSink.__init__(
            self,
            SinkConfig(
                kind=GRAPHITE,
                sink_id=sink_id,
                enabled=enabled,
                retry_attempts=0,
                max_batch_size=max_batch_size,
            ),
        )
        self.down = down
        self.delivered = []
        self.closed = False

    def _serialize(self, chunk):
        return list(chunk)

    def _send(self, payload, metric_count):
        if self.down:
            raise IOError("down")
        self.delivered.extend(payload)

    def close(self):
        self.closed = True


def _configuration(**overrides):
    values = dict(
        max_metric_age=90000,
        output_interval=30.0,
        check_output_files_interval=5.0,
        always_check_output_files=True,
        global_metric_name_prefix_enabled=False,
        global_metric_name_prefix_value="host1",
    )
    values.update(overrides)
    return mock.Mock(**values)


class MetricDispatcherTest(AgentTestCase):
    def setUp(self):
        super(MetricDispatcherTest, self).setUp()
        # 100 seconds past epoch.
        self.clock = FakeClock(start_time=100.0)
        self.buffer = MemoryMetricBuffer("mongo")

    def _dispatcher(self, sinks, buffers=None, **config_overrides):
        if buffers is None:
            buffers = [self.buffer]
        return MetricDispatcher(
            _configuration(**config_overrides), buffers, sinks, fake_clock=self.clock
        )

    def test_tick_interval(self):
        self.assertEqual(self._dispatcher([]).tick_interval, 5.0)
        self.assertEqual(self._dispatcher([], always_check_output_files=False).tick_interval, 30.0)

    def test_delivers_and_consumes(self):
        sink = RecordingSink("graphite")
        metrics = [Metric("a", 1, 99000), Metric("b", 2, 99000)]
        self.buffer.append(metrics)

        dispatcher = self._dispatcher([sink])
        dispatcher.run_tick()

        self.assertEqual(sink.delivered, metrics)
        self.assertTrue(self.buffer.read_pending().is_empty)
        self.assertEqual(dispatcher.total_consumed_metrics, 2)

    def test_stale_metrics_dropped(self):
        sink = RecordingSink("graphite")
        self.buffer.append([Metric("old", 1, 9999), Metric("edge", 2, 10000), Metric("new", 3, 99000)])

        dispatcher = self._dispatcher([sink])
        dispatcher.run_tick()

        self.assertEqual(sink.delivered, [Metric("edge", 2, 10000), Metric("new", 3, 99000)])
        self.assertEqual(dispatcher.total_stale_metrics, 1)
        self.assertTrue(self.buffer.read_pending().is_empty)

    def test_global_prefix(self):
        sink = RecordingSink("graphite")
        self.buffer.append([Metric("Mongo.Available", 1, 99000)])

        self._dispatcher([sink], global_metric_name_prefix_enabled=True).run_tick()

        self.assertEqual(sink.delivered, [Metric("host1.Mongo.Available", 1, 99000)])

    def test_batches_split_per_sink(self):
        sink = RecordingSink("graphite", max_batch_size=2)
        self.buffer.append([Metric("m%d" % i, i, 99000) for i in range(5)])

        with mock.patch.object(sink, "send_batch", wraps=sink.send_batch) as send_batch:
            self._dispatcher([sink]).run_tick()

        self.assertEqual([len(call[0][0]) for call in send_batch.call_args_list], [2, 2, 1])
        self.assertEqual(len(sink.delivered), 5)

    def test_nothing_consumed_when_every_sink_fails(self):
        first = RecordingSink("first", down=True)
        second = RecordingSink("second", down=True)
        metrics = [Metric("a", 1, 99000)]
        self.buffer.append(metrics)

        dispatcher = self._dispatcher([first, second])
        self.assertFalse(dispatcher.dispatch_buffer(self.buffer, 100000))

        self.assertEqual(self.buffer.read_pending().metrics, metrics)
        self.assertEqual(first.pending_count, 0)
        self.assertEqual(second.pending_count, 0)

        first.down = False
        self.assertTrue(dispatcher.dispatch_buffer(self.buffer, 100000))
        self.assertEqual(first.delivered, metrics)
        self.assertTrue(self.buffer.read_pending().is_empty)
        self.assertEqual(second.pending_count, 1)

    def test_failed_sink_retries_on_next_tick(self):
        healthy = RecordingSink("healthy")
        flaky = RecordingSink("flaky", down=True)
        self.buffer.append([Metric("a", 1, 99000)])

        dispatcher = self._dispatcher([healthy, flaky])
        dispatcher.run_tick()

        self.assertTrue(self.buffer.read_pending().is_empty)
        self.assertEqual(flaky.pending_count, 1)

        flaky.down = False
        self.buffer.append([Metric("b", 2, 100000)])
        self.clock.advance_time(increment_by=5)
        dispatcher.run_tick()

        self.assertEqual(flaky.delivered, [Metric("a", 1, 99000), Metric("b", 2, 100000)])
        self.assertEqual(healthy.delivered, [Metric("a", 1, 99000), Metric("b", 2, 100000)])
        self.assertEqual(flaky.pending_count, 0)

    def test_unserializable_batch_does_not_block_buffer(self):
        healthy = RecordingSink("healthy")
        broken = RecordingSink("broken")
        broken._serialize = mock.Mock(side_effect=TypeError("not serializable"))
        metrics = [Metric("a", 1, 99000), Metric("b", 2, 99000)]
        self.buffer.append(metrics)

        dispatcher = self._dispatcher([healthy, broken])
        for _ in range(3):
            dispatcher.run_tick()
            self.clock.advance_time(increment_by=5)

        self.assertEqual(healthy.delivered, metrics)
        self.assertTrue(self.buffer.read_pending().is_empty)
        self.assertEqual(broken.delivered, [])

    def test_pending_dropped_once_stale(self):
        healthy = RecordingSink("healthy")
        flaky = RecordingSink("flaky", down=True)
        self.buffer.append([Metric("a", 1, 99000)])

        dispatcher = self._dispatcher([healthy, flaky])
        dispatcher.run_tick()

        flaky.down = False
        self.clock.advance_time(increment_by=120)
        dispatcher.run_tick()

        self.assertEqual(flaky.delivered, [])
        self.assertEqual(flaky.pending_count, 0)
        self.assertEqual(dispatcher.total_stale_metrics, 1)

    def test_disabled_sink_ignored(self):
        enabled = RecordingSink("enabled")
        disabled = RecordingSink("disabled", enabled=False, down=True)
        self.buffer.append([Metric("a", 1, 99000)])

        self._dispatcher([enabled, disabled]).run_tick()

        self.assertEqual(len(enabled.delivered), 1)
        self.assertTrue(self.buffer.read_pending().is_empty)

    def test_no_enabled_sinks_consumes(self):
        self.buffer.append([Metric("a", 1, 99000)])
        self._dispatcher([RecordingSink("disabled", enabled=False)]).run_tick()
        self.assertTrue(self.buffer.read_pending().is_empty)

    def test_failing_buffer_does_not_block_others(self):
        broken = mock.Mock()
        broken.read_pending.side_effect = IOError("unreadable")
        sink = RecordingSink("graphite")
        self.buffer.append([Metric("a", 1, 99000)])

        self._dispatcher([sink], buffers=[broken, self.buffer]).run_tick()

        self.assertEqual(len(sink.delivered), 1)

    def test_stop_runs_final_tick_and_closes_sinks(self):
        sink = RecordingSink("graphite")
        dispatcher = self._dispatcher([sink])

        def fake_sleep(timeout):
            self.assertEqual(timeout, 5.0)
            # A collector appends right before the agent shuts down.
            self.buffer.append([Metric("late", 1, 100000)])
            dispatcher._run_state.stop()
            return True

        with mock.patch.object(dispatcher._run_state, "sleep_but_awaken_if_stopped", side_effect=fake_sleep):
            dispatcher.run_and_propagate()

        self.assertEqual(dispatcher.total_ticks, 2)
        self.assertEqual(sink.delivered, [Metric("late", 1, 100000)])
        self.assertTrue(sink.closed)
