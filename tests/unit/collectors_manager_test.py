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

import os
import shutil
import tempfile

import mock

from statspoller_agent.builtin_collectors.file_counter_collector import FileCounterCollector
from statspoller_agent.collectors_manager import CollectorsManager, load_collector_class
from statspoller_agent.metric_buffer import MemoryMetricBuffer, MetricBuffer
from statspoller_agent.metric_collector import BadCollectorConfiguration, CollectorConfig
from statspoller_agent.test_base import AgentTestCase
from statspoller_agent.util import FakeClock

FILE_COUNTER_MODULE = "statspoller_agent.builtin_collectors.file_counter_collector"


class LoadCollectorClassTest(AgentTestCase):
    def test_builtin(self):
        self.assertIs(load_collector_class(FILE_COUNTER_MODULE), FileCounterCollector)

    def test_missing_module(self):
        self.assertRaises(
            BadCollectorConfiguration, load_collector_class, "statspoller_agent.builtin_collectors.nope"
        )

    def test_module_without_collector(self):
        self.assertRaises(BadCollectorConfiguration, load_collector_class, "statspoller_agent.metric")


class CollectorsManagerTest(AgentTestCase):
    def setUp(self):
        super(CollectorsManagerTest, self).setUp()
        self.__directory = tempfile.mkdtemp()
        self.counted_dir = os.path.join(self.__directory, "counted")
        os.makedirs(self.counted_dir)
        self.clock = FakeClock(start_time=100.0)

    def tearDown(self):
        super(CollectorsManagerTest, self).tearDown()
        shutil.rmtree(self.__directory)

    def _collector_config(self, collector_id, write_to_disk=True, **options):
        options.setdefault("directory", self.counted_dir)
        return CollectorConfig(
            options,
            FILE_COUNTER_MODULE,
            collector_id,
            buffer_path=os.path.join(self.__directory, "output", "%s.out" % collector_id),
            write_to_disk=write_to_disk,
        )

    def _manager(self, *collector_configs):
        configuration = mock.Mock(collector_configs=list(collector_configs))
        return CollectorsManager(configuration, fake_clock=self.clock)

    def test_buffers(self):
        manager = self._manager(
            self._collector_config("on-disk"),
            self._collector_config("in-memory", write_to_disk=False),
            self._collector_config("disabled", enabled=False),
        )

        self.assertEqual(len(manager.collectors), 3)
        buffers = manager.buffers
        self.assertEqual(len(buffers), 2)
        self.assertTrue(isinstance(buffers[0], MetricBuffer))
        self.assertTrue(isinstance(buffers[1], MemoryMetricBuffer))

    def test_bad_collector_config_raised_on_build(self):
        config = CollectorConfig(
            {},
            FILE_COUNTER_MODULE,
            "no-directory",
            buffer_path=os.path.join(self.__directory, "output", "no-directory.out"),
        )
        self.assertRaises(BadCollectorConfiguration, self._manager, config)

    def test_disk_buffer_requires_path(self):
        config = CollectorConfig({"directory": self.__directory}, FILE_COUNTER_MODULE, "no-path")
        try:
            self._manager(config)
            self.fail("A disk buffer without a path should be rejected")
        except BadCollectorConfiguration as e:
            self.assertEqual(e.field, "buffer_path")

    def test_start_and_stop(self):
        manager = self._manager(
            self._collector_config("first"),
            self._collector_config("disabled", enabled=False),
        )
        first, disabled = manager.collectors

        manager.start_manager()
        try:
            self.assertTrue(os.path.isfile(first.buffer.path))
            self.assertFalse(os.path.exists(disabled.buffer.path))
            self.assertTrue(self.clock.block_until_n_waiting_threads(1, timeout=10))
        finally:
            manager.stop_manager(join_timeout=10)

        self.assertFalse(first.is_alive())
        self.assertFalse(disabled.is_alive())
        self.assertEqual(first.total_polls, 1)
        self.assertEqual(first.buffer.read_pending().metrics[0].path, "FileCounter.counted")

    def test_collector_logger_named_after_instance(self):
        manager = self._manager(self._collector_config("files"))
        collector = manager.collectors[0]
        self.assertEqual(collector._logger.name, "%s(files)" % FILE_COUNTER_MODULE)
        self.assertEqual(collector._logger.component, "collector:files")
