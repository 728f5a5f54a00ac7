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
from decimal import Decimal

from statspoller_agent import util
from statspoller_agent.test_base import AgentTestCase
from statspoller_agent.util import FakeClock, FakeRunState, RunState, StoppableThread


class JsonTest(AgentTestCase):
    def setUp(self):
        super(JsonTest, self).setUp()
        self.__temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        super(JsonTest, self).tearDown()
        shutil.rmtree(self.__temp_dir)

    def test_decimals(self):
        self.assertEqual(util.json_encode({"a": Decimal("2"), "b": Decimal("2.5")}), '{"a":2,"b":2.5}')
        self.assertEqual(util.json_encode([1], binary=True), b"[1]")

    def test_decimals_beyond_64_bits(self):
        self.assertEqual(util.json_decode(util.json_encode([Decimal("1E+20")])), [1e20])
        self.assertEqual(util.json_encode([Decimal(2 ** 64 - 1)]), "[18446744073709551615]")
        self.assertEqual(util.json_encode([Decimal(-(2 ** 63))]), "[-9223372036854775808]")

    def test_atomic_write_and_read(self):
        path = os.path.join(self.__temp_dir, "state.json")
        util.atomic_write_dict_as_json_file(path, path + "~", {"offset": 10})

        self.assertEqual(util.read_file_as_json(path), {"offset": 10})
        self.assertFalse(os.path.exists(path + "~"))

    def test_read_errors(self):
        path = os.path.join(self.__temp_dir, "bad.json")
        self.assertRaises(util.JsonReadFileException, util.read_file_as_json, path)
        with open(path, "w") as fp:
            fp.write("{")
        self.assertRaises(util.JsonReadFileException, util.read_file_as_json, path)


class RunStateTest(AgentTestCase):
    def test_basic_use(self):
        test_run_state = FakeRunState()
        self.assertTrue(test_run_state.is_running())
        test_run_state.sleep_but_awaken_if_stopped(1.0)
        self.assertEqual(test_run_state.total_times_slept, 1)
        test_run_state.stop()
        self.assertFalse(test_run_state.is_running())

    def test_sleeping_when_stopped_returns_immediately(self):
        test_run_state = FakeRunState()
        test_run_state.stop()
        self.assertTrue(test_run_state.sleep_but_awaken_if_stopped(10.0))
        self.assertEqual(test_run_state.total_times_slept, 0)

    def test_fake_clock_sleep(self):
        clock = FakeClock(start_time=10.0)
        test_run_state = RunState(fake_clock=clock)
        result = []

        thread = WorkerThread(
            lambda run_state: result.append(test_run_state.sleep_but_awaken_if_stopped(5.0)),
            name="sleeper",
        )
        thread.start()
        self.assertTrue(clock.block_until_n_waiting_threads(1, timeout=10))
        clock.advance_time(increment_by=5.0)
        thread.join(10)

        self.assertEqual(result, [False])


class WorkerThread(StoppableThread):
    """Runs `work` with the thread's run state."""

    def __init__(self, work, name=None, fake_clock=None):
        StoppableThread.__init__(self, name=name, fake_clock=fake_clock)
        self.__work = work

    def run_and_propagate(self):
        self.__work(self._run_state)


class StoppableThreadTest(AgentTestCase):
    def test_stop_wakes_sleeping_thread(self):
        clock = FakeClock()
        iterations = []

        def work(run_state):
            while run_state.is_running():
                iterations.append(clock.time())
                run_state.sleep_but_awaken_if_stopped(60)

        thread = WorkerThread(work, fake_clock=clock, name="worker")
        thread.start()
        self.assertTrue(clock.block_until_n_waiting_threads(1, timeout=10))
        thread.stop()

        self.assertFalse(thread.is_alive())
        self.assertEqual(iterations, [0.0])

    def test_exception_raised_on_join(self):
        def work(run_state):
            raise ValueError("failed in thread")

        thread = WorkerThread(work, name="failing")
        thread.start()
        self.assertRaises(ValueError, thread.join, 10)

    def test_fake_clock_time(self):
        clock = FakeClock(start_time=5.0)
        thread = StoppableThread(fake_clock=clock)
        self.assertEqual(thread._time(), 5.0)
        clock.advance_time(set_to=7.5)
        self.assertEqual(thread._time(), 7.5)
        self.assertEqual(util.current_time_ms(clock), 7500)
