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

import logging
import sys

from statspoller_agent import agent_logging
from statspoller_agent.test_base import AgentLogCaptureTestCase


class AgentLoggingTest(AgentLogCaptureTestCase):
    def setUp(self):
        super(AgentLoggingTest, self).setUp()
        self.__logger = agent_logging.getLogger("statspoller_agent.agent_main")

    def test_output_to_file(self):
        self.__logger.info("Hello world")
        self.assertLogFileContainsLineRegex(r"^\d{4}-\d\d-\d\d \d\d:\d\d:\d\d\.\d{3}Z INFO \[core\] .*Hello world$")

    def test_caller_location(self):
        self.__logger.info("Where am I")
        self.assertLogFileContainsLineRegex(r"\[agent_logging_test\.py:\d+\] Where am I")

    def test_caller_location_with_stacklevel(self):
        def report(message):
            self.__logger.info(message, stacklevel=2)

        report("From the helper's caller")
        caller_line = sys._getframe().f_lineno - 1
        self.assertLogFileContainsLineRegex(
            r"\[agent_logging_test\.py:%d\] From the helper's caller" % caller_line
        )

    def test_component_name(self):
        self.assertEqual(self.__logger.component, "core")
        self.assertEqual(agent_logging.getLogger("statspoller_agent").component, "core")
        self.assertEqual(
            agent_logging.getLogger("statspoller_agent.builtin_collectors.mongo_collector").component,
            "collector:mongo_collector",
        )
        self.assertEqual(
            agent_logging.getLogger("statspoller_agent.builtin_collectors.mongo_collector(replica-2)").component,
            "collector:replica-2",
        )
        self.assertEqual(agent_logging.getLogger("my_company.thing").component, "my_company.thing")

    def test_error_code(self):
        self.__logger.warning("Bad things", error_code="badThings")
        self.assertLogFileContainsLineRegex(r'WARNING \[core\] .*\[error="badThings"\] Bad things')

    def test_rate_limited(self):
        for current_time in (100.0, 110.0, 159.0):
            self.__logger.info("Limited %d", current_time, limit_once_per_x_secs=60, current_time=current_time)
        self.__logger.info("Limited %d", 161, limit_once_per_x_secs=60, current_time=161.0)

        self.assertLogFileContainsLineRegex("Limited 100")
        self.assertLogFileDoesntContainsLineRegex("Limited 110")
        self.assertLogFileDoesntContainsLineRegex("Limited 159")
        self.assertLogFileContainsLineRegex("Limited 161")

    def test_rate_limit_key(self):
        self.__logger.info("First", limit_once_per_x_secs=60, limit_key="shared", current_time=1.0)
        self.__logger.info("Second", limit_once_per_x_secs=60, limit_key="shared", current_time=2.0)
        self.__logger.info("Third", limit_once_per_x_secs=60, limit_key="other", current_time=3.0)

        self.assertLogFileContainsLineRegex("First")
        self.assertLogFileDoesntContainsLineRegex("Second")
        self.assertLogFileContainsLineRegex("Third")

    def test_debug_levels(self):
        agent_logging.set_log_level(0)
        self.__logger.log(agent_logging.DEBUG_LEVEL_1, "Debug detail")
        self.__logger.info("Regular")

        agent_logging.set_log_level(3)
        self.__logger.log(agent_logging.DEBUG_LEVEL_3, "Deep detail")
        self.__logger.log(agent_logging.DEBUG_LEVEL_4, "Too deep")

        self.assertLogFileDoesntContainsLineRegex("Debug detail")
        self.assertLogFileContainsLineRegex("Regular")
        self.assertLogFileContainsLineRegex("Deep detail")
        self.assertLogFileDoesntContainsLineRegex("Too deep")

    def test_exception(self):
        try:
            raise ValueError("broken")
        except ValueError:
            self.__logger.exception("Caught it", error_code="caught")
        self.assertLogFileContainsLineRegex(r'ERROR \[core\] .*\[error="caught"\] Caught it')
        self.assertLogFileContainsLineRegex("ValueError: broken")

    def test_loggers_are_agent_loggers(self):
        self.assertTrue(isinstance(logging.getLogger("statspoller_agent.something"), agent_logging.AgentLogger))
