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

import mock

from statspoller_agent.config_util import (
    BadConfiguration,
    convert_config_param,
    get_config_from_env,
    parse_list_of_strings,
)
from statspoller_agent.test_base import AgentTestCase


class ConvertConfigParamTest(AgentTestCase):
    def test_same_type(self):
        self.assertEqual(convert_config_param("f", 5, int), 5)
        self.assertEqual(convert_config_param("f", {"a": 1}, dict), {"a": 1})

    def test_from_string(self):
        self.assertEqual(convert_config_param("f", "5", int), 5)
        self.assertEqual(convert_config_param("f", "2.5", float), 2.5)
        self.assertTrue(convert_config_param("f", "True", bool))
        self.assertFalse(convert_config_param("f", "no", bool))
        self.assertEqual(convert_config_param("f", "[a, 'b']", list), ["a", "b"])

    def test_numbers(self):
        self.assertEqual(convert_config_param("f", 5, float), 5.0)
        self.assertEqual(convert_config_param("f", 5.0, int), 5)
        self.assertEqual(convert_config_param("f", 5, str), "5")

    def test_fraction_dropped_refused(self):
        self.assertRaises(BadConfiguration, convert_config_param, "f", 5.5, int)

    def test_prohibited(self):
        try:
            convert_config_param("f", 1, bool)
        except BadConfiguration as e:
            self.assertEqual(e.error_code, "illegalConversion")
            self.assertEqual(e.field, "f")
        else:
            self.fail("Expected BadConfiguration")

    def test_not_a_number(self):
        self.assertRaises(BadConfiguration, convert_config_param, "f", "five", int)

    def test_parse_list_of_strings(self):
        self.assertEqual(parse_list_of_strings(" a , b ,, c "), ["a", "b", "c"])
        self.assertEqual(parse_list_of_strings("[]"), [])


class GetConfigFromEnvTest(AgentTestCase):
    def test_not_set(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertIsNone(get_config_from_env("output_interval", convert_to=float))

    def test_converted(self):
        with mock.patch.dict(os.environ, {"STATSPOLLER_OUTPUT_INTERVAL": "12.5"}):
            self.assertEqual(get_config_from_env("output_interval", convert_to=float), 12.5)

    def test_lower_case_name(self):
        with mock.patch.dict(os.environ, {"statspoller_debug_level": "2"}, clear=True):
            self.assertEqual(get_config_from_env("debug_level", convert_to=int), 2)

    def test_conflict_logged(self):
        logger = mock.Mock()
        with mock.patch.dict(os.environ, {"STATSPOLLER_DEBUG_LEVEL": "2"}):
            get_config_from_env("debug_level", convert_to=int, logger=logger, param_val=3)
        self.assertEqual(logger.warning.call_count, 1)
