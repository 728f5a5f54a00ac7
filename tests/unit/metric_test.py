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

from decimal import Decimal

from statspoller_agent.metric import (
    Metric,
    ParseError,
    format_value,
    graphite_sanitize,
    opentsdb_sanitize,
    sanitize_path_segment,
    to_decimal,
)
from statspoller_agent.test_base import AgentTestCase


class MetricTest(AgentTestCase):
    def test_to_line(self):
        metric = Metric("Mongo.serverStatus.uptime", 12, 1500000000123)
        self.assertEqual(metric.to_line(), "Mongo.serverStatus.uptime 12 1500000000123\n")
        self.assertEqual(metric.timestamp_secs, 1500000000)

    def test_from_line(self):
        metric = Metric.from_line("a.b 1.50 1000\n")
        self.assertEqual(metric.path, "a.b")
        self.assertEqual(metric.value, Decimal("1.50"))
        self.assertEqual(metric.timestamp, 1000)
        self.assertEqual(Metric.from_line(metric.to_line()), metric)

    def test_from_line_malformed(self):
        for line in [
            "",
            "a.b 1",
            "a.b 1 2 3",
            " 1 1000",
            "a.b one 1000",
            "a.b NaN 1000",
            "a.b Infinity 1000",
            "a.b 1 soon",
        ]:
            self.assertRaises(ParseError, Metric.from_line, line)

    def test_non_numeric_values_rejected(self):
        self.assertRaises(ValueError, Metric, "a", "12", 0)
        self.assertRaises(ValueError, Metric, "a", True, 0)
        self.assertRaises(ValueError, Metric, "a", float("nan"), 0)
        self.assertRaises(ValueError, Metric, "", 1, 0)

    def test_with_prefix(self):
        metric = Metric("a.b", 1, 0)
        self.assertEqual(metric.with_prefix("host").path, "host.a.b")
        self.assertIs(metric.with_prefix(""), metric)
        self.assertIs(metric.with_prefix(None), metric)

    def test_is_stale(self):
        metric = Metric("a", 1, 10000)
        self.assertFalse(metric.is_stale(100000, 90000))
        self.assertTrue(metric.is_stale(100001, 90000))

    def test_to_decimal(self):
        self.assertEqual(to_decimal(3), Decimal(3))
        self.assertEqual(to_decimal(0.1), Decimal("0.1"))
        self.assertEqual(to_decimal(Decimal("2.5")), Decimal("2.5"))
        self.assertIsNone(to_decimal(None))
        self.assertIsNone(to_decimal(False))
        self.assertIsNone(to_decimal("1"))
        self.assertIsNone(to_decimal(float("inf")))

    def test_format_value(self):
        self.assertEqual(format_value(Decimal("0.000")), "0")
        self.assertEqual(format_value(Decimal("1.500")), "1.5")
        self.assertEqual(format_value(Decimal("1E+3")), "1000")
        self.assertEqual(format_value(Decimal("-0.25")), "-0.25")


class SanitizeTest(AgentTestCase):
    def test_graphite_sanitize(self):
        self.assertEqual(graphite_sanitize("cpu %"), "cpu_Pct")
        self.assertEqual(graphite_sanitize("a/b\\c"), "a|b|c")
        self.assertEqual(graphite_sanitize("a..b."), "a.b")
        self.assertEqual(graphite_sanitize("a(b)"), "a_b_")
        self.assertEqual(graphite_sanitize("a b", sanitize=False), "a b")
        self.assertEqual(graphite_sanitize("50%", substitute=False), "50_")

    def test_graphite_sanitize_idempotent(self):
        for value in ["cpu %", "a/b c..d", "x:y;z=1#", "..lead.trail..", "a\tb\nc"]:
            once = graphite_sanitize(value)
            self.assertEqual(graphite_sanitize(once), once)

    def test_opentsdb_sanitize(self):
        self.assertEqual(opentsdb_sanitize("disk used %"), "disk_used_Pct")
        self.assertEqual(opentsdb_sanitize("a/b-c_d.e"), "a/b-c_d.e")
        self.assertEqual(opentsdb_sanitize("a:b"), "a_b")
        once = opentsdb_sanitize("x y:z%")
        self.assertEqual(opentsdb_sanitize(once), once)

    def test_sanitize_path_segment(self):
        self.assertEqual(sanitize_path_segment("db1.example.com:27017"), "db1-example-com_27017")
