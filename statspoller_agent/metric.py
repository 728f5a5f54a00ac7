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
"""The Metric value object, its buffer line encoding and the path sanitizers used by the output protocols."""

import decimal
import numbers
import re


class ParseError(Exception):
    """Raised when a buffered line cannot be turned back into a Metric."""

    def __init__(self, line, message):
        self.line = line
        Exception.__init__(self, "Could not parse buffered line %r: %s" % (line, message))


def to_decimal(raw_value):
    """Converts a raw numeric value to a Decimal.

    @return: The Decimal, or None if `raw_value` is not a finite number.  Booleans are not numbers.
    @rtype: decimal.Decimal|None
    """
    if raw_value is None or isinstance(raw_value, bool):
        return None

    if isinstance(raw_value, decimal.Decimal):
        value = raw_value
    elif isinstance(raw_value, numbers.Integral):
        value = decimal.Decimal(int(raw_value))
    elif isinstance(raw_value, float):
        # repr() gives the shortest string that round trips, which avoids binary expansion noise.
        value = decimal.Decimal(repr(raw_value))
    elif hasattr(raw_value, "to_decimal"):
        # bson.decimal128.Decimal128
        value = raw_value.to_decimal()
    else:
        return None

    if not value.is_finite():
        return None
    return value


def format_value(value):
    """Renders a Decimal as a plain string without exponent or trailing zeros.

    @type value: decimal.Decimal
    @rtype: str
    """
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


class Metric(object):
    """A single numeric sample.

    @ivar path: The dot separated metric path.
    @ivar value: The value as a `decimal.Decimal`.
    @ivar timestamp: Milliseconds since epoch.
    """

    __slots__ = ("__path", "__value", "__timestamp")

    def __init__(self, path, value, timestamp):
        if not path:
            raise ValueError("A metric path cannot be empty")
        decimal_value = to_decimal(value)
        if decimal_value is None:
            raise ValueError("Metric %s has a non numeric value %r" % (path, value))
        self.__path = path
        self.__value = decimal_value
        self.__timestamp = int(timestamp)

    @property
    def path(self):
        return self.__path

    @property
    def value(self):
        return self.__value

    @property
    def timestamp(self):
        return self.__timestamp

    @property
    def timestamp_secs(self):
        return self.__timestamp // 1000

    def with_prefix(self, prefix):
        """Returns a copy whose path is `prefix.path`.  An empty prefix returns this instance."""
        if not prefix:
            return self
        return Metric("%s.%s" % (prefix, self.__path), self.__value, self.__timestamp)

    def is_stale(self, now_ms, max_age_ms):
        return now_ms - self.__timestamp > max_age_ms

    def to_line(self):
        """Returns the buffer line for this metric, including the trailing newline."""
        return "%s %s %d\n" % (self.__path, format_value(self.__value), self.__timestamp)

    @staticmethod
    def from_line(line):
        """Parses a line previously produced by `to_line`.

        @type line: str
        @rtype: Metric
        @raise ParseError: If the line is malformed.
        """
        fields = line.rstrip("\r\n").split(" ")
        if len(fields) != 3:
            raise ParseError(line, "expected 3 fields but found %d" % len(fields))

        path, raw_value, raw_timestamp = fields
        if not path:
            raise ParseError(line, "empty metric path")
        try:
            value = decimal.Decimal(raw_value)
        except decimal.InvalidOperation:
            raise ParseError(line, "invalid value %r" % raw_value)
        if not value.is_finite():
            raise ParseError(line, "invalid value %r" % raw_value)
        try:
            timestamp = int(raw_timestamp)
        except ValueError:
            raise ParseError(line, "invalid timestamp %r" % raw_timestamp)

        return Metric(path, value, timestamp)

    def __eq__(self, other):
        if not isinstance(other, Metric):
            return NotImplemented
        return (
            self.__path == other.__path
            and self.__value == other.__value
            and self.__timestamp == other.__timestamp
        )

    def __ne__(self, other):
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __hash__(self):
        return hash((self.__path, self.__value, self.__timestamp))

    def __repr__(self):
        return "Metric(%r, %s, %d)" % (self.__path, format_value(self.__value), self.__timestamp)


_WHITESPACE_RE = re.compile(r"\s")
_GRAPHITE_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._\-|;:#=]")
_REPEATED_DOTS_RE = re.compile(r"\.{2,}")
_OPENTSDB_UNSAFE_RE = re.compile(r"[^\w\-./]")


def graphite_sanitize(value, sanitize=True, substitute=True):
    """Makes `value` safe for use as a Graphite metric path.

    @param sanitize: Replace whitespace, slashes and any other unsafe character, collapse empty path segments.
    @param substitute: Replace `%` with `Pct`.
    """
    if substitute:
        value = value.replace("%", "Pct")
    if sanitize:
        value = _WHITESPACE_RE.sub("_", value)
        value = value.replace("/", "|").replace("\\", "|")
        value = _GRAPHITE_UNSAFE_RE.sub("_", value)
        value = _REPEATED_DOTS_RE.sub(".", value).strip(".")
    return value


def opentsdb_sanitize(value, sanitize=True, substitute=True):
    """Makes `value` safe for use as an OpenTSDB metric name or tag.

    OpenTSDB accepts letters (including unicode letters), digits, `-`, `_`, `.` and `/`.
    """
    if substitute:
        value = value.replace("%", "Pct")
    if sanitize:
        value = _OPENTSDB_UNSAFE_RE.sub("_", value)
    return value


def sanitize_path_segment(value):
    """Makes a name usable as a single path segment, e.g. `host.example:27017` -> `host-example_27017`."""
    return value.replace(".", "-").replace(":", "_")
