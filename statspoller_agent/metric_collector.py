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
"""The base class for all collectors and the per collector configuration.

To write a collector, derive from `MetricCollector`, read your options in `_initialize` and implement `poll`.
Register each option with `define_config_option` at module level so its default and type are known.
"""

import types
from collections.abc import Mapping

from statspoller_agent import agent_logging
from statspoller_agent.config_util import convert_config_param, BadConfiguration
from statspoller_agent.document_flattener import document_to_metrics
from statspoller_agent.metric import Metric, graphite_sanitize
from statspoller_agent.util import StoppableThread

DEFAULT_COLLECTOR_INTERVAL = 60
# The shortest polling interval accepted, in seconds.
MIN_COLLECTOR_INTERVAL = 1

# Maps a collector module name to a dict of option name -> ConfigOption.
__collector_options__ = {}


class ConfigOption(object):
    """Describes one configuration option of a collector module."""

    def __init__(
        self,
        option_name,
        description,
        default=None,
        convert_to=None,
        min_value=None,
        max_value=None,
        required_option=False,
    ):
        self.option_name = option_name
        self.description = description
        self.default = default
        self.convert_to = convert_to
        self.min_value = min_value
        self.max_value = max_value
        self.required_option = required_option


def define_config_option(
    collector_module,
    option_name,
    option_description,
    required_option=False,
    convert_to=None,
    default=None,
    min_value=None,
    max_value=None,
):
    """Registers an option for a collector module.

    @param collector_module: The module name, usually `__name__` of the collector's module.
    @param option_name: The option's key in the collector's configuration entry.
    @param option_description: Human readable description.
    @param required_option: If True, configuration loading fails when the option is missing.
    @param convert_to: The type the value is converted to.
    @param default: The value used when the option is missing.
    """
    __collector_options__.setdefault(collector_module, {})[option_name] = ConfigOption(
        option_name,
        option_description,
        default=default,
        convert_to=convert_to,
        min_value=min_value,
        max_value=max_value,
        required_option=required_option,
    )


def get_config_options(collector_module):
    """Returns the options registered for `collector_module`, keyed by name.

    @rtype: dict
    """
    return dict(__collector_options__.get(collector_module, {}))


class BadCollectorConfiguration(BadConfiguration):
    """Raised by a collector when its configuration is invalid."""

    def __init__(self, message, field):
        BadConfiguration.__init__(self, message, field, "badCollectorConfig")


class CollectorConfig(Mapping):
    """The read-only configuration of one collector instance.

    Besides the well known properties, every option from the collector's configuration entry is available through
    `get`, which applies the defaults and type conversions registered with `define_config_option`.
    """

    def __init__(
        self,
        options,
        module_name,
        collector_id,
        buffer_path=None,
        write_to_disk=True,
    ):
        """
        @param options: The collector's configuration entry.
        @param module_name: The full module name of the collector.
        @param collector_id: Unique id of the instance, used in logs and to name its buffer.
        @param buffer_path: Path of the buffer file, used when `write_to_disk` is True.
        @param write_to_disk: Whether metrics are buffered in a file or in memory.
        """
        self.__options = types.MappingProxyType(dict(options))
        self.__module_name = module_name
        self.__collector_id = collector_id
        self.__buffer_path = buffer_path
        self.__write_to_disk = write_to_disk

    @property
    def module_name(self):
        return self.__module_name

    @property
    def collector_id(self):
        return self.__collector_id

    @property
    def buffer_path(self):
        return self.__buffer_path

    @property
    def write_to_disk(self):
        return self.__write_to_disk

    @property
    def enabled(self):
        enabled = self.get("enabled", convert_to=bool)
        return True if enabled is None else enabled

    @property
    def interval(self):
        """The polling interval in seconds."""
        interval = self.get("interval", convert_to=float, min_value=MIN_COLLECTOR_INTERVAL)
        return float(DEFAULT_COLLECTOR_INTERVAL) if interval is None else interval

    @property
    def prefix(self):
        """The path prefix of every metric of this collector, already sanitized."""
        return graphite_sanitize(self.get("prefix", convert_to=str) or "")

    def get(
        self,
        field,
        required_field=False,
        default=None,
        convert_to=None,
        min_value=None,
        max_value=None,
    ):
        """Returns the value of an option, applying registered defaults, conversion and bounds checks.

        Arguments not given fall back to what was registered with `define_config_option` for this module.

        @raise BadCollectorConfiguration: If the field is required but missing, or its value is invalid.
        """
        option = __collector_options__.get(self.__module_name, {}).get(field)
        if option is not None:
            required_field = required_field or option.required_option
            if default is None:
                default = option.default
            if convert_to is None:
                convert_to = option.convert_to
            if min_value is None:
                min_value = option.min_value
            if max_value is None:
                max_value = option.max_value

        value = self.__options.get(field)
        if value is None:
            if required_field:
                raise BadCollectorConfiguration(
                    'Missing required field "%s" for collector %s' % (field, self.__collector_id),
                    field,
                )
            value = default

        if value is None:
            return None

        if convert_to is not None:
            try:
                value = convert_config_param(field, value, convert_to)
            except BadConfiguration as e:
                raise BadCollectorConfiguration(e.message, field)

        if min_value is not None and value < min_value:
            raise BadCollectorConfiguration(
                'Value of %s for field "%s" is less than the minimum of %s'
                % (value, field, min_value),
                field,
            )
        if max_value is not None and value > max_value:
            raise BadCollectorConfiguration(
                'Value of %s for field "%s" is greater than the maximum of %s'
                % (value, field, max_value),
                field,
            )
        return value

    def __getitem__(self, field):
        return self.__options[field]

    def __iter__(self):
        return iter(self.__options)

    def __len__(self):
        return len(self.__options)

    def __repr__(self):
        return "CollectorConfig(%s, %s)" % (self.__collector_id, dict(self.__options))


class MetricCollector(StoppableThread):
    """Base class for all collectors.

    Each collector runs in its own thread.  Every cycle it polls its source, converts the result into metrics
    stamped with the cycle's start time, appends them to its buffer and sleeps for what is left of the interval.
    A failing poll is logged and counts as an empty result; nothing raised by a cycle ends the loop.

    Derived classes should override:
      _initialize  -- Reads the collector's options.  May raise BadCollectorConfiguration.
      poll         -- Returns the metrics of one cycle.
      _close       -- Releases connections when the collector stops.
    """

    def __init__(self, collector_config, logger, buffer=None, fake_clock=None):
        """
        @param collector_config: The configuration of this instance.
        @param logger: The logger to use.
        @param buffer: The MetricBuffer (or MemoryMetricBuffer) metrics are appended to.
        @param fake_clock: For tests, the clock controlling time and sleeps.

        @type collector_config: CollectorConfig
        @type logger: statspoller_agent.agent_logging.AgentLogger
        """
        self._config = collector_config
        self._logger = logger
        self._buffer = buffer
        self.collector_id = collector_config.collector_id

        self.__enabled = collector_config.enabled
        self.__interval = collector_config.interval
        self.__prefix = collector_config.prefix

        # Start time of the current cycle, in ms since epoch.  Set before `poll` is invoked.
        self._cycle_timestamp = None

        self.total_polls = 0
        self.failed_polls = 0
        self.total_metrics = 0

        StoppableThread.__init__(
            self, name="collector thread (%s)" % self.collector_id, fake_clock=fake_clock
        )

        self._initialize()

    def _initialize(self):
        pass

    @property
    def enabled(self):
        return self.__enabled

    @property
    def interval(self):
        return self.__interval

    @property
    def prefix(self):
        return self.__prefix

    @property
    def buffer(self):
        return self._buffer

    def poll(self):
        """Polls the source once.

        Invoked once per cycle from the collector's thread.  `self._cycle_timestamp` holds the cycle's timestamp.

        @return: The samples of this cycle: Metrics, `(path, value)` pairs, or a mapping that is filtered and
            flattened into metrics.  Paths must not include the collector's prefix, it is added afterwards.
        """
        raise NotImplementedError("poll must be implemented by the collector")

    def _close(self):
        pass

    def run_and_propagate(self):
        if not self.__enabled:
            self._logger.info("Collector %s is disabled", self.collector_id)
            return

        self._logger.info(
            "Starting collector %s with an interval of %.1f secs", self.collector_id, self.__interval
        )
        try:
            while self.__enabled and self._run_state.is_running():
                cycle_start = self._time()
                self.run_cycle(cycle_start)

                elapsed = self._time() - cycle_start
                sleep_time = max(0.0, self.__interval - elapsed)
                self._run_state.sleep_but_awaken_if_stopped(sleep_time)
        finally:
            self._close_quietly()
            self._logger.info("Collector %s stopped", self.collector_id)

    def run_cycle(self, cycle_start=None):
        """Runs one poll/convert/append cycle.

        @param cycle_start: The cycle's start time in seconds.  Defaults to now.
        @return: The number of metrics appended.
        @rtype: int
        """
        if cycle_start is None:
            cycle_start = self._time()
        self._cycle_timestamp = int(cycle_start * 1000)
        self.total_polls += 1

        try:
            result = self.poll()
            metrics = self._to_metrics(result)
        except Exception:
            self.failed_polls += 1
            self._logger.exception(
                "Failed to poll collector %s, treating it as an empty result",
                self.collector_id,
                error_code="pollError",
                limit_once_per_x_secs=300,
                limit_key="poll-%s" % self.collector_id,
            )
            return 0

        if not metrics:
            return 0

        metrics = [metric.with_prefix(self.__prefix) for metric in metrics]
        try:
            self._buffer.append(metrics)
        except Exception:
            self._logger.exception(
                "Failed to append %d metrics to buffer %s",
                len(metrics),
                self._buffer,
                error_code="bufferWriteError",
                limit_once_per_x_secs=300,
                limit_key="buffer-%s" % self.collector_id,
            )
            return 0

        self.total_metrics += len(metrics)
        self._logger.log(
            agent_logging.DEBUG_LEVEL_1,
            "Collector %s appended %d metrics",
            self.collector_id,
            len(metrics),
        )
        return len(metrics)

    def _to_metrics(self, result):
        if result is None:
            return []
        if isinstance(result, Mapping):
            return document_to_metrics(result, "", self._cycle_timestamp)

        metrics = []
        for item in result:
            if isinstance(item, Metric):
                metrics.append(item)
                continue
            path, value = item
            path = graphite_sanitize(path)
            if not path:
                continue
            try:
                metrics.append(Metric(path, value, self._cycle_timestamp))
            except ValueError:
                self._logger.log(
                    agent_logging.DEBUG_LEVEL_2,
                    "Dropping non numeric value %r for %s",
                    value,
                    path,
                )
        return metrics

    def _close_quietly(self):
        try:
            self._close()
        except Exception:
            self._logger.exception(
                "Error while closing collector %s", self.collector_id, error_code="closeError"
            )

    def __repr__(self):
        return "%s(%s)" % (self.__class__.__name__, self.collector_id)
