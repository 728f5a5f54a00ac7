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

import importlib
import inspect
import time

from statspoller_agent import agent_logging
from statspoller_agent.metric_buffer import MetricBuffer, MemoryMetricBuffer
from statspoller_agent.metric_collector import MetricCollector, BadCollectorConfiguration

log = agent_logging.getLogger(__name__)


def load_collector_class(module_name):
    """Imports `module_name` and returns the MetricCollector subclass it defines.

    @rtype: type
    @raise BadCollectorConfiguration: If the module cannot be imported or defines no collector.
    """
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise BadCollectorConfiguration(
            "Could not import collector module %s: %s" % (module_name, e), "module"
        )

    for _, candidate in inspect.getmembers(module, inspect.isclass):
        if (
            issubclass(candidate, MetricCollector)
            and candidate is not MetricCollector
            and candidate.__module__ == module.__name__
        ):
            return candidate

    raise BadCollectorConfiguration(
        "Module %s does not define a collector" % module_name, "module"
    )


class CollectorsManager(object):
    """Creates the collectors listed in the configuration and starts and stops their threads."""

    def __init__(self, configuration, fake_clock=None):
        """Builds every collector.  Configuration problems surface here, before anything runs.

        @type configuration: statspoller_agent.configuration.Configuration
        @raise BadCollectorConfiguration: If a collector cannot be created from its configuration.
        """
        self.__collectors = []
        self.__running_collectors = []
        for collector_config in configuration.collector_configs:
            self.__collectors.append(
                self.build_collector(collector_config, fake_clock=fake_clock)
            )

    @staticmethod
    def build_collector(collector_config, fake_clock=None):
        """Builds the collector instance described by `collector_config`, with its buffer and logger.

        @type collector_config: statspoller_agent.metric_collector.CollectorConfig
        @rtype: MetricCollector
        """
        collector_class = load_collector_class(collector_config.module_name)

        if collector_config.write_to_disk:
            if not collector_config.buffer_path:
                raise BadCollectorConfiguration(
                    "Collector %s writes to disk but has no buffer path" % collector_config.collector_id,
                    "buffer_path",
                )
            buffer = MetricBuffer(collector_config.buffer_path)
        else:
            buffer = MemoryMetricBuffer(collector_config.collector_id)

        return collector_class(
            collector_config,
            agent_logging.getLogger(
                "%s(%s)" % (collector_config.module_name, collector_config.collector_id)
            ),
            buffer=buffer,
            fake_clock=fake_clock,
        )

    @property
    def collectors(self):
        """Returns every collector, enabled or not.

        @rtype: list[MetricCollector]
        """
        return list(self.__collectors)

    @property
    def buffers(self):
        """Returns the buffers of the enabled collectors, for the dispatcher."""
        return [collector.buffer for collector in self.__collectors if collector.enabled]

    def start_manager(self):
        """Creates the buffer of every enabled collector and starts the collector threads.

        @raise OSError: If a buffer file cannot be created.
        """
        for collector in self.__collectors:
            if not collector.enabled:
                log.info("Collector %s is disabled, not starting it", collector.collector_id)
                continue
            collector.buffer.create()

        for collector in self.__collectors:
            if not collector.enabled:
                continue
            log.info("Starting collector %s", collector.collector_id)
            collector.start()
            self.__running_collectors.append(collector)

    def stop_manager(self, wait_on_join=True, join_timeout=5):
        """Stops all collectors.  In-flight polls are allowed to finish.

        @param wait_on_join: If True, blocks until the collector threads have finished.
        @param join_timeout: The maximum number of seconds to block for all joins together.
        """
        start_time = time.time()

        for collector in self.__running_collectors:
            # noinspection PyBroadException
            try:
                log.info("Stopping collector %s", collector.collector_id)
                collector.stop(wait_on_join=False)
            except Exception:
                log.exception("Failed to stop collector %s", collector.collector_id)

        if wait_on_join:
            for collector in self.__running_collectors:
                max_wait = start_time + join_timeout - time.time()
                if max_wait <= 0:
                    log.warning(
                        "Timed out waiting for collectors to stop", error_code="stopTimeout"
                    )
                    break
                # noinspection PyBroadException
                try:
                    collector.join(max_wait)
                except Exception:
                    log.exception(
                        "Collector %s failed with an exception", collector.collector_id
                    )

        self.__running_collectors = []
