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
"""
Implements the StatsPoller agent, as well as the support for building your own collectors.

The StatsPoller agent is a daemon polling metrics sources (MongoDB, MySQL, Apache, the file system) on independent
schedules.  Every collector appends the metrics it gathers to its own local buffer, and a single dispatcher thread
forwards the buffered metrics to Graphite and OpenTSDB.

The classes exported by this package are:
  MetricCollector            -- The base class of all collectors, used to implement your own.
  CollectorConfig            -- Holds and retrieves the configuration of a collector instance.
  Metric                     -- A single numeric sample.
  AgentLogger                -- The agent's version of logging.Logger with rate limiting and error codes.
  StoppableThread            -- Small extensions to Thread that provides a centralized way to stop the thread.
  RunState                   -- Small abstraction that communicates when an ongoing process should stop.
  BadCollectorConfiguration  -- Exception thrown when the configuration of a collector is bad.

The methods exported are:
  getLogger                  -- Used like logging.getLogger to retrieve an AgentLogger instance for a module.
  define_config_option       -- Registers an option of a collector module, with its default and type.

The constants exported are:
  DEBUG_LEVEL_0 to DEBUG_LEVEL_5  -- Well known log levels that can be used to log debugging information.
"""

from statspoller_agent.__statspoller__ import STATSPOLLER_VERSION

from statspoller_agent.agent_logging import getLogger
from statspoller_agent.agent_logging import AgentLogger
from statspoller_agent.agent_logging import DEBUG_LEVEL_0, DEBUG_LEVEL_1, DEBUG_LEVEL_2
from statspoller_agent.agent_logging import DEBUG_LEVEL_3, DEBUG_LEVEL_4, DEBUG_LEVEL_5

from statspoller_agent.metric import Metric
from statspoller_agent.metric_collector import MetricCollector
from statspoller_agent.metric_collector import CollectorConfig
from statspoller_agent.metric_collector import BadCollectorConfiguration
from statspoller_agent.metric_collector import define_config_option

from statspoller_agent.util import StoppableThread
from statspoller_agent.util import RunState

__version__ = STATSPOLLER_VERSION

__all__ = [
    "MetricCollector",
    "CollectorConfig",
    "BadCollectorConfiguration",
    "Metric",
    "getLogger",
    "AgentLogger",
    "StoppableThread",
    "RunState",
    "DEBUG_LEVEL_0",
    "DEBUG_LEVEL_1",
    "DEBUG_LEVEL_2",
    "DEBUG_LEVEL_3",
    "DEBUG_LEVEL_4",
    "DEBUG_LEVEL_5",
    "define_config_option",
]
