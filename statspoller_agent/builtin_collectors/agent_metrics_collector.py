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
Reports the resource usage of the agent process itself, using psutil so it works on every platform:

    - app.cpu.user, app.cpu.system   CPU time in 1/100th of a second
    - app.uptime                     Milliseconds since the process started
    - app.threads
    - app.mem.bytes.resident, app.mem.bytes.vmsize
    - app.fds                        Open file descriptors, where the platform supports it
"""

import os

import psutil

from statspoller_agent.metric_collector import MetricCollector, define_config_option

__collector__ = __name__

define_config_option(
    __collector__,
    "pid",
    "Optional (defaults to the agent's own process). The id of the process to report on.",
    convert_to=int,
    min_value=1,
)
define_config_option(
    __collector__,
    "prefix",
    "Optional (defaults to `StatsPollerAgent`). The prefix of every metric path.",
    default="StatsPollerAgent",
    convert_to=str,
)


class AgentMetricsCollector(MetricCollector):
    def _initialize(self):
        self.__pid = self._config.get("pid") or os.getpid()
        self.__process = None

    def poll(self):
        if self.__process is None:
            self.__process = psutil.Process(self.__pid)

        process = self.__process
        with process.oneshot():
            cpu_times = process.cpu_times()
            memory_info = process.memory_info()
            num_threads = process.num_threads()
            create_time = process.create_time()
            num_fds = process.num_fds() if hasattr(process, "num_fds") else None

        samples = [
            ("app.cpu.user", round(cpu_times.user * 100)),
            ("app.cpu.system", round(cpu_times.system * 100)),
            ("app.uptime", max(0, self._cycle_timestamp - int(create_time * 1000))),
            ("app.threads", num_threads),
            ("app.mem.bytes.resident", memory_info.rss),
            ("app.mem.bytes.vmsize", memory_info.vms),
        ]
        if num_fds is not None:
            samples.append(("app.fds", num_fds))
        return samples
