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
"""Scrapes the machine readable page of Apache's mod_status.

The status url must end with `?auto`.  Every numeric field of the page is reported under its own name (for
example `Total_Accesses` or `BusyWorkers`) and the scoreboard is reported as the number of workers in each state
(for example `Scoreboard.Waiting`).
"""

import requests

from statspoller_agent.metric import to_decimal
from statspoller_agent.metric_collector import MetricCollector, define_config_option

__collector__ = __name__

define_config_option(
    __collector__,
    "status_url",
    "Optional (defaults to `http://localhost/server-status?auto`). The url of the machine readable status "
    "page.",
    default="http://localhost/server-status?auto",
    convert_to=str,
)
define_config_option(
    __collector__,
    "request_timeout",
    "Optional (defaults to 10). Seconds to wait for the status page.",
    default=10.0,
    convert_to=float,
    min_value=0,
)
define_config_option(
    __collector__,
    "prefix",
    "Optional (defaults to `ApacheHttp`). The prefix of every metric path.",
    default="ApacheHttp",
    convert_to=str,
)

SCOREBOARD_STATES = {
    "_": "Waiting",
    "S": "Starting",
    "R": "Reading",
    "W": "Sending",
    "K": "KeepAlive",
    "D": "DnsLookup",
    "C": "Closing",
    "L": "Logging",
    "G": "GracefullyFinishing",
    "I": "IdleCleanup",
    ".": "OpenSlot",
}


def parse_status_page(text):
    """Returns the `(name, value)` samples of a `server-status?auto` page.

    @type text: str
    @rtype: list
    """
    samples = []
    for line in text.splitlines():
        name, separator, value = line.partition(":")
        if not separator:
            continue
        name = name.strip()
        value = value.strip()

        if name == "Scoreboard":
            counts = dict((state, 0) for state in SCOREBOARD_STATES.values())
            for slot in value:
                state = SCOREBOARD_STATES.get(slot)
                if state is not None:
                    counts[state] += 1
            samples.extend(("Scoreboard.%s" % state, count) for state, count in sorted(counts.items()))
            continue

        try:
            number = float(value) if "." in value or "e" in value.lower() else int(value)
        except ValueError:
            continue
        if to_decimal(number) is not None:
            samples.append((name, number))
    return samples


class ApacheHttpCollector(MetricCollector):
    def _initialize(self):
        self.__url = self._config.get("status_url")
        self.__timeout = self._config.get("request_timeout")
        self.__session = None

    def __check_session(self):
        if self.__session is None:
            self.__session = requests.Session()
        return self.__session

    def _close(self):
        if self.__session is not None:
            self.__session.close()
            self.__session = None

    def poll(self):
        try:
            response = self.__check_session().get(self.__url, timeout=self.__timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            self._logger.warning(
                "Could not retrieve the Apache status page %s: %s",
                self.__url,
                str(e),
                error_code="apacheUnavailable",
                limit_once_per_x_secs=300,
                limit_key="apache-%s" % self.collector_id,
            )
            self._close()
            return [("Available", 0)]

        samples = parse_status_page(response.text)
        if not samples:
            self._logger.warning(
                "The status page %s did not match the expected format.  Make sure the url ends with `?auto`",
                self.__url,
                error_code="apacheBadFormat",
                limit_once_per_x_secs=3600,
                limit_key="apache-format-%s" % self.collector_id,
            )
        return [("Available", 1)] + samples
