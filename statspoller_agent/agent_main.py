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
"""The StatsPoller agent process.

Usage: statspoller-agent [options]

The agent runs in the foreground until it receives SIGTERM or SIGINT.  It then stops every collector, lets the
dispatcher flush what is buffered and exits.
"""

import os
import signal
import sys
from optparse import OptionParser

from statspoller_agent import agent_logging
from statspoller_agent.__statspoller__ import STATSPOLLER_VERSION
from statspoller_agent.collectors_manager import CollectorsManager
from statspoller_agent.config_util import BadConfiguration
from statspoller_agent.configuration import DEFAULT_CONFIG_FILE_PATH, Configuration
from statspoller_agent.dispatcher import MetricDispatcher
from statspoller_agent.output_sinks import create_sink
from statspoller_agent.util import RunState, json_encode

log = agent_logging.getLogger(__name__)

# How long to wait for the collectors and the dispatcher to stop, in seconds.
STOP_TIMEOUT = 30


class StatsPollerAgent(object):
    """Wires the collectors, the dispatcher and the sinks together and runs them until terminated."""

    def __init__(self, debug_level_override=None):
        self.__config = None
        self.__run_state = None
        self.__debug_level_override = debug_level_override

    def main(self, config_file_path, print_config=False):
        """Runs the agent.

        @param config_file_path: The path to the configuration file.
        @param print_config: If True, only validates the configuration and prints the effective values.

        @return: The exit status code to exit with, such as 0 for success.
        @rtype: int
        """
        agent_logging.set_log_destination(use_stdout=True)
        try:
            self.__config = self.__read_and_verify_config(config_file_path)
            collectors_manager = CollectorsManager(self.__config)
        except BadConfiguration as e:
            print(
                "Error reading configuration file: %s\n"
                "Terminating agent, please fix the configuration file and restart agent." % str(e),
                file=sys.stderr,
            )
            return 1

        if print_config:
            print(json_encode(self.__config.to_dict()))
            return 0

        return self.__run(collectors_manager)

    def __read_and_verify_config(self, config_file_path):
        config = Configuration(config_file_path, log)
        config.parse()
        return config

    def __handle_terminate(self, signum, _frame):
        """Invoked when the process is requested to shutdown, such as by a signal"""
        if self.__run_state is not None and self.__run_state.is_running():
            log.info("Received signal %d to shutdown, attempting to shutdown cleanly.", signum)
            self.__run_state.stop()

    def __run(self, collectors_manager):
        """Runs until a termination signal is received.

        @type collectors_manager: CollectorsManager
        @rtype: int
        """
        self.__run_state = RunState()

        agent_log_path = self.__config.agent_log_path
        if agent_log_path is not None:
            agent_logging.set_log_destination(agent_log_file_path=agent_log_path)
        debug_level = self.__config.debug_level
        if self.__debug_level_override is not None:
            debug_level = self.__debug_level_override
        agent_logging.set_log_level(debug_level)

        signal.signal(signal.SIGTERM, self.__handle_terminate)
        signal.signal(signal.SIGINT, self.__handle_terminate)

        log.info(
            "Starting statspoller agent version %s (pid %d) with configuration %s",
            STATSPOLLER_VERSION,
            os.getpid(),
            self.__config.file_path,
        )

        sinks = [create_sink(sink_config) for sink_config in self.__config.sink_configs]
        for sink in sinks:
            if not sink.enabled:
                log.info("Output %s is disabled", sink.sink_id)

        dispatcher = None
        try:
            collectors_manager.start_manager()
            dispatcher = MetricDispatcher(self.__config, collectors_manager.buffers, sinks)
            dispatcher.start()

            while self.__run_state.is_running():
                self.__run_state.sleep_but_awaken_if_stopped(60)
        except OSError as e:
            log.error("Could not start the agent: %s", str(e), error_code="startFailed")
            self.__run_state.stop()
            return 1
        finally:
            log.info("Stopping collectors")
            collectors_manager.stop_manager(join_timeout=STOP_TIMEOUT)
            if dispatcher is not None:
                log.info("Flushing buffered metrics")
                dispatcher.stop(join_timeout=STOP_TIMEOUT)
            log.info("Statspoller agent stopped")

        return 0


def main(argv=None):
    parser = OptionParser(
        usage="Usage: statspoller-agent [options]",
        version="statspoller-agent v" + STATSPOLLER_VERSION,
    )
    parser.add_option(
        "-c",
        "--config-file",
        dest="config_filename",
        default=DEFAULT_CONFIG_FILE_PATH,
        help="Read configuration from FILE (defaults to %s)" % DEFAULT_CONFIG_FILE_PATH,
        metavar="FILE",
    )
    parser.add_option(
        "",
        "--debug-level",
        dest="debug_level",
        type="int",
        default=None,
        help="Overrides the debug_level of the configuration file, from 0 to 5.",
    )
    parser.add_option(
        "",
        "--print-config",
        action="store_true",
        dest="print_config",
        default=False,
        help="Validates the configuration file, prints the effective configuration and exits.",
    )

    (options, args) = parser.parse_args(argv)
    if args:
        print("Unexpected arguments: %s" % " ".join(args), file=sys.stderr)
        parser.print_help(sys.stderr)
        return 1

    if options.debug_level is not None and not 0 <= options.debug_level <= 5:
        print("The debug level must be between 0 and 5", file=sys.stderr)
        return 1

    return StatsPollerAgent(debug_level_override=options.debug_level).main(
        os.path.abspath(options.config_filename), print_config=options.print_config
    )


if __name__ == "__main__":
    sys.exit(main())
