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
"""Logging for the agent.

Every module should obtain its logger with `getLogger(__name__)`.  The returned `AgentLogger` is a regular
`logging.Logger` that understands a few extra keyword arguments on every logging call:

  error_code             -- A short code identifying the error, emitted as `[error="code"]` in the line.
  limit_once_per_x_secs  -- Emit the record at most once per this many seconds.
  limit_key              -- The key used for rate limiting.  Defaults to the message format string.
  current_time           -- Overrides the current time used for rate limiting, for tests.

Lines look like:

  2014-05-11 16:55:06.236Z INFO [core] [dispatcher.py:28] Sent 10 metrics
"""

import logging
import logging.handlers
import os
import sys
import threading
import time

# Debug levels.  DEBUG_LEVEL_0 is the regular INFO level, every higher level emits more detail.
DEBUG_LEVEL_0 = logging.INFO
DEBUG_LEVEL_1 = logging.DEBUG
DEBUG_LEVEL_2 = logging.DEBUG - 1
DEBUG_LEVEL_3 = logging.DEBUG - 2
DEBUG_LEVEL_4 = logging.DEBUG - 3
DEBUG_LEVEL_5 = logging.DEBUG - 4

__debug_levels__ = [
    DEBUG_LEVEL_0,
    DEBUG_LEVEL_1,
    DEBUG_LEVEL_2,
    DEBUG_LEVEL_3,
    DEBUG_LEVEL_4,
    DEBUG_LEVEL_5,
]

_srcfile = os.path.normcase(os.path.splitext(__file__)[0])

COLLECTORS_PACKAGE = "statspoller_agent.builtin_collectors."


class AgentLogger(logging.Logger):
    """Adds rate limiting and error codes on top of `logging.Logger`."""

    def __init__(self, name):
        logging.Logger.__init__(self, name)

        if name.endswith(")") and "(" in name:
            # Collector instance loggers are named `<module>(<collector id>)`.
            self.component = "collector:%s" % name[name.index("(") + 1 : -1]
        elif name.startswith(COLLECTORS_PACKAGE):
            self.component = "collector:%s" % name[len(COLLECTORS_PACKAGE) :]
        elif name.startswith("statspoller_agent") or name == "root":
            self.component = "core"
        else:
            self.component = name

        self.__rate_limit_lock = threading.Lock()
        # Maps a limit key to the last time a record with that key was emitted.
        self.__last_emitted = {}

    # noinspection PyMethodOverriding
    def _log(
        self,
        level,
        msg,
        args,
        exc_info=None,
        extra=None,
        stack_info=False,
        stacklevel=1,
        error_code=None,
        limit_once_per_x_secs=None,
        limit_key=None,
        current_time=None,
    ):
        if limit_once_per_x_secs is not None:
            if limit_key is None:
                limit_key = msg
            if not self.__should_emit(limit_key, limit_once_per_x_secs, current_time):
                return

        if extra is None:
            extra = {}
        else:
            extra = dict(extra)
        extra.setdefault("component", self.component)
        extra.setdefault("error_code", error_code)

        logging.Logger._log(
            self,
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel,
        )

    def __should_emit(self, limit_key, limit_once_per_x_secs, current_time):
        if current_time is None:
            current_time = time.time()

        with self.__rate_limit_lock:
            last_time = self.__last_emitted.get(limit_key)
            if last_time is not None and current_time - last_time < limit_once_per_x_secs:
                return False
            self.__last_emitted[limit_key] = current_time
            return True

    def findCaller(self, stack_info=False, stacklevel=1):
        """Returns the first frame outside of this module and the `logging` package.

        A `stacklevel` above 1 skips that many more frames, so helpers can report their own caller.
        """
        f = sys._getframe(1)
        while f is not None:
            filename = os.path.normcase(os.path.splitext(f.f_code.co_filename)[0])
            if filename == _srcfile or filename == os.path.splitext(logging._srcfile)[0]:
                f = f.f_back
                continue
            break
        while f is not None and stacklevel > 1 and f.f_back is not None:
            f = f.f_back
            stacklevel -= 1
        if f is None:
            return "(unknown file)", 0, "(unknown function)", None
        return f.f_code.co_filename, f.f_lineno, f.f_code.co_name, None


class AgentFormatter(logging.Formatter):
    """Formats records as `<time>Z <level> [<component>] [<file>:<line>] <message>`."""

    converter = time.gmtime

    def __init__(self):
        logging.Formatter.__init__(
            self,
            fmt="%(asctime)s.%(msecs)03dZ %(levelname)s [%(component)s] "
            "[%(filename)s:%(lineno)d] %(error_message)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record):
        if not hasattr(record, "component"):
            record.component = record.name
        error_code = getattr(record, "error_code", None)
        if error_code:
            record.error_message = '[error="%s"] ' % error_code
        else:
            record.error_message = ""
        return logging.Formatter.format(self, record)


logging.setLoggerClass(AgentLogger)

__handlers_lock__ = threading.Lock()
__handlers__ = []


def getLogger(name):
    """Returns the AgentLogger for the specified module name.

    @rtype: AgentLogger
    """
    logger = logging.getLogger(name)
    if not isinstance(logger, AgentLogger):
        raise TypeError("Logger %s was created before agent logging was loaded" % name)
    return logger


def set_log_destination(
    use_stdout=False,
    agent_log_file_path=None,
    max_bytes=20 * 1024 * 1024,
    backup_count=2,
):
    """Sets where the agent's log records are written.

    @param use_stdout: If True, records are written to stdout.
    @param agent_log_file_path: If not None, records are written to this file, which is rotated once it reaches
        `max_bytes`.
    """
    close_handlers()

    handlers = []
    if use_stdout:
        handlers.append(logging.StreamHandler(sys.stdout))
    if agent_log_file_path is not None:
        log_dir = os.path.dirname(agent_log_file_path)
        if log_dir and not os.path.isdir(log_dir):
            os.makedirs(log_dir)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                agent_log_file_path, maxBytes=max_bytes, backupCount=backup_count
            )
        )

    root = logging.getLogger()
    formatter = AgentFormatter()
    with __handlers_lock__:
        for handler in handlers:
            handler.setFormatter(formatter)
            root.addHandler(handler)
            __handlers__.append(handler)


def set_log_level(debug_level):
    """Sets the minimum level emitted by every handler.

    @param debug_level: An integer from 0 (no debug output) to 5 (most verbose).
    @type debug_level: int
    """
    debug_level = max(0, min(int(debug_level), len(__debug_levels__) - 1))
    logging.getLogger().setLevel(__debug_levels__[debug_level])


def close_handlers():
    """Removes and closes every handler installed by `set_log_destination`."""
    root = logging.getLogger()
    with __handlers_lock__:
        for handler in __handlers__:
            root.removeHandler(handler)
            handler.close()
        del __handlers__[:]
