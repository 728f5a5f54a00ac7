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

import decimal
import logging
import os
import socket
import sys
import threading
import time

import orjson

# The range of integers orjson serializes.
MIN_JSON_INT = -(2 ** 63)
MAX_JSON_INT = 2 ** 64 - 1


def _default_json_value(value):
    # Decimals appear in metric payloads.  Integral ones are sent as ints so backends do not
    # receive a trailing ".0", unless they do not fit the 64 bit integers orjson accepts.
    if isinstance(value, decimal.Decimal):
        if value.is_finite() and value == value.to_integral_value():
            integral = int(value)
            if MIN_JSON_INT <= integral <= MAX_JSON_INT:
                return integral
        return float(value)
    raise TypeError("Type is not JSON serializable: %s" % type(value).__name__)


def json_encode(obj, binary=False):
    """Encodes an object into a JSON string.

    @param obj: The object to serialize
    @param binary: If True return binary string, otherwise text string.
    @type obj: dict|list|str
    @type binary: bool
    """
    result = orjson.dumps(obj, default=_default_json_value)
    if binary:
        return result
    return result.decode("utf-8")


def json_decode(text):
    """Decodes text containing json and returns either a dict, list or primitive value."""
    return orjson.loads(text)


class JsonReadFileException(Exception):
    """Raised when a failure occurs when reading a file as a JSON object."""

    def __init__(self, file_path, message):
        self.file_path = file_path
        self.raw_message = message

        Exception.__init__(
            self, "Failed while reading file '%s': %s" % (file_path, message)
        )


def read_file_as_json(file_path):
    """Reads the entire file as a JSON value and return it.

    @param file_path: the path to the file to read
    @type file_path: str

    @return: The JSON value contained in the file.

    @raise JsonReadFileException:  If there is an error reading or parsing the file.
    """
    if not os.path.isfile(file_path):
        raise JsonReadFileException(file_path, "The file does not exist.")
    if not os.access(file_path, os.R_OK):
        raise JsonReadFileException(file_path, "The file is not readable.")

    try:
        with open(file_path, "rb") as fp:
            data = fp.read()
    except IOError as e:
        raise JsonReadFileException(file_path, "Read error occurred: %s" % str(e))

    try:
        return json_decode(data)
    except orjson.JSONDecodeError as e:
        raise JsonReadFileException(file_path, "JSON parsing failed due to: %s" % e)


def atomic_write_dict_as_json_file(file_path, tmp_path, info):
    """Write a dict to a JSON encoded file.

    The file is first completely written to tmp_path, and then renamed to file_path, so readers only
    ever observe the old or the new content.

    @param file_path: The final path of the file
    @param tmp_path: A temporary path to write the file to
    @param info: A dict containing the JSON object to write
    """
    with open(tmp_path, "wb") as fp:
        fp.write(json_encode(info, binary=True))
        fp.flush()
        os.fsync(fp.fileno())
    os.replace(tmp_path, file_path)


def get_hostname():
    """Returns the short host name used for the default global metric prefix."""
    return socket.gethostname().split(".")[0]


def current_time_ms(clock=None):
    """Returns the time in milliseconds since epoch, read from `clock` if given.

    @type clock: FakeClock|None
    @rtype: int
    """
    if clock is not None:
        return int(clock.time() * 1000)
    return int(time.time() * 1000)


class RunState(object):
    """Keeps track of whether or not some process, such as the agent or a collector, should be running.

    Many threads can share one instance and use it to quickly finish when the run state changes to false.
    """

    def __init__(self, fake_clock=None):
        """
        @param fake_clock: If not None, the fake clock to use to control the time and sleeping for tests.
        @type fake_clock: FakeClock|None
        """
        self.__condition = threading.Condition()
        self.__is_running = True
        self.__fake_clock = fake_clock

    def is_running(self):
        """Returns True if the state is still set to running."""
        with self.__condition:
            return self.__is_running

    def sleep_but_awaken_if_stopped(self, timeout):
        """Sleeps for the specified amount of time, unless the run state changes to False, in which case the sleep is
        terminated as soon as possible.

        @param timeout: The number of seconds to sleep.

        @return: True if the run state has been set to stopped.
        """
        if self.__fake_clock is not None:
            return self.__simulate_sleep_but_awaken_if_stopped(timeout)

        with self.__condition:
            if not self.__is_running:
                return True

            self._wait_on_condition(timeout)
            return not self.__is_running

    def __simulate_sleep_but_awaken_if_stopped(self, timeout):
        """Blocks until the fake clock advances by `timeout` seconds or this instance is stopped.

        @return: True if the run state has been set to stopped.
        @rtype: bool
        """
        deadline = self.__fake_clock.time() + timeout

        def deadline_exceeded_or_not_running(current_time):
            return current_time >= deadline or not self.is_running()

        self.__fake_clock.simulate_waiting(exit_when=deadline_exceeded_or_not_running)

        return not self.is_running()

    def stop(self):
        """Sets the run state to stopped and wakes every thread sleeping in `sleep_but_awaken_if_stopped`."""
        with self.__condition:
            self.__is_running = False
            self.__condition.notify_all()

        if self.__fake_clock is not None:
            self.__fake_clock.wake_all_threads()

    def _wait_on_condition(self, timeout):
        """Blocks for the condition to be signaled for the specified timeout.

        This is only broken out for testing purposes.
        """
        self.__condition.wait(timeout)


class FakeRunState(RunState):
    """A RunState that never actually sleeps.  It only counts how many times it was asked to."""

    def __init__(self):
        self.__total_times_slept = 0
        RunState.__init__(self)

    def _wait_on_condition(self, timeout):
        self.__total_times_slept += 1

    @property
    def total_times_slept(self):
        return self.__total_times_slept


class FakeClock(object):
    """Used to simulate time and control threads waking up from sleep in tests."""

    def __init__(self, start_time=0.0):
        # Protects _time.  It is notified whenever _time is changed.
        self._time_condition = threading.Condition()
        # The current time in seconds past epoch.
        self._time = start_time
        # Protects _waiting_threads.  It is notified whenever _waiting_threads is changed.
        self._waiting_condition = threading.Condition()
        # The number of threads that are blocking in `simulate_waiting`.
        self._waiting_threads = 0

    def time(self):
        """Returns the current fake time in seconds past epoch.

        @rtype: float
        """
        with self._time_condition:
            return self._time

    def advance_time(self, set_to=None, increment_by=None):
        """Advances the current time and notifies all threads currently waiting on the time.

        One of `set_to` or `increment_by` must be set.

        @type set_to: float|None
        @type increment_by: float|None
        """
        with self._time_condition:
            if set_to is not None:
                self._time = set_to
            else:
                self._time += increment_by
            self._time_condition.notify_all()

    def simulate_waiting(self, exit_when=None):
        """Blocks the current thread until notified and `exit_when` returns true (if `exit_when` is not None).

        @param exit_when:  A function taking the current fake time.  It is evaluated with the clock's lock held,
            once on entry and after every notification.
        """
        with self._time_condition:

            def wait_block():
                self._increment_waiting_count(1)
                self._time_condition.wait()
                self._increment_waiting_count(-1)

            if exit_when is None:
                wait_block()
            else:
                while not exit_when(self._time):
                    wait_block()

    def block_until_n_waiting_threads(self, n, timeout=None):
        """Blocks until there are `n` threads blocked in `simulate_waiting`.

        @param n: The number of threads that should be blocked in `simulate_waiting`.
        @param timeout: The maximum number of seconds to block or None to block forever.
        @return: True if the number of threads was reached.
        """
        deadline = None if timeout is None else time.time() + timeout
        with self._waiting_condition:
            while self._waiting_threads < n:
                remaining = None if deadline is None else deadline - time.time()
                if remaining is not None and remaining <= 0:
                    return False
                self._waiting_condition.wait(remaining)
            return True

    def wake_all_threads(self):
        """Wakes all threads currently blocked in `simulate_waiting`."""
        self.advance_time(increment_by=0.0)

    def _increment_waiting_count(self, increment):
        with self._waiting_condition:
            self._waiting_threads += increment
            self._waiting_condition.notify_all()


class StoppableThread(threading.Thread):
    """A thread that uses a RunState instance to track if it should still be running.

    Derived classes perform their work in `run_and_propagate`.  Any exception raised there is re-raised to the
    caller of `join`.  The work is expected to periodically check `_run_state.is_running()` and finish when it
    returns False.
    """

    def __init__(self, name=None, fake_clock=None):
        """Creates a new thread.  You must invoke `start` to actually have the thread begin running.

        @param name: The name to give the thread.
        @param fake_clock:  A fake clock to control the time and when threads wake up for tests.

        @type name: str
        @type fake_clock: FakeClock|None
        """
        threading.Thread.__init__(self, name=name)

        self.__exception_info = None
        self._fake_clock = fake_clock
        # Tracks whether or not the thread should still be running.
        self._run_state = RunState(fake_clock=fake_clock)

    def run(self):
        # noinspection PyBroadException
        try:
            self.run_and_propagate()
        except Exception as e:
            self.__exception_info = sys.exc_info()
            logging.getLogger().warning(
                "Received exception from run method in StoppableThread %s" % str(e)
            )

    def run_and_propagate(self):
        """Derived classes should override this method instead of `run` to perform their work.

        Exceptions raised here are captured and re-raised by `join`.
        """
        pass

    def is_running(self):
        # type: () -> bool
        return self._run_state.is_running()

    def stop(self, wait_on_join=True, join_timeout=5):
        """Stops the thread from running.

        By default, this will also block until the thread has completed (by performing a join).

        @param wait_on_join: If True, will block on a join of this thread.
        @param join_timeout: The maximum number of seconds to block for the join.
        """
        self._run_state.stop()
        if wait_on_join and self.ident is not None:
            self.join(join_timeout)

    def join(self, timeout=None):
        """Blocks until the thread has finished, re-raising any uncaught exception from the thread's work.

        @param timeout: The number of seconds to wait for the thread to finish or None if it should block
            indefinitely.
        @type timeout: float|None
        """
        threading.Thread.join(self, timeout)
        if not self.is_alive() and self.__exception_info is not None:
            raise self.__exception_info[1].with_traceback(self.__exception_info[2])

    def _time(self):
        """Returns the current time in seconds, honoring the fake clock used by tests."""
        if self._fake_clock is not None:
            return self._fake_clock.time()
        return time.time()
