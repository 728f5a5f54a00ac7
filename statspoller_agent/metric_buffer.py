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
"""Per collector queues of metrics waiting to be dispatched.

A `MetricBuffer` is a file holding one metric per line.  It has exactly two users: the collector that owns it
appends, and the dispatcher reads and consumes.  The two never share a lock:

  * `append` writes all lines of a cycle with a single write on an O_APPEND descriptor and fsyncs them.  If the
    write fails the file is truncated back to its previous size so no partial line is left behind.
  * `read_pending` captures the file's identity and end offset, reads from the consumed offset up to that end and
    parses complete lines only.  Bytes written after the captured end are left for the next read.
  * `commit` records the consumed offset in a checkpoint file that is replaced atomically.
  * Before appending, the collector checks the checkpoint.  When it covers the whole file, the file is swapped for
    an empty one with an atomic rename.  The dispatcher notices the new identity and starts from offset 0.
"""

import collections
import os
import threading

from statspoller_agent import agent_logging
from statspoller_agent import util
from statspoller_agent.metric import Metric, ParseError

log = agent_logging.getLogger(__name__)

# Upper bound on the bytes parsed from one buffer in a single read.  The remainder is read on the next tick.
DEFAULT_MAX_READ_BYTES = 32 * 1024 * 1024


class PendingRead(object):
    """The result of `read_pending`: the metrics found between two offsets of one buffer file.

    @ivar identity: Identifies the file that was read (device, inode), or None if nothing was read.
    @ivar start: The offset the read started at.
    @ivar end: The offset just after the last complete line.  Committing makes this the new consumed offset.
    @ivar metrics: The parsed metrics.
    @ivar malformed_lines: How many complete lines could not be parsed.
    """

    def __init__(self, identity, start, end, metrics, malformed_lines=0):
        self.identity = identity
        self.start = start
        self.end = end
        self.metrics = metrics
        self.malformed_lines = malformed_lines

    @property
    def is_empty(self):
        return self.end == self.start


class MetricBuffer(object):
    """A durable, append-only file of metrics."""

    def __init__(self, path, fsync=True, max_read_bytes=DEFAULT_MAX_READ_BYTES):
        """
        @param path: The path of the buffer file.
        @param fsync: If True every append is fsync'ed before returning.
        @param max_read_bytes: The most bytes `read_pending` will parse at once.
        """
        self.__path = path
        self.__checkpoint_path = path + ".checkpoint"
        self.__fsync = fsync
        self.__max_read_bytes = max_read_bytes
        # The dispatcher's view of the checkpoint.  Loaded from disk on first use so a restarted agent resumes
        # where it stopped.
        self.__consumed = None

    @property
    def path(self):
        return self.__path

    @property
    def checkpoint_path(self):
        return self.__checkpoint_path

    def create(self):
        """Creates the buffer file, and its directory, if they do not exist yet."""
        directory = os.path.dirname(self.__path)
        if directory and not os.path.isdir(directory):
            os.makedirs(directory, exist_ok=True)
        fd = os.open(self.__path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        os.close(fd)

    def append(self, metrics):
        """Appends the metrics, one line each.  Either every line is written or none is.

        Only the owning collector may call this.

        @type metrics: list[Metric]
        @return: The number of metrics written.
        @raise OSError: If the data could not be written.
        """
        if not metrics:
            return 0

        data = "".join(metric.to_line() for metric in metrics).encode("utf-8")

        self._reclaim_consumed_file()

        fd = os.open(self.__path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            original_size = os.fstat(fd).st_size
            try:
                view = memoryview(data)
                while view:
                    written = os.write(fd, view)
                    view = view[written:]
                if self.__fsync:
                    os.fsync(fd)
            except OSError:
                # Nobody else writes to this file and the dispatcher only reads, so cutting back to the old size
                # removes exactly the partial data of this append.
                os.ftruncate(fd, original_size)
                raise
        finally:
            os.close(fd)

        return len(metrics)

    def _reclaim_consumed_file(self):
        """Replaces the buffer file with an empty one if the dispatcher consumed all of it."""
        checkpoint = self.__read_checkpoint_file()
        if checkpoint is None:
            return

        try:
            stat = os.stat(self.__path)
        except FileNotFoundError:
            return

        if stat.st_size == 0 or checkpoint["offset"] < stat.st_size:
            return
        if (checkpoint["device"], checkpoint["inode"]) != (stat.st_dev, stat.st_ino):
            return

        tmp_path = self.__path + ".tmp"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        os.close(fd)
        os.replace(tmp_path, self.__path)
        log.log(
            agent_logging.DEBUG_LEVEL_3,
            "Reclaimed %d consumed bytes of buffer %s",
            stat.st_size,
            self.__path,
        )

    def read_pending(self):
        """Reads the complete lines not consumed yet.

        Only the dispatcher may call this.  Nothing is consumed until the result is passed to `commit`.

        @rtype: PendingRead
        """
        try:
            fp = open(self.__path, "rb")
        except FileNotFoundError:
            return PendingRead(None, 0, 0, [])

        with fp:
            stat = os.fstat(fp.fileno())
            identity = (stat.st_dev, stat.st_ino)
            end = stat.st_size

            start = self.__consumed_offset(identity)
            if start > end:
                log.warning(
                    "Consumed offset %d is past the end of buffer %s (%d bytes), reading it from the start",
                    start,
                    self.__path,
                    end,
                    error_code="bufferCheckpointMismatch",
                )
                start = 0

            end = min(end, start + self.__max_read_bytes)
            fp.seek(start)
            data = fp.read(end - start)

        last_newline = data.rfind(b"\n")
        if last_newline == -1:
            return PendingRead(identity, start, start, [])

        metrics = []
        malformed_lines = 0
        for raw_line in data[: last_newline + 1].splitlines():
            if not raw_line.strip():
                continue
            try:
                metrics.append(Metric.from_line(raw_line.decode("utf-8")))
            except (ParseError, UnicodeDecodeError) as e:
                malformed_lines += 1
                log.warning(
                    "Skipping malformed line in buffer %s: %s",
                    self.__path,
                    str(e),
                    error_code="malformedBufferLine",
                    limit_once_per_x_secs=60,
                    limit_key="malformed-%s" % self.__path,
                )

        return PendingRead(identity, start, start + last_newline + 1, metrics, malformed_lines)

    def commit(self, pending):
        """Marks everything up to `pending.end` as consumed.

        @type pending: PendingRead
        """
        if pending.identity is None or pending.is_empty:
            return

        checkpoint = {
            "device": pending.identity[0],
            "inode": pending.identity[1],
            "offset": pending.end,
        }
        util.atomic_write_dict_as_json_file(
            self.__checkpoint_path, self.__checkpoint_path + "~", checkpoint
        )
        self.__consumed = checkpoint

    def __consumed_offset(self, identity):
        if self.__consumed is None:
            self.__consumed = self.__read_checkpoint_file() or {}

        if (self.__consumed.get("device"), self.__consumed.get("inode")) != identity:
            return 0
        return self.__consumed.get("offset", 0)

    def __read_checkpoint_file(self):
        if not os.path.isfile(self.__checkpoint_path):
            return None
        try:
            checkpoint = util.read_file_as_json(self.__checkpoint_path)
        except util.JsonReadFileException as e:
            log.warning(
                "Ignoring unreadable buffer checkpoint: %s",
                str(e),
                error_code="badBufferCheckpoint",
                limit_once_per_x_secs=300,
            )
            return None

        if not isinstance(checkpoint, dict) or not all(
            isinstance(checkpoint.get(key), int) for key in ("device", "inode", "offset")
        ):
            return None
        return checkpoint

    def __repr__(self):
        return "MetricBuffer(%s)" % self.__path


class MemoryMetricBuffer(object):
    """A non durable buffer with the same interface as `MetricBuffer`.

    Used by collectors configured not to write their metrics to disk.  The deque is only ever appended to on the
    right by the collector and popped on the left by the dispatcher.
    """

    def __init__(self, name):
        self.__name = name
        self.__metrics = collections.deque()
        self.__lock = threading.Lock()
        # Total metrics ever appended and consumed.  Used as offsets in PendingRead.
        self.__appended = 0
        self.__consumed = 0

    @property
    def path(self):
        return None

    def create(self):
        pass

    def append(self, metrics):
        with self.__lock:
            self.__metrics.extend(metrics)
            self.__appended += len(metrics)
        return len(metrics)

    def read_pending(self):
        with self.__lock:
            metrics = list(self.__metrics)
            return PendingRead(self.__name, self.__consumed, self.__appended, metrics)

    def commit(self, pending):
        if pending.is_empty:
            return
        with self.__lock:
            for _ in range(pending.end - self.__consumed):
                self.__metrics.popleft()
            self.__consumed = pending.end

    def __repr__(self):
        return "MemoryMetricBuffer(%s)" % self.__name
