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
"""Collects the status documents of a MongoDB server.

Every cycle emits:

  Available                       1 if the server answered `isMaster`, else 0.
  replSetStatus.*                 The numeric fields of `replSetGetStatus`, for replica set members.
  replSetStatus.oplog_*           Oplog size and window, plus the replication lag and headroom of every
                                  secondary, recovering or initial sync member.
  serverStatus.*                  The numeric fields of `serverStatus`.  Arbiters that are not verbose only
                                  report the network, connections, uptime and pid sections.
  dbStats.<db>.*                  The numeric fields of `dbStats` for every database.  Not collected on arbiters.
  collectionStats.<db>.<coll>.*   The numeric fields of `collStats` for every collection.  Not collected on
                                  arbiters.
"""

import calendar
import datetime
import math

import pymongo
from pymongo.errors import PyMongoError

from statspoller_agent.document_flattener import compute_lag_document, document_to_metrics
from statspoller_agent.metric import Metric, graphite_sanitize, sanitize_path_segment
from statspoller_agent.metric_collector import MetricCollector, define_config_option

__collector__ = __name__

define_config_option(
    __collector__,
    "host",
    "Optional (defaults to 127.0.0.1). The host name of the MongoDB server.",
    default="127.0.0.1",
    convert_to=str,
)
define_config_option(
    __collector__,
    "port",
    "Optional (defaults to 27017). The port of the MongoDB server.",
    default=27017,
    convert_to=int,
    min_value=1,
    max_value=65535,
)
define_config_option(
    __collector__,
    "username",
    "Optional. The user to authenticate as, against the `admin` database.",
    convert_to=str,
)
define_config_option(
    __collector__,
    "password",
    "Optional. The password of `username`.",
    convert_to=str,
)
define_config_option(
    __collector__,
    "verbose",
    "Optional (defaults to false). If true, the `indexDetails` and `wiredTiger` sections of the database and "
    "collection statistics are reported, and arbiters report their whole `serverStatus`.",
    default=False,
    convert_to=bool,
)
define_config_option(
    __collector__,
    "connect_timeout",
    "Optional (defaults to 10). Seconds to wait for the server before a cycle is reported as unavailable.",
    default=10.0,
    convert_to=float,
    min_value=0,
)
define_config_option(
    __collector__,
    "prefix",
    "Optional (defaults to `Mongo`). The prefix of every metric path.",
    default="Mongo",
    convert_to=str,
)

ARBITER_STATE = 7

# The serverStatus paths kept for arbiters when not verbose.
ARBITER_SERVER_STATUS_PREFIXES = (
    "serverStatus.network",
    "serverStatus.connections",
    "serverStatus.uptime",
    "serverStatus.pid",
)

OPLOG_COLLECTIONS = ("oplog.rs", "oplog.$main")

BYTES_PER_MB = 1024 * 1024


def classify_member_state(state_str):
    """Returns the role of a replica set member from its `stateStr`.

    @return: `primary`, `secondary`, `startup2`, `recovering`, or None for members whose lag is not reported.
    @rtype: str|None
    """
    if state_str is None:
        return None
    state_str = str(state_str)
    if state_str.upper() == "PRIMARY":
        return "primary"
    if "SECONDARY" in state_str:
        return "secondary"
    if state_str.upper() == "STARTUP2":
        return "startup2"
    if state_str.upper() == "RECOVERING":
        return "recovering"
    return None


def to_epoch_ms(value):
    """Converts an `optimeDate` to milliseconds since epoch.  Naive datetimes are UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)
    return calendar.timegm(value.timetuple()) * 1000 + value.microsecond // 1000


def replication_lag_document(members, window_secs):
    """Returns the replication lag and headroom of every member, measured against the primary.

    @param members: The `members` array of `replSetGetStatus`.
    @param window_secs: The oplog window in seconds.
    @return: The lag document, empty if there is no primary.
    @rtype: dict
    """
    primary_time = None
    peers = []
    for member in members or []:
        role = classify_member_state(member.get("stateStr"))
        op_time = member.get("optimeDate")
        if role is None or not isinstance(op_time, datetime.datetime):
            continue
        if role == "primary":
            primary_time = to_epoch_ms(op_time)
        else:
            name = sanitize_path_segment(str(member.get("name", "")))
            peers.append((role, name, to_epoch_ms(op_time)))

    if primary_time is None:
        return {}
    return compute_lag_document(primary_time, peers, window_secs=window_secs)


def _is_ok(document):
    return document is not None and document.get("ok") == 1.0


def _member_state(repl_set_status):
    """Returns `myState` of a replSetGetStatus document as an int, or None if missing or not a number."""
    try:
        return int(repl_set_status["myState"])
    except (KeyError, TypeError, ValueError):
        return None


class MongoCollector(MetricCollector):
    def _initialize(self):
        self.__host = self._config.get("host")
        self.__port = self._config.get("port")
        self.__username = self._config.get("username")
        self.__password = self._config.get("password")
        self.__verbose = self._config.get("verbose")
        self.__connect_timeout = self._config.get("connect_timeout")
        self.__client = None

    def _create_client(self):
        timeout_ms = int(self.__connect_timeout * 1000)
        kwargs = dict(
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms * 6,
            directConnection=True,
        )
        if self.__username:
            kwargs.update(
                username=self.__username, password=self.__password, authSource="admin"
            )
        return pymongo.MongoClient(self.__host, self.__port, **kwargs)

    def __get_client(self):
        if self.__client is None:
            self.__client = self._create_client()
        return self.__client

    def _close(self):
        if self.__client is not None:
            self.__client.close()
            self.__client = None

    def __to_metrics(self, document, origin):
        return document_to_metrics(
            document, origin, self._cycle_timestamp, verbose=self.__verbose
        )

    def __run_command(self, database, *args, **kwargs):
        """Runs a command, returning None if it fails."""
        try:
            return database.command(*args, **kwargs)
        except PyMongoError as e:
            self._logger.warning(
                "MongoDB command %s on %s:%s failed: %s",
                args[0],
                self.__host,
                self.__port,
                str(e),
                error_code="mongoCommandFailed",
                limit_once_per_x_secs=300,
                limit_key="mongo-%s-%s" % (self.collector_id, args[0]),
            )
            return None

    def poll(self):
        metrics = []
        client = self.__get_client()
        admin = client.admin

        is_master = self.__run_command(admin, "isMaster")
        available = 1 if is_master is not None else 0
        metrics.append(Metric("Available", available, self._cycle_timestamp))
        if is_master is None:
            # Drop the client so the next cycle reconnects from scratch.
            self._close()
            return metrics

        repl_set_status = {}
        if "setName" in is_master:
            status = self.__run_command(admin, "replSetGetStatus")
            if status is not None:
                repl_set_status = status
            if _is_ok(repl_set_status):
                metrics.extend(self.__to_metrics(repl_set_status, "replSetStatus"))
                # noinspection PyBroadException
                try:
                    replication_info = self.__get_replication_info(client, repl_set_status)
                    if replication_info is not None:
                        metrics.extend(self.__to_metrics(replication_info, "replSetStatus"))
                except Exception:
                    self._logger.exception(
                        "Could not compute the replication info of %s:%s",
                        self.__host,
                        self.__port,
                        error_code="mongoReplicationInfo",
                        limit_once_per_x_secs=300,
                        limit_key="mongo-%s-replication-info" % self.collector_id,
                    )

        # Arbiters hold no data: their database statistics are skipped and their serverStatus trimmed.
        member_state = _member_state(repl_set_status)
        full_output = not repl_set_status or (
            member_state is not None and member_state != ARBITER_STATE
        )

        server_status = self.__run_command(admin, "serverStatus")
        if server_status is None:
            return metrics

        if _is_ok(server_status):
            server_metrics = self.__to_metrics(server_status, "serverStatus")
            if not full_output and not self.__verbose:
                server_metrics = [
                    metric
                    for metric in server_metrics
                    if metric.path.startswith(ARBITER_SERVER_STATUS_PREFIXES)
                ]
            metrics.extend(server_metrics)

        if full_output:
            metrics.extend(self.__collect_database_stats(client))

        return metrics

    def __collect_database_stats(self, client):
        metrics = []
        databases = self.__run_command(client.admin, "listDatabases")
        if not _is_ok(databases):
            return metrics

        for entry in databases.get("databases", []):
            db_name = entry.get("name")
            if not db_name:
                continue
            database = client[db_name]

            db_stats = self.__run_command(database, "dbStats", scale=1)
            if db_stats is not None:
                metrics.extend(self.__to_metrics(db_stats, "dbStats.%s" % db_name))

            try:
                collection_names = database.list_collection_names()
            except PyMongoError as e:
                self._logger.warning(
                    "Could not list the collections of %s: %s",
                    db_name,
                    str(e),
                    error_code="mongoCommandFailed",
                    limit_once_per_x_secs=300,
                    limit_key="mongo-%s-list-%s" % (self.collector_id, db_name),
                )
                continue

            sanitized_db_name = graphite_sanitize(db_name)
            for collection_name in collection_names:
                coll_stats = self.__run_command(
                    database, "collStats", collection_name, scale=1, verbose=True
                )
                if coll_stats is not None:
                    metrics.extend(
                        self.__to_metrics(
                            coll_stats,
                            "collectionStats.%s.%s" % (sanitized_db_name, collection_name),
                        )
                    )
        return metrics

    def __get_replication_info(self, client, repl_set_status):
        """Returns the oplog size and window along with the replication lag of every member.

        @return: The document, or None if this member has no oplog.
        @rtype: dict|None
        """
        local = client.local
        try:
            collection_names = local.list_collection_names()
        except PyMongoError as e:
            self._logger.warning(
                "Could not list the collections of the local database: %s",
                str(e),
                error_code="mongoCommandFailed",
                limit_once_per_x_secs=300,
                limit_key="mongo-%s-oplog" % self.collector_id,
            )
            return None

        oplog_name = None
        for name in collection_names:
            if name in OPLOG_COLLECTIONS:
                oplog_name = name
        if oplog_name is None:
            return None

        oplog_stats = self.__run_command(local, "collStats", oplog_name, scale=1, verbose=True)
        if oplog_stats is None:
            return None

        oplog = local[oplog_name]
        try:
            first = oplog.find_one(sort=[("$natural", pymongo.ASCENDING)])
            last = oplog.find_one(sort=[("$natural", pymongo.DESCENDING)])
        except PyMongoError as e:
            self._logger.warning(
                "Could not read the bounds of %s: %s",
                oplog_name,
                str(e),
                error_code="mongoCommandFailed",
                limit_once_per_x_secs=300,
                limit_key="mongo-%s-oplog-bounds" % self.collector_id,
            )
            return None
        if first is None or last is None:
            return None

        window_secs = last["ts"].time - first["ts"].time

        result = {
            "oplog_maxsizeMB": int(oplog_stats.get("maxSize", 0)) // BYTES_PER_MB,
            "oplog_usedMb": int(math.ceil(float(oplog_stats.get("size", 0)) / BYTES_PER_MB)),
            "oplogWindowTimeDiff-Sec": window_secs,
            "oplogWindowtimeDiff-Hour": window_secs // 3600,
        }
        result.update(replication_lag_document(repl_set_status.get("members"), window_secs))
        return result
