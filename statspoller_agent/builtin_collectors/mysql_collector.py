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
"""Collects the global status, the global variables and the replica status of a MySQL server.

Only numeric values are reported.  `Slave_IO_Running` and `Slave_SQL_Running` are reported as 1 or 0.
"""

import decimal

import pymysql
import pymysql.cursors

from statspoller_agent.metric import to_decimal
from statspoller_agent.metric_collector import MetricCollector, define_config_option

__collector__ = __name__

define_config_option(
    __collector__,
    "host",
    "Optional (defaults to 127.0.0.1). The host name of the MySQL server.",
    default="127.0.0.1",
    convert_to=str,
)
define_config_option(
    __collector__,
    "port",
    "Optional (defaults to 3306). The port of the MySQL server.",
    default=3306,
    convert_to=int,
    min_value=1,
    max_value=65535,
)
define_config_option(
    __collector__,
    "username",
    "Optional. The user to connect as.  It needs the PROCESS and REPLICATION CLIENT privileges.",
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
    "connect_timeout",
    "Optional (defaults to 10). Seconds to wait when connecting to the server.",
    default=10,
    convert_to=int,
    min_value=1,
)
define_config_option(
    __collector__,
    "prefix",
    "Optional (defaults to `MySQL`). The prefix of every metric path.",
    default="MySQL",
    convert_to=str,
)

YES_NO_FIELDS = ("slave_io_running", "slave_sql_running")


def isyes(value):
    if value is None:
        return 0
    return 1 if str(value).strip().lower() == "yes" else 0


def parse_numeric(value):
    """Returns `value` as a Decimal, or None if it is not a number.  SHOW results hold numbers as strings."""
    if isinstance(value, bytes):
        value = value.decode("utf-8", "replace")
    if isinstance(value, str):
        try:
            value = decimal.Decimal(value.strip())
        except decimal.InvalidOperation:
            return None
    return to_decimal(value)


def numeric_rows(rows):
    """Yields the `(name, value)` pairs of a SHOW result whose value is numeric."""
    for name, value in rows:
        value = parse_numeric(value)
        if value is not None:
            yield name, value


class MysqlCollector(MetricCollector):
    def _initialize(self):
        self.__host = self._config.get("host")
        self.__port = self._config.get("port")
        self.__username = self._config.get("username")
        self.__password = self._config.get("password")
        self.__connect_timeout = self._config.get("connect_timeout")
        self.__db = None

    def _connect(self):
        return pymysql.connect(
            host=self.__host,
            port=self.__port,
            user=self.__username or "",
            passwd=self.__password or "",
            connect_timeout=self.__connect_timeout,
        )

    def _close(self):
        if self.__db is not None:
            try:
                self.__db.close()
            except pymysql.Error:
                pass
            self.__db = None

    def __query(self, sql, dict_rows=False):
        cursor_class = pymysql.cursors.DictCursor if dict_rows else pymysql.cursors.Cursor
        with self.__db.cursor(cursor_class) as cursor:
            cursor.execute(sql)
            return cursor.fetchall()

    def poll(self):
        try:
            if self.__db is None:
                self.__db = self._connect()
            else:
                self.__db.ping(reconnect=True)
            global_status = self.__query("SHOW GLOBAL STATUS")
        except pymysql.Error as e:
            self._logger.warning(
                "Could not query MySQL server %s:%s: %s",
                self.__host,
                self.__port,
                str(e),
                error_code="mysqlUnavailable",
                limit_once_per_x_secs=300,
                limit_key="mysql-%s" % self.collector_id,
            )
            self._close()
            return [("Available", 0)]

        samples = [("Available", 1)]
        samples.extend(
            ("globalStatus.%s" % name, value) for name, value in numeric_rows(global_status)
        )
        samples.extend(
            ("globalVariables.%s" % name, value)
            for name, value in numeric_rows(self.__query("SHOW GLOBAL VARIABLES"))
        )
        samples.extend(self.__gather_slave_status())
        return samples

    def __gather_slave_status(self):
        rows = self.__query("SHOW SLAVE STATUS", dict_rows=True)
        if not rows:
            # Not a replica.
            return []

        row = rows[0]
        fields = []
        for name, value in row.items():
            if name.lower() in YES_NO_FIELDS:
                fields.append((name, isyes(value)))
            else:
                fields.append((name, value))
        return [("slaveStatus.%s" % name, value) for name, value in numeric_rows(fields)]
