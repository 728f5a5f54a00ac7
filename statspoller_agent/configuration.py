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

import os
import time

from statspoller_agent import util
from statspoller_agent.config_util import (
    BadConfiguration,
    convert_config_param,
    get_config_from_env,
)
from statspoller_agent.metric import graphite_sanitize
from statspoller_agent.metric_collector import CollectorConfig
from statspoller_agent.output_sinks.base import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_MAX_BATCH_SIZE,
    GRAPHITE,
    OPENTSDB_HTTP,
    OPENTSDB_TELNET,
    SinkConfig,
)
from statspoller_agent.output_sinks.graphite import DEFAULT_GRAPHITE_PORT
from statspoller_agent.output_sinks.opentsdb import DEFAULT_OPENTSDB_PORT

DEFAULT_CONFIG_FILE_PATH = "/etc/statspoller/agent.json"

BUILTIN_COLLECTORS_PACKAGE = "statspoller_agent.builtin_collectors"

HOSTNAME_VARIABLE = "$HOSTNAME"

# The global options: name, type and default value.  Each can also be set through a STATSPOLLER_<NAME> environment
# variable.
GLOBAL_OPTIONS = [
    ("max_metric_age", int, 90000),
    ("output_interval", float, 30.0),
    ("check_output_files_interval", float, 5.0),
    ("always_check_output_files", bool, True),
    ("output_internal_metrics_to_disk", bool, True),
    ("global_metric_name_prefix_enabled", bool, True),
    ("global_metric_name_prefix_value", str, HOSTNAME_VARIABLE),
    ("buffer_directory", str, "./output"),
    ("agent_log_path", str, None),
    ("debug_level", int, 0),
]

# Maps the config key holding a list of sinks to the kind of sink, the default id stem and the default port.
SINK_SECTIONS = [
    ("graphite_outputs", GRAPHITE, "Graphite", DEFAULT_GRAPHITE_PORT),
    ("opentsdb_telnet_outputs", OPENTSDB_TELNET, "OpenTSDB-Telnet", DEFAULT_OPENTSDB_PORT),
    ("opentsdb_http_outputs", OPENTSDB_HTTP, "OpenTSDB-HTTP", DEFAULT_OPENTSDB_PORT),
]


class Configuration(object):
    """Encapsulates the results of a single read of the configuration file.

    Use `parse` to read and validate the file.  It fills in the default values for every global option that is not
    set, applies the environment variable overrides and builds the per sink and per collector configuration
    objects.  The instance does not change once parsed and is passed to every component that needs it.

    The value `$HOSTNAME` is replaced by the short hostname in `global_metric_name_prefix_value`.
    """

    def __init__(self, file_path, logger):
        """
        @param file_path: The path of the configuration file.
        @param logger: The logger used to report environment variable conflicts.
        """
        self.__file_path = os.path.abspath(file_path)
        self.__logger = logger
        # The global options, with defaults filled in.
        self.__config = None
        # The number of seconds past epoch when the file was read.
        self.__read_time = None
        self.__sink_configs = []
        self.__collector_configs = []

    def parse(self):
        """Reads and validates the configuration file.

        @raise BadConfiguration: If the file cannot be read or any value in it is invalid.
        """
        self.__read_time = time.time()

        try:
            raw_config = util.read_file_as_json(self.__file_path)
        except util.JsonReadFileException as e:
            raise BadConfiguration(str(e), None, "fileParseError")

        if not isinstance(raw_config, dict):
            raise BadConfiguration(
                "The configuration file %s must contain a JSON object" % self.__file_path,
                None,
                "notJsonObject",
            )

        config = {}
        for field, field_type, default_value in GLOBAL_OPTIONS:
            config[field] = self.__verify_or_set_optional(
                raw_config, field, field_type, default_value, env_aware=True
            )

        self.__verify_min_value(config, "max_metric_age", 0)
        self.__verify_min_value(config, "output_interval", 0)
        self.__verify_min_value(config, "check_output_files_interval", 0)
        self.__verify_min_value(config, "debug_level", 0)
        if config["debug_level"] > 5:
            raise BadConfiguration(
                'The value for field "debug_level" must be between 0 and 5', "debug_level", "badDebugLevel"
            )

        config["global_metric_name_prefix_value"] = graphite_sanitize(
            config["global_metric_name_prefix_value"].replace(
                HOSTNAME_VARIABLE, util.get_hostname()
            )
        )

        self.__sink_configs = []
        for section, kind, id_stem, default_port in SINK_SECTIONS:
            entries = self.__verify_optional_array(raw_config, section)
            for index, entry in enumerate(entries):
                self.__sink_configs.append(
                    self.__parse_sink_entry(
                        entry, kind, "%s-%d" % (id_stem, index + 1), default_port, section
                    )
                )
        self.__verify_unique([sink.sink_id for sink in self.__sink_configs], "sink")

        self.__config = config
        self.__collector_configs = self.__parse_collector_entries(
            self.__verify_optional_array(raw_config, "collectors")
        )

    def __verify_or_set_optional(
        self, config_object, field, field_type, default_value, config_description=None, env_aware=False
    ):
        """Returns the value of `field` converted to `field_type`, or `default_value` if it is not set.

        @param env_aware: If True, a STATSPOLLER_<FIELD> environment variable is used when the file does not set
            the field.
        @raise BadConfiguration: If the value cannot be converted to `field_type`.
        """
        value = config_object.get(field)

        if env_aware:
            env_value = get_config_from_env(
                field, convert_to=field_type, logger=self.__logger, param_val=value
            )
            if value is None:
                value = env_value

        if value is None:
            return default_value

        try:
            return convert_config_param(field, value, field_type)
        except BadConfiguration as e:
            raise BadConfiguration(
                "%s.  Error is in %s" % (e.message, config_description or self.__file_path),
                field,
                e.error_code,
            )

    @staticmethod
    def __verify_min_value(config, field, min_value):
        if config[field] < min_value:
            raise BadConfiguration(
                'The value for field "%s" must be at least %s' % (field, min_value),
                field,
                "valueTooSmall",
            )

    def __verify_optional_array(self, config_object, field):
        """Returns the array of JSON objects held by `field`, or an empty list if the field is not set."""
        value = config_object.get(field)
        if value is None:
            return []
        if not isinstance(value, list):
            raise BadConfiguration(
                'The value for the field "%s" is not an array.  Error is in %s'
                % (field, self.__file_path),
                field,
                "notJsonArray",
            )
        for index, entry in enumerate(value):
            if not isinstance(entry, dict):
                raise BadConfiguration(
                    'The element at index=%i is not a json object as required in the array field "%s".  '
                    "Error is in %s" % (index, field, self.__file_path),
                    field,
                    "notJsonObject",
                )
        return value

    @staticmethod
    def __verify_unique(ids, what):
        seen = set()
        for entry_id in ids:
            if entry_id in seen:
                raise BadConfiguration(
                    'The %s id "%s" is used more than once' % (what, entry_id), "id", "duplicateId"
                )
            seen.add(entry_id)

    def __parse_sink_entry(self, entry, kind, default_id, default_port, section):
        description = "%s entry %s of %s" % (section, default_id, self.__file_path)

        def optional(field, field_type, default_value):
            return self.__verify_or_set_optional(
                entry, field, field_type, default_value, config_description=description
            )

        sink_id = optional("id", str, default_id)
        host = optional("host", str, None)
        port = optional("port", int, default_port)
        url = optional("url", str, None)

        if kind == OPENTSDB_HTTP:
            if url is None:
                if host is None:
                    raise BadConfiguration(
                        'Either "url" or "host" must be set.  Error is in %s' % description,
                        "url",
                        "missingRequired",
                    )
                url = "http://%s:%d/api/put" % (host, port)
        elif host is None:
            raise BadConfiguration(
                'The required field "host" is missing.  Error is in %s' % description,
                "host",
                "missingRequired",
            )

        retry_attempts = optional("retry_attempts", int, 2)
        max_batch_size = optional("max_batch_size", int, DEFAULT_MAX_BATCH_SIZE)
        if retry_attempts < 0:
            raise BadConfiguration(
                'The value for field "retry_attempts" cannot be negative.  Error is in %s' % description,
                "retry_attempts",
                "valueTooSmall",
            )
        if max_batch_size < 1:
            raise BadConfiguration(
                'The value for field "max_batch_size" must be at least 1.  Error is in %s' % description,
                "max_batch_size",
                "valueTooSmall",
            )

        return SinkConfig(
            kind=kind,
            sink_id=sink_id,
            enabled=optional("enabled", bool, True),
            host=host,
            port=port,
            url=url,
            retry_attempts=retry_attempts,
            max_batch_size=max_batch_size,
            sanitize_metrics=optional("sanitize_metrics", bool, True),
            substitute_characters=optional("substitute_characters", bool, True),
            connect_timeout=optional("connect_timeout", float, DEFAULT_CONNECT_TIMEOUT),
            tags=optional("tags", dict, None),
        )

    def __parse_collector_entries(self, entries):
        module_names = []
        for index, entry in enumerate(entries):
            module_name = entry.get("module")
            if not isinstance(module_name, str) or not module_name.strip():
                raise BadConfiguration(
                    'The collector entry at index=%i is missing the required field "module".  Error is in %s'
                    % (index, self.__file_path),
                    "module",
                    "missingRequired",
                )
            module_names.append(self.resolve_module_name(module_name.strip()))

        # Modules appearing more than once get a counter in their default id.
        seen_counts = {}
        total_counts = {}
        for module_name in module_names:
            total_counts[module_name] = total_counts.get(module_name, 0) + 1

        result = []
        for entry, module_name in zip(entries, module_names):
            short_name = module_name.rsplit(".", 1)[-1]
            seen_counts[module_name] = seen_counts.get(module_name, 0) + 1
            if total_counts[module_name] > 1:
                default_id = "%s-%d" % (short_name, seen_counts[module_name])
            else:
                default_id = short_name

            description = "collector entry %s of %s" % (default_id, self.__file_path)
            collector_id = self.__verify_or_set_optional(
                entry, "id", str, default_id, config_description=description
            )
            write_to_disk = self.__verify_or_set_optional(
                entry,
                "write_to_disk",
                bool,
                self.output_internal_metrics_to_disk,
                config_description=description,
            )

            result.append(
                CollectorConfig(
                    entry,
                    module_name,
                    collector_id,
                    buffer_path=os.path.join(self.buffer_directory, "%s.out" % collector_id),
                    write_to_disk=write_to_disk,
                )
            )

        self.__verify_unique([config.collector_id for config in result], "collector")
        return result

    @staticmethod
    def resolve_module_name(module_name):
        """Returns the full module name for a collector `module` value.  Names without a dot are builtin."""
        if "." in module_name:
            return module_name
        return "%s.%s" % (BUILTIN_COLLECTORS_PACKAGE, module_name)

    def to_dict(self):
        """Returns the effective configuration, with every default filled in."""
        result = dict(self.__get_config())
        result["outputs"] = [dict(sink._asdict()) for sink in self.__sink_configs]
        result["collectors"] = [
            dict(
                config,
                module=config.module_name,
                id=config.collector_id,
                enabled=config.enabled,
                interval=config.interval,
                prefix=config.prefix,
                write_to_disk=config.write_to_disk,
                buffer_path=config.buffer_path,
            )
            for config in self.__collector_configs
        ]
        return result

    def __get_config(self):
        if self.__config is None:
            raise BadConfiguration(
                "The configuration has not been parsed", None, "notParsed"
            )
        return self.__config

    @property
    def file_path(self):
        return self.__file_path

    @property
    def read_time(self):
        return self.__read_time

    @property
    def sink_configs(self):
        """Every configured sink, enabled or not.

        @rtype: list[SinkConfig]
        """
        return list(self.__sink_configs)

    @property
    def collector_configs(self):
        """
        @rtype: list[CollectorConfig]
        """
        return list(self.__collector_configs)

    @property
    def max_metric_age(self):
        """Metrics older than this many milliseconds are never sent."""
        return self.__get_config()["max_metric_age"]

    @property
    def output_interval(self):
        return self.__get_config()["output_interval"]

    @property
    def check_output_files_interval(self):
        return self.__get_config()["check_output_files_interval"]

    @property
    def always_check_output_files(self):
        return self.__get_config()["always_check_output_files"]

    @property
    def output_internal_metrics_to_disk(self):
        return self.__get_config()["output_internal_metrics_to_disk"]

    @property
    def global_metric_name_prefix_enabled(self):
        return self.__get_config()["global_metric_name_prefix_enabled"]

    @property
    def global_metric_name_prefix_value(self):
        return self.__get_config()["global_metric_name_prefix_value"]

    @property
    def buffer_directory(self):
        return self.__get_config()["buffer_directory"]

    @property
    def agent_log_path(self):
        return self.__get_config()["agent_log_path"]

    @property
    def debug_level(self):
        return self.__get_config()["debug_level"]
