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

NUMERIC_TYPES = {int, float}

# Maps a source type to the set of types it may be converted to.
ALLOWED_CONVERSIONS = {
    bool: {str, bool},
    int: {str, int, float},
    float: {str, int, float},
    list: {str, list},
    dict: {dict},
    str: {str, bool, int, float, list, dict},
}

ENV_VARIABLE_PREFIX = "STATSPOLLER_"


class BadConfiguration(Exception):
    """Raised when bad values are supplied in the configuration."""

    def __init__(self, message, field, error_code):
        """
        @param message:  The main error message
        @param field:  If not None, the field that the error pertains to in the configuration file.
        @param error_code:  The error code to include in the error message.
        """
        self.message = message
        self.field = field
        self.error_code = error_code
        if field is not None:
            Exception.__init__(
                self,
                '%s [[badField="%s" errorCode="%s"]]' % (message, field, error_code),
            )
        else:
            Exception.__init__(self, '%s [[errorCode="%s"]]' % (message, error_code))


def parse_list_of_strings(value):
    """Converts a comma separated string such as `a, b, c` or `[a, b, c]` into a list of strings."""
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    result = []
    for item in value.split(","):
        item = item.strip().strip("\"'")
        if item:
            result.append(item)
    return result


def convert_config_param(field_name, value, convert_to, is_environment_variable=False):
    """Converts a config value to `convert_to` according to the ALLOWED_CONVERSIONS matrix.

    Strings coming from environment variables may be converted to any of the supported types as long as they parse.

    @raise BadConfiguration: If the conversion is not allowed or the value cannot be parsed.
    """
    convert_from = type(value)

    kind = "environment variable" if is_environment_variable else "config param"

    if convert_to not in ALLOWED_CONVERSIONS.get(convert_from, ()):
        raise BadConfiguration(
            'Prohibited conversion of %s "%s" from %s to %s'
            % (kind, field_name, convert_from.__name__, convert_to.__name__),
            field_name,
            "illegalConversion",
        )

    if convert_from == convert_to:
        return value

    if convert_to is str:
        return str(value)

    if convert_from is str:
        if convert_to is bool:
            return value.strip().lower() == "true"
        if convert_to is list:
            return parse_list_of_strings(value)
        if convert_to is dict:
            raise BadConfiguration(
                'Could not parse value %s for %s "%s" as an object'
                % (value, kind, field_name),
                field_name,
                "notJsonObject",
            )
        try:
            return convert_to(value)
        except ValueError:
            raise BadConfiguration(
                'Could not parse value %s for %s "%s" as numeric type %s'
                % (value, kind, field_name, convert_to.__name__),
                field_name,
                "notNumber",
            )

    # Number to number.  Refuse to silently drop a fractional part.
    if convert_to is int and convert_from is float and value != int(value):
        raise BadConfiguration(
            'A value of %s was given for field "%s" but an integer is required.'
            % (value, field_name),
            field_name,
            "wrongType",
        )
    return convert_to(value)


def get_config_from_env(param_name, convert_to=None, logger=None, param_val=None):
    """Returns the environment variable value for a global config param, or None if it is not set.

    The variable name is `STATSPOLLER_<PARAM_NAME>`.  If both the config file and the environment set the param,
    the config file wins and a warning is logged.

    @param param_name: Config param name
    @param convert_to: If not None, the value is converted and validated to this type.
    @param logger: If not None, used to warn on conflicts between `param_val` and the environment value.
    @param param_val: The value from the config file, if any.
    @raise BadConfiguration: if the value cannot be converted to `convert_to`
    """
    env_name = (ENV_VARIABLE_PREFIX + param_name).upper()
    strval = os.environ.get(env_name)
    if strval is None:
        strval = os.environ.get(env_name.lower())

    if strval is None or convert_to is None:
        return strval

    converted_val = convert_config_param(
        param_name, strval, convert_to, is_environment_variable=True
    )

    if logger is not None and param_val is not None and param_val != converted_val:
        logger.warning(
            "Conflicting values detected between config file parameter `%s` and the environment variable `%s`. "
            "Ignoring environment variable." % (param_name, env_name),
            limit_once_per_x_secs=300,
            limit_key="config_conflict_%s" % param_name,
        )

    return converted_val
