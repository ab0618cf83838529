# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import Callable
from logging import getLogger
from os import environ
from typing import TypeVar

T = TypeVar("T")

log = getLogger(__name__)


# Settings
SUBSCRIPTION_ID_SETTING = "SUBSCRIPTION_ID"
RESOURCE_GROUP_SETTING = "RESOURCE_GROUP"
WORKSPACE_NAME_SETTING = "WORKSPACE_NAME"
LOCATION_SETTING = "LOCATION"
LOG_LEVEL_SETTING = "LOG_LEVEL"
DEPLOYMENT_TIMEOUT_SETTING = "DEPLOYMENT_TIMEOUT_SECONDS"
TABLE_CATALOG_SETTING = "TABLE_CATALOG"
DD_API_KEY_SETTING = "DD_API_KEY"
DD_TELEMETRY_SETTING = "DD_TELEMETRY"

DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS = 900


class MissingConfigOptionError(Exception):
    def __init__(self, option: str) -> None:
        super().__init__(f"Missing required configuration option: {option}")


def get_config_option(name: str) -> str:
    """Get a configuration option from the environment or raise a helpful error"""
    if option := environ.get(name):
        return option
    raise MissingConfigOptionError(name)


def parse_config_option(name: str, parse: Callable[[str], T | None], default: T) -> T:
    """Get a configuration option from the environment, parse it, or return a default"""
    try:
        value = environ.get(name)
        if value is None:
            return default
        result = parse(value)
        if result is None:
            log.error(f"Invalid value for configuration option {name}: {value}")
            return default
        return result
    except ValueError:
        log.error(f"Invalid value for configuration option {name}: {environ.get(name)}")
        return default


def is_truthy(setting_name: str) -> bool:
    return environ.get(setting_name, "").lower().strip() in {"t", "true", "1", "y", "yes"}


def positive_float(value: str) -> float | None:
    parsed = float(value)
    return parsed if parsed > 0 else None


def get_deployment_timeout() -> float:
    return parse_config_option(DEPLOYMENT_TIMEOUT_SETTING, positive_float, float(DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS))
