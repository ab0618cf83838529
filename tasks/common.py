# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from typing import Final, NamedTuple
from uuid import uuid4

AUX_TABLES_METRIC_PREFIX: Final = "azure.aux_tables."

TABLE_SUFFIX: Final = "_CL"
ENDPOINT_SUFFIX: Final = "-DCE"
RULE_SUFFIX: Final = "-DCR"
CUSTOM_STREAM_PREFIX: Final = "Custom-"

AUXILIARY_PLAN: Final = "Auxiliary"
TOTAL_RETENTION_DAYS: Final = 365

SUCCEEDED_STATE: Final = "Succeeded"


class DeploymentContext(NamedTuple):
    """Where the tables are provisioned, resolved once per run"""

    subscription_id: str
    resource_group: str
    workspace_name: str
    location: str


class ResourceNames(NamedTuple):
    table: str
    endpoint: str
    rule: str
    stream: str


def get_table_name(name: str) -> str:
    return name + TABLE_SUFFIX


def get_stream_name(name: str) -> str:
    return CUSTOM_STREAM_PREFIX + get_table_name(name)


def get_resource_names(name: str) -> ResourceNames:
    return ResourceNames(
        table=get_table_name(name),
        endpoint=name + ENDPOINT_SUFFIX,
        rule=name + RULE_SUFFIX,
        stream=get_stream_name(name),
    )


def get_resource_group_id(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


# https://learn.microsoft.com/en-us/azure/azure-government/compare-azure-government-global-azure
def is_azure_gov(region: str) -> bool:
    return region.startswith("usgov")


def get_azure_mgmt_url(region: str) -> str:
    return "https://management." + ("usgovcloudapi.net" if is_azure_gov(region) else "azure.com")


def generate_unique_id() -> str:
    """Generate a unique ID which is 12 characters long using hex characters

    Example:
    >>> generate_unique_id()
    "c5653797a664"
    """
    return str(uuid4())[-12:]


def get_deployment_name(name: str) -> str:
    return f"{name}-{generate_unique_id()}"
