# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from contextlib import AbstractAsyncContextManager
from logging import getLogger
from types import TracebackType
from typing import Any, Final, Self

# 3p
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout
from azure.core.exceptions import AzureError
from azure.identity.aio import DefaultAzureCredential

# project
from catalog.common import TableDefinition, column_schema
from tasks.common import (
    AUXILIARY_PLAN,
    TOTAL_RETENTION_DAYS,
    get_azure_mgmt_url,
    get_resource_group_id,
    get_table_name,
)
from tasks.template import TABLES_API_VERSION

WORKSPACES_API_VERSION: Final = "2022-10-01"
REQUEST_TIMEOUT_SECONDS: Final = 60

log = getLogger(__name__)


class LogAnalyticsError(Exception):
    pass


def get_table_payload(table: TableDefinition) -> dict[str, Any]:
    return {
        "properties": {
            "schema": {"name": get_table_name(table.name), "columns": column_schema(table)},
            "totalRetentionInDays": TOTAL_RETENTION_DAYS,
            "plan": AUXILIARY_PLAN,
        }
    }


async def response_error(resp: ClientResponse, message: str) -> str:
    content = (await resp.read()).decode("utf-8", errors="replace")
    return f"{message}: {resp.status} ({resp.reason})\n{content}"


class LogAnalyticsClient(AbstractAsyncContextManager["LogAnalyticsClient"]):
    """Direct calls to the Log Analytics management REST API"""

    def __init__(
        self, credential: DefaultAzureCredential, subscription_id: str, resource_group: str, region: str = ""
    ) -> None:
        self.credential = credential
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.mgmt_url = get_azure_mgmt_url(region)
        self.rest_client = ClientSession(timeout=ClientTimeout(total=REQUEST_TIMEOUT_SECONDS))

    async def __aenter__(self) -> Self:
        await self.rest_client.__aenter__()
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: TracebackType | None
    ) -> None:
        await self.rest_client.__aexit__(exc_type, exc_val, exc_tb)

    async def auth_headers(self) -> dict[str, str]:
        token = await self.credential.get_token(self.mgmt_url + "/.default")
        return {"Authorization": f"Bearer {token.token}"}

    def workspaces_url(self) -> str:
        return (
            self.mgmt_url
            + get_resource_group_id(self.subscription_id, self.resource_group)
            + "/providers/Microsoft.OperationalInsights/workspaces"
        )

    def table_url(self, workspace_name: str, table_name: str) -> str:
        return f"{self.workspaces_url()}/{workspace_name}/tables/{table_name}?api-version={TABLES_API_VERSION}"

    async def get_workspace(self, workspace_name: str) -> dict[str, Any] | None:
        url = f"{self.workspaces_url()}/{workspace_name}?api-version={WORKSPACES_API_VERSION}"
        async with self.rest_client.get(url, headers=await self.auth_headers()) as resp:
            if resp.status == 404:
                return None
            if not resp.ok:
                raise LogAnalyticsError(await response_error(resp, f"Failed to get workspace {workspace_name}"))
            return await resp.json()

    async def list_workspaces(self) -> list[dict[str, Any]]:
        url = f"{self.workspaces_url()}?api-version={WORKSPACES_API_VERSION}"
        async with self.rest_client.get(url, headers=await self.auth_headers()) as resp:
            if not resp.ok:
                raise LogAnalyticsError(
                    await response_error(resp, f"Failed to list workspaces in {self.resource_group}")
                )
            body = await resp.json()
        return sorted(body.get("value", []), key=lambda workspace: workspace.get("name", "").lower())

    async def create_table(self, workspace_name: str, table: TableDefinition) -> bool:
        """Create or replace the table directly, without an endpoint or rule. Never raises."""
        table_name = get_table_name(table.name)
        try:
            async with self.rest_client.put(
                self.table_url(workspace_name, table_name),
                json=get_table_payload(table),
                headers=await self.auth_headers(),
            ) as resp:
                if not resp.ok:
                    log.error(await response_error(resp, f"Failed to create table {table_name}"))
                    return False
        except (ClientError, AzureError, TimeoutError):
            log.exception("Failed to create table %s", table_name)
            return False
        log.info("Created table %s in workspace %s", table_name, workspace_name)
        return True

    async def get_table(self, workspace_name: str, table_name: str) -> dict[str, Any] | None:
        async with self.rest_client.get(
            self.table_url(workspace_name, table_name), headers=await self.auth_headers()
        ) as resp:
            if resp.status == 404:
                return None
            if not resp.ok:
                raise LogAnalyticsError(await response_error(resp, f"Failed to get table {table_name}"))
            return await resp.json()
