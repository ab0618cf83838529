# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from asyncio import gather
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Final, NamedTuple, Self

# 3p
from aiohttp import ClientError
from azure.core.exceptions import AzureError
from datadog_api_client.v2.model.metric_point import MetricPoint
from datadog_api_client.v2.model.metric_series import MetricSeries

# project
from catalog.common import TableDefinition
from config.env import get_deployment_timeout
from tasks.client.deployment_client import DeploymentClient, SubmitResult
from tasks.client.log_analytics_client import LogAnalyticsClient, LogAnalyticsError
from tasks.common import (
    AUX_TABLES_METRIC_PREFIX,
    AUXILIARY_PLAN,
    TOTAL_RETENTION_DAYS,
    DeploymentContext,
    get_stream_name,
    get_table_name,
)
from tasks.task import Task
from tasks.template import (
    ENDPOINT_URI_OUTPUT,
    RULE_IMMUTABLE_ID_OUTPUT,
    STREAM_NAME_OUTPUT,
    DeploymentTemplate,
    build_template,
)

PROVISIONING_TASK_NAME = "provisioning_task"


class TableState(Enum):
    BUILDING = "building"
    SUBMITTING = "submitting"
    FALLING_BACK = "falling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES: Final = frozenset({TableState.SUCCEEDED, TableState.FAILED})


class IngestionDetails(NamedTuple):
    """What a sender needs to push logs through the table's endpoint and rule"""

    endpoint_uri: str | None
    rule_immutable_id: str | None
    stream_name: str


class DeploymentOutcome(NamedTuple):
    table_name: str
    succeeded: bool
    fallback_used: bool = False
    ingestion: IngestionDetails | None = None


@dataclass
class ProvisioningAttempt:
    table: TableDefinition
    template: DeploymentTemplate | None = None
    submit_result: SubmitResult | None = None
    fallback_used: bool = False


def get_ingestion_details(table: TableDefinition, outputs: dict[str, str] | None) -> IngestionDetails:
    outputs = outputs or {}
    return IngestionDetails(
        endpoint_uri=outputs.get(ENDPOINT_URI_OUTPUT),
        rule_immutable_id=outputs.get(RULE_IMMUTABLE_ID_OUTPUT),
        stream_name=outputs.get(STREAM_NAME_OUTPUT) or get_stream_name(table.name),
    )


def get_table_problem(table: dict[str, Any] | None) -> str | None:
    """Describe why a table read back from the workspace does not match what was provisioned"""
    if table is None:
        return "table not found in workspace"
    properties = table.get("properties") or {}
    if (plan := properties.get("plan")) != AUXILIARY_PLAN:
        return f"table plan is {plan}, expected {AUXILIARY_PLAN}"
    if (retention := properties.get("totalRetentionInDays")) != TOTAL_RETENTION_DAYS:
        return f"total retention is {retention} days, expected {TOTAL_RETENTION_DAYS}"
    return None


class ProvisioningTask(Task):
    NAME = PROVISIONING_TASK_NAME

    def __init__(
        self,
        context: DeploymentContext,
        tables: Sequence[TableDefinition],
        deployment_timeout: float | None = None,
    ) -> None:
        super().__init__()
        self.context = context
        self.tables = list(tables)
        self.outcomes: list[DeploymentOutcome] = []
        self.tags.append(f"workspace:{context.workspace_name}")
        self.deployment_client = DeploymentClient(
            self.credential, context, deployment_timeout or get_deployment_timeout()
        )
        self.log_analytics_client = LogAnalyticsClient(
            self.credential, context.subscription_id, context.resource_group, context.location
        )
        self.transitions: dict[TableState, Callable[[ProvisioningAttempt], Awaitable[TableState]]] = {
            TableState.BUILDING: self.build,
            TableState.SUBMITTING: self.submit,
            TableState.FALLING_BACK: self.fall_back,
        }

    async def __aenter__(self) -> Self:
        await super().__aenter__()
        await gather(self.deployment_client.__aenter__(), self.log_analytics_client.__aenter__())
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_value: BaseException | None, traceback: TracebackType | None
    ) -> None:
        await gather(
            self.deployment_client.__aexit__(exc_type, exc_value, traceback),
            self.log_analytics_client.__aexit__(exc_type, exc_value, traceback),
        )
        await super().__aexit__(exc_type, exc_value, traceback)

    async def run(self) -> None:
        total = len(self.tables)
        for index, table in enumerate(self.tables, start=1):
            self.log.info("[%d/%d] Provisioning %s (%s)", index, total, get_table_name(table.name), table.display_name)
            await self.provision_table(table)
        failed = sum(not outcome.succeeded for outcome in self.outcomes)
        self.log.info("Provisioned %d of %d tables", total - failed, total)

    async def provision_table(self, table: TableDefinition) -> TableState:
        """Drive one table from BUILDING to SUCCEEDED or FAILED and record the outcome"""
        attempt = ProvisioningAttempt(table)
        state = TableState.BUILDING
        while state not in TERMINAL_STATES:
            next_state = await self.transitions[state](attempt)
            self.log.debug("%s: %s -> %s", table.name, state.value, next_state.value)
            state = next_state

        succeeded = state is TableState.SUCCEEDED
        ingestion = None
        if succeeded and not attempt.fallback_used and attempt.submit_result:
            ingestion = get_ingestion_details(table, attempt.submit_result.outputs)
        self.record(get_table_name(table.name), succeeded, fallback_used=attempt.fallback_used, ingestion=ingestion)
        return state

    async def build(self, attempt: ProvisioningAttempt) -> TableState:
        attempt.template = build_template(attempt.table, self.context)
        return TableState.SUBMITTING

    async def submit(self, attempt: ProvisioningAttempt) -> TableState:
        if attempt.template is None:
            return TableState.BUILDING
        attempt.submit_result = await self.deployment_client.submit(attempt.template, attempt.table)
        return TableState.SUCCEEDED if attempt.submit_result.succeeded else TableState.FALLING_BACK

    async def fall_back(self, attempt: ProvisioningAttempt) -> TableState:
        table_name = get_table_name(attempt.table.name)
        self.log.warning(
            "Deployment for %s failed, creating the table directly without an ingestion pipeline", table_name
        )
        if attempt.submit_result and attempt.submit_result.provider_message:
            self.log.warning("Deployment error for %s:\n%s", table_name, attempt.submit_result.provider_message)
        attempt.fallback_used = True
        if await self.log_analytics_client.create_table(self.context.workspace_name, attempt.table):
            return TableState.SUCCEEDED
        self.log.error("Failed to provision %s", table_name)
        return TableState.FAILED

    def record(
        self,
        table_name: str,
        succeeded: bool,
        fallback_used: bool = False,
        ingestion: IngestionDetails | None = None,
    ) -> None:
        self.outcomes.append(DeploymentOutcome(table_name, succeeded, fallback_used, ingestion))

    async def verify(self) -> dict[str, str | None]:
        """Read back every successfully provisioned table, mapping table name to a problem description or None"""
        problems: dict[str, str | None] = {}
        for outcome in self.outcomes:
            if not outcome.succeeded or outcome.table_name in problems:
                continue
            try:
                table = await self.log_analytics_client.get_table(self.context.workspace_name, outcome.table_name)
            except (LogAnalyticsError, ClientError, AzureError, TimeoutError, ValueError) as e:
                self.log.warning("Could not verify %s: %s", outcome.table_name, e)
                problems[outcome.table_name] = f"could not read table: {e}"
                continue
            problems[outcome.table_name] = get_table_problem(table)
        return problems

    def metric_series(self) -> list[MetricSeries]:
        succeeded = sum(outcome.succeeded for outcome in self.outcomes)
        return [
            *super().metric_series(),
            *(
                MetricSeries(
                    metric=AUX_TABLES_METRIC_PREFIX + f"tables.{status}",
                    points=[MetricPoint(timestamp=int(self.start_time), value=float(count))],
                    tags=self.tags,
                )
                for status, count in (("succeeded", succeeded), ("failed", len(self.outcomes) - succeeded))
            ),
        ]
