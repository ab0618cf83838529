#!/usr/bin/env python
# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# usage: provision_tables.py [-h] [-s SUBSCRIPTION] [-g RESOURCE_GROUP] [-w WORKSPACE] [-l LOCATION] [-t TABLES]
#                            [--catalog CATALOG] [--list] [--dry-run] [--verify] [-y]
#
# Provision custom log tables on the Auxiliary plan in a Log Analytics workspace, each with a
# data collection endpoint and data collection rule. Missing options are prompted for.

# stdlib
from argparse import ArgumentParser, Namespace
from asyncio import run
from collections.abc import Sequence
from logging import getLogger
from os import environ
from typing import Any, Final

# 3p
from aiohttp import ClientError
from azure.core.exceptions import ClientAuthenticationError, HttpResponseError
from azure.identity.aio import DefaultAzureCredential
from azure.mgmt.resource.resources.aio import ResourceManagementClient
from azure.mgmt.resource.subscriptions.aio import SubscriptionClient

# project
from catalog.common import InvalidCatalogError, TableDefinition, load_catalog, select_tables
from config.env import (
    LOCATION_SETTING,
    RESOURCE_GROUP_SETTING,
    SUBSCRIPTION_ID_SETTING,
    TABLE_CATALOG_SETTING,
    WORKSPACE_NAME_SETTING,
    MissingConfigOptionError,
    get_config_option,
)
from tasks.client.log_analytics_client import LogAnalyticsClient, LogAnalyticsError
from tasks.common import DeploymentContext, get_table_name
from tasks.provisioning_task import DeploymentOutcome, ProvisioningTask
from tasks.task import configure_logging
from tasks.template import build_template, serialize_template

log = getLogger("provision_tables")

SEPARATOR: Final = "\n==============================\n"

EXIT_OK: Final = 0
EXIT_PRECONDITION: Final = 1
EXIT_TABLES_FAILED: Final = 2


class PreconditionError(Exception):
    pass


# ===== Formatting ===== #
def catalog_summary(catalog: Sequence[TableDefinition]) -> str:
    summary = "Available tables:\n"
    for index, table in enumerate(catalog, start=1):
        summary += f"\t{index}. {get_table_name(table.name)} - {table.display_name} ({len(table.columns)} columns)\n"
        if table.description:
            summary += f"\t\t{table.description}\n"
    return summary


def plan_summary(context: DeploymentContext, tables: Sequence[TableDefinition]) -> str:
    summary = f"{SEPARATOR}Provisioning the following tables on the Auxiliary plan (365 days total retention):\n"
    summary += f"\tSubscription: {context.subscription_id}\n"
    summary += f"\tResource group: {context.resource_group}\n"
    summary += f"\tWorkspace: {context.workspace_name} ({context.location})\n"
    for table in tables:
        summary += f"\t\t- {get_table_name(table.name)} with {table.name}-DCE and {table.name}-DCR\n"
    return summary


def outcome_summary(outcomes: Sequence[DeploymentOutcome], problems: dict[str, str | None] | None = None) -> str:
    problems = problems or {}
    succeeded = sum(outcome.succeeded for outcome in outcomes)
    summary = f"{SEPARATOR}Provisioned {succeeded} of {len(outcomes)} table(s):\n"
    for outcome in outcomes:
        if not outcome.succeeded:
            status = "FAILED"
        elif outcome.fallback_used:
            status = "OK (table only, deployment failed)"
        else:
            status = "OK"
        summary += f"\t- {outcome.table_name}: {status}\n"
        if outcome.table_name in problems:
            problem = problems[outcome.table_name]
            summary += f"\t\tverification: {problem or 'Auxiliary plan, 365 days retention'}\n"
    return summary


def rerun_selection(catalog: Sequence[TableDefinition], outcomes: Sequence[DeploymentOutcome]) -> str:
    failed = {outcome.table_name for outcome in outcomes if not outcome.succeeded}
    return ",".join(str(i) for i, table in enumerate(catalog, start=1) if get_table_name(table.name) in failed)


def guidance(
    context: DeploymentContext, catalog: Sequence[TableDefinition], outcomes: Sequence[DeploymentOutcome]
) -> str:
    created = [outcome for outcome in outcomes if outcome.succeeded]
    text = "Next steps:\n"
    if created:
        text += (
            "\t- New Auxiliary tables can take 15-30 minutes to show up in the Azure portal and in query results."
            " This delay is expected.\n"
            f"\t- In workspace '{context.workspace_name}', open Tables and check each table shows the Auxiliary plan"
            " with 365 days total retention.\n"
            f"\t- Once data is flowing, verify it with a query such as: {created[0].table_name} | take 10\n"
        )
    with_pipeline = [(outcome.table_name, outcome.ingestion) for outcome in created if outcome.ingestion]
    if with_pipeline:
        text += "\nIngestion details for the Logs Ingestion API:\n"
        for table_name, ingestion in with_pipeline:
            endpoint = ingestion.endpoint_uri or "see the data collection endpoint overview"
            rule_id = ingestion.rule_immutable_id or "see the data collection rule JSON view"
            text += f"\t{table_name}\n"
            text += f"\t\tendpoint: {endpoint}\n"
            text += f"\t\trule immutable id: {rule_id}\n"
            text += f"\t\tstream: {ingestion.stream_name}\n"
    table_only = [outcome.table_name for outcome in created if outcome.fallback_used]
    if table_only:
        text += (
            f"\nCreated without an ingestion pipeline: {', '.join(table_only)}\n"
            "\tThese tables have no data collection endpoint or rule. Create them before sending data.\n"
        )
    if selection := rerun_selection(catalog, outcomes):
        text += f"\nFailed tables can be retried after fixing the errors above with: --tables {selection}\n"
    return text


# ===== User Interaction ===== #
def confirm(message: str = "Continue? (y/n): ") -> bool:
    choice = input(message).lower().strip()
    while choice not in ["y", "n"]:
        choice = input(message).lower().strip()
    return choice == "y"


def choose(options: Sequence[str], kind: str) -> int:
    """Prompt the user to pick one of `options` by number, returns its index"""
    listing = "\n".join(f"\t{i}. {option}" for i, option in enumerate(options, start=1))
    log.info(f"Found {len(options)} {kind}(s):\n{listing}")
    choice = input(f"Enter the number of the {kind} to use: ").strip()
    while not (choice.isdigit() and 1 <= int(choice) <= len(options)):
        choice = input(f"Please enter a number between 1 and {len(options)}: ").strip()
    return int(choice) - 1


def ask(args: Namespace, value: str | None, setting: str, message: str) -> str:
    if value:
        return value
    if args.yes:
        return get_config_option(setting)
    if value := environ.get(setting):
        return value
    while not (value := input(message).strip()):
        pass
    return value


def choose_tables(args: Namespace, catalog: Sequence[TableDefinition]) -> list[TableDefinition]:
    if args.tables is not None:
        try:
            return select_tables(catalog, args.tables)
        except ValueError as e:
            raise PreconditionError(f"Invalid table selection: {e}") from e
    if args.yes:
        return list(catalog)
    log.info(catalog_summary(catalog))
    prompt = """
    Enter the tables to provision
    - To provision all of them, enter '*' or press enter
    - To provision some of them, enter their numbers, e.g. '1,3' or '2-4'
    : """
    while True:
        try:
            return select_tables(catalog, input(prompt))
        except ValueError as e:
            log.warning(str(e))


# ===== Azure ===== #
async def resolve_subscription(args: Namespace, credential: DefaultAzureCredential) -> str:
    if subscription_id := args.subscription or environ.get(SUBSCRIPTION_ID_SETTING):
        return subscription_id
    if args.yes:
        raise PreconditionError("No subscription specified")
    log.info("Fetching subscriptions accessible by current user...")
    async with SubscriptionClient(credential) as client:
        subscriptions = [sub async for sub in client.subscriptions.list()]
    if not subscriptions:
        raise PreconditionError("No subscriptions are accessible with the current credentials")
    if len(subscriptions) == 1:
        log.info(f"Using subscription {subscriptions[0].display_name} ({subscriptions[0].subscription_id})")
        return subscriptions[0].subscription_id
    index = choose([f"{sub.display_name} ({sub.subscription_id})" for sub in subscriptions], "subscription")
    return subscriptions[index].subscription_id


async def resolve_workspace(args: Namespace, client: LogAnalyticsClient) -> dict[str, Any]:
    workspace_name = args.workspace or environ.get(WORKSPACE_NAME_SETTING)
    if not workspace_name:
        if args.yes:
            raise PreconditionError("No workspace specified")
        workspaces = await client.list_workspaces()
        if not workspaces:
            raise PreconditionError(f"No Log Analytics workspaces found in resource group {client.resource_group}")
        index = choose([f"{ws['name']} ({ws.get('location', 'unknown')})" for ws in workspaces], "workspace")
        workspace_name = workspaces[index]["name"]
    workspace = await client.get_workspace(workspace_name)
    if workspace is None:
        raise PreconditionError(f"Workspace {workspace_name} not found in resource group {client.resource_group}")
    return workspace


async def resolve_context(args: Namespace) -> DeploymentContext:
    """Resolve and check the subscription, resource group and workspace before anything is provisioned"""
    async with DefaultAzureCredential() as credential:
        subscription_id = await resolve_subscription(args, credential)
        resource_group = ask(args, args.resource_group, RESOURCE_GROUP_SETTING, "Resource group name: ")
        async with ResourceManagementClient(credential, subscription_id) as resource_client:
            if not await resource_client.resource_groups.check_existence(resource_group):
                raise PreconditionError(f"Resource group {resource_group} not found in subscription {subscription_id}")
        location = args.location or environ.get(LOCATION_SETTING)
        async with LogAnalyticsClient(credential, subscription_id, resource_group, location or "") as client:
            workspace = await resolve_workspace(args, client)
    return DeploymentContext(
        subscription_id=subscription_id,
        resource_group=resource_group,
        workspace_name=workspace["name"],
        location=location or workspace["location"],
    )


def parse_args(argv: Sequence[str] | None = None) -> Namespace:
    parser = ArgumentParser(
        description="Provision custom log tables on the Auxiliary plan in an Azure Log Analytics workspace"
    )
    parser.add_argument("-s", "--subscription", type=str, help="Subscription ID of the workspace")
    parser.add_argument("-g", "--resource-group", type=str, help="Existing resource group of the workspace")
    parser.add_argument("-w", "--workspace", type=str, help="Existing Log Analytics workspace name")
    parser.add_argument(
        "-l", "--location", type=str, help="Region for the ingestion resources (defaults to the workspace region)"
    )
    parser.add_argument(
        "-t", "--tables", type=str, help="Tables to provision by number, e.g. '1,3' or '2-4', or 'all'"
    )
    parser.add_argument("--catalog", type=str, help="Path to an alternative YAML table catalog")
    parser.add_argument("--list", action="store_true", help="List the available tables and exit")
    parser.add_argument(
        "--dry-run", action="store_true", help="Print the deployment templates without provisioning anything"
    )
    parser.add_argument("--verify", action="store_true", help="Read back the provisioned tables after the run")
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Skip all user prompts, provisioning every table unless --tables is given",
    )
    return parser.parse_args(argv)


async def main(argv: Sequence[str] | None = None) -> int:
    """
    Overview:
    1) Load the table catalog.
    2) Resolve the subscription, resource group and workspace, checking they exist.
    3) Choose the tables to provision and confirm the plan.
    4) Provision each table: deployment template first, direct table creation if that fails.
    5) Summarize the outcome per table and print follow-up guidance.
    """
    args = parse_args(argv)
    configure_logging()

    try:
        catalog = load_catalog(args.catalog or environ.get(TABLE_CATALOG_SETTING))
    except (InvalidCatalogError, OSError) as e:
        log.error(f"Could not load table catalog: {e}")
        return EXIT_PRECONDITION
    if args.list:
        print(catalog_summary(catalog))
        return EXIT_OK

    try:
        context = await resolve_context(args)
        tables = choose_tables(args, catalog)
    except (
        PreconditionError,
        MissingConfigOptionError,
        LogAnalyticsError,
        ClientError,
        ClientAuthenticationError,
        HttpResponseError,
        TimeoutError,
    ) as e:
        log.error(str(e))
        return EXIT_PRECONDITION

    log.info(plan_summary(context, tables))
    if args.dry_run:
        for table in tables:
            print(f"{SEPARATOR}DRY RUN | Template for {get_table_name(table.name)}:")
            print(serialize_template(build_template(table, context)))
        return EXIT_OK
    if not args.yes and not confirm():
        log.info("Exiting.")
        return EXIT_OK

    async with ProvisioningTask(context, tables) as task:
        await task.run()
        problems = await task.verify() if args.verify else {}

    print(outcome_summary(task.outcomes, problems))
    print(guidance(context, catalog, task.outcomes))
    if all(outcome.succeeded for outcome in task.outcomes):
        return EXIT_OK
    return EXIT_TABLES_FAILED


def cli() -> None:
    raise SystemExit(run(main()))


if __name__ == "__main__":
    cli()
