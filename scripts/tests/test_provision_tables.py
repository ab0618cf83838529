# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from unittest import TestCase
from unittest.mock import Mock

# 3p
from aiohttp import ClientConnectionError
from azure.core.exceptions import ClientAuthenticationError

# project
from catalog.common import load_catalog
from config.env import MissingConfigOptionError
from scripts.provision_tables import (
    EXIT_OK,
    EXIT_PRECONDITION,
    EXIT_TABLES_FAILED,
    PreconditionError,
    catalog_summary,
    choose_tables,
    guidance,
    main,
    outcome_summary,
    parse_args,
    plan_summary,
    rerun_selection,
    resolve_context,
)
from tasks.provisioning_task import DeploymentOutcome, IngestionDetails
from tasks.tests.common import CONTEXT, AsyncMockClient, AsyncTestCase, async_generator, mock

CATALOG = load_catalog()

ANALYTICS_OK = DeploymentOutcome(
    "VersaAnalytics_CL",
    True,
    ingestion=IngestionDetails(
        "https://versaanalytics-dce.eastus2-1.ingest.monitor.azure.com", "dcr-1234", "Custom-VersaAnalytics_CL"
    ),
)
THREAT_TABLE_ONLY = DeploymentOutcome("VersaThreat_CL", True, fallback_used=True)
SDWAN_FAILED = DeploymentOutcome("VersaSdwan_CL", False, fallback_used=True)


class TestFormatting(TestCase):
    def test_catalog_summary_numbers_tables(self):
        summary = catalog_summary(CATALOG)
        self.assertIn("1. VersaAnalytics_CL", summary)
        self.assertIn("5. VersaSystem_CL", summary)

    def test_plan_summary(self):
        summary = plan_summary(CONTEXT, CATALOG[:1])
        self.assertIn("Workspace: security-ws (eastus2)", summary)
        self.assertIn("VersaAnalytics_CL with VersaAnalytics-DCE and VersaAnalytics-DCR", summary)

    def test_outcome_summary(self):
        summary = outcome_summary(
            [ANALYTICS_OK, THREAT_TABLE_ONLY, SDWAN_FAILED],
            {"VersaAnalytics_CL": None, "VersaThreat_CL": "table plan is Analytics, expected Auxiliary"},
        )
        self.assertIn("Provisioned 2 of 3 table(s)", summary)
        self.assertIn("VersaAnalytics_CL: OK\n", summary)
        self.assertIn("VersaThreat_CL: OK (table only, deployment failed)", summary)
        self.assertIn("VersaSdwan_CL: FAILED", summary)
        self.assertIn("verification: Auxiliary plan, 365 days retention", summary)
        self.assertIn("verification: table plan is Analytics, expected Auxiliary", summary)

    def test_rerun_selection_uses_catalog_numbers(self):
        self.assertEqual(rerun_selection(CATALOG, [ANALYTICS_OK, SDWAN_FAILED]), "4")
        self.assertEqual(rerun_selection(CATALOG, [ANALYTICS_OK]), "")

    def test_guidance(self):
        text = guidance(CONTEXT, CATALOG, [ANALYTICS_OK, THREAT_TABLE_ONLY, SDWAN_FAILED])
        self.assertIn("15-30 minutes", text)
        self.assertIn("VersaAnalytics_CL | take 10", text)
        self.assertIn("endpoint: https://versaanalytics-dce.eastus2-1.ingest.monitor.azure.com", text)
        self.assertIn("rule immutable id: dcr-1234", text)
        self.assertIn("stream: Custom-VersaAnalytics_CL", text)
        self.assertIn("Created without an ingestion pipeline: VersaThreat_CL", text)
        self.assertIn("--tables 4", text)

    def test_guidance_without_ingestion_outputs(self):
        outcome = DeploymentOutcome(
            "VersaFirewall_CL", True, ingestion=IngestionDetails(None, None, "Custom-VersaFirewall_CL")
        )
        text = guidance(CONTEXT, CATALOG, [outcome])
        self.assertIn("endpoint: see the data collection endpoint overview", text)
        self.assertIn("rule immutable id: see the data collection rule JSON view", text)
        self.assertNotIn("--tables", text)

    def test_guidance_when_nothing_succeeded(self):
        text = guidance(CONTEXT, CATALOG, [SDWAN_FAILED])
        self.assertNotIn("take 10", text)
        self.assertIn("--tables 4", text)


class TestChooseTables(AsyncTestCase):
    def setUp(self) -> None:
        self.input = self.patch_path("scripts.provision_tables.input", create=True)

    def test_tables_option(self):
        tables = choose_tables(parse_args(["-t", "2-3"]), CATALOG)
        self.assertEqual([t.name for t in tables], ["VersaFirewall", "VersaThreat"])
        self.input.assert_not_called()

    def test_invalid_tables_option(self):
        with self.assertRaises(PreconditionError):
            choose_tables(parse_args(["-t", "9"]), CATALOG)

    def test_yes_selects_everything(self):
        self.assertEqual(choose_tables(parse_args(["-y"]), CATALOG), CATALOG)

    def test_prompt_until_valid(self):
        self.input.side_effect = ["0", "abc", "5,1"]
        tables = choose_tables(parse_args([]), CATALOG)
        self.assertEqual([t.name for t in tables], ["VersaSystem", "VersaAnalytics"])
        self.assertEqual(self.input.call_count, 3)

    def test_empty_prompt_selects_everything(self):
        self.input.return_value = ""
        self.assertEqual(choose_tables(parse_args([]), CATALOG), CATALOG)


class TestResolveContext(AsyncTestCase):
    def setUp(self) -> None:
        self.patch_path("scripts.provision_tables.environ", new={})
        self.input = self.patch_path("scripts.provision_tables.input", create=True)
        self.credential = AsyncMockClient()
        self.patch_path("scripts.provision_tables.DefaultAzureCredential", return_value=self.credential)
        self.resource_client = AsyncMockClient()
        self.resource_client.resource_groups.check_existence.return_value = True
        self.patch_path("scripts.provision_tables.ResourceManagementClient", return_value=self.resource_client)
        self.log_analytics_client = AsyncMockClient()
        self.log_analytics_client.resource_group = "monitoring-rg"
        self.log_analytics_client.get_workspace.return_value = {"name": "security-ws", "location": "eastus2"}
        self.patch_path("scripts.provision_tables.LogAnalyticsClient", return_value=self.log_analytics_client)
        self.subscription_client = AsyncMockClient()
        self.patch_path("scripts.provision_tables.SubscriptionClient", return_value=self.subscription_client)

    async def test_options(self):
        args = parse_args(["-s", CONTEXT.subscription_id, "-g", "monitoring-rg", "-w", "security-ws"])

        self.assertEqual(await resolve_context(args), CONTEXT)

        self.resource_client.resource_groups.check_existence.assert_awaited_once_with("monitoring-rg")
        self.log_analytics_client.get_workspace.assert_awaited_once_with("security-ws")
        self.input.assert_not_called()

    async def test_location_option_overrides_workspace_location(self):
        args = parse_args(["-s", CONTEXT.subscription_id, "-g", "monitoring-rg", "-w", "security-ws", "-l", "westus"])

        context = await resolve_context(args)

        self.assertEqual(context.location, "westus")

    async def test_missing_resource_group(self):
        self.resource_client.resource_groups.check_existence.return_value = False
        args = parse_args(["-s", CONTEXT.subscription_id, "-g", "missing-rg", "-w", "security-ws"])

        with self.assertRaisesRegex(PreconditionError, "Resource group missing-rg not found"):
            await resolve_context(args)
        self.log_analytics_client.get_workspace.assert_not_awaited()

    async def test_missing_workspace(self):
        self.log_analytics_client.get_workspace.return_value = None
        args = parse_args(["-s", CONTEXT.subscription_id, "-g", "monitoring-rg", "-w", "missing-ws"])

        with self.assertRaisesRegex(PreconditionError, "Workspace missing-ws not found"):
            await resolve_context(args)

    async def test_yes_without_subscription(self):
        with self.assertRaisesRegex(PreconditionError, "No subscription specified"):
            await resolve_context(parse_args(["-y", "-g", "monitoring-rg", "-w", "security-ws"]))

    async def test_yes_without_resource_group(self):
        self.patch_path("config.env.environ", new={})

        with self.assertRaisesRegex(MissingConfigOptionError, "RESOURCE_GROUP"):
            await resolve_context(parse_args(["-y", "-s", CONTEXT.subscription_id, "-w", "security-ws"]))
        self.input.assert_not_called()

    async def test_resource_group_from_environment(self):
        self.patch_path("config.env.environ", new={"RESOURCE_GROUP": "monitoring-rg"})

        context = await resolve_context(parse_args(["-y", "-s", CONTEXT.subscription_id, "-w", "security-ws"]))

        self.assertEqual(context, CONTEXT)

    async def test_prompts_for_missing_values(self):
        self.subscription_client.subscriptions.list = Mock(
            return_value=async_generator(
                mock(display_name="Dev", subscription_id="1111"),
                mock(display_name="Prod", subscription_id=CONTEXT.subscription_id),
            )
        )
        self.log_analytics_client.list_workspaces.return_value = [
            {"name": "other-ws", "location": "westus"},
            {"name": "security-ws", "location": "eastus2"},
        ]
        self.input.side_effect = ["2", "monitoring-rg", "2"]

        self.assertEqual(await resolve_context(parse_args([])), CONTEXT)

        self.log_analytics_client.get_workspace.assert_awaited_once_with("security-ws")


class TestMain(AsyncTestCase):
    def setUp(self) -> None:
        self.patch_path("scripts.provision_tables.environ", new={})
        self.patch_path("scripts.provision_tables.configure_logging")
        self.print = self.patch_path("scripts.provision_tables.print", create=True)
        self.input = self.patch_path("scripts.provision_tables.input", create=True)
        self.resolve_context = self.patch_path("scripts.provision_tables.resolve_context", return_value=CONTEXT)
        self.task = AsyncMockClient()
        self.task.outcomes = [ANALYTICS_OK, DeploymentOutcome("VersaThreat_CL", True)]
        self.provisioning_task = self.patch_path(
            "scripts.provision_tables.ProvisioningTask", return_value=self.task
        )

    def printed(self) -> str:
        return "\n".join(str(c.args[0]) for c in self.print.call_args_list if c.args)

    async def test_provisions_selected_tables(self):
        self.assertEqual(await main(["-y", "-t", "1,3"]), EXIT_OK)

        self.provisioning_task.assert_called_once_with(CONTEXT, [CATALOG[0], CATALOG[2]])
        self.task.run.assert_awaited_once_with()
        self.task.verify.assert_not_awaited()
        self.assertIn("Provisioned 2 of 2 table(s)", self.printed())

    async def test_failed_table_exit_code(self):
        self.task.outcomes = [ANALYTICS_OK, DeploymentOutcome("VersaThreat_CL", False, fallback_used=True)]

        self.assertEqual(await main(["-y", "-t", "1,3"]), EXIT_TABLES_FAILED)

        self.assertIn("--tables 3", self.printed())

    async def test_verify(self):
        self.task.verify.return_value = {"VersaAnalytics_CL": None, "VersaThreat_CL": None}

        self.assertEqual(await main(["-y", "-t", "1,3", "--verify"]), EXIT_OK)

        self.task.verify.assert_awaited_once_with()
        self.assertIn("verification: Auxiliary plan, 365 days retention", self.printed())

    async def test_list(self):
        self.assertEqual(await main(["--list"]), EXIT_OK)

        self.assertIn("1. VersaAnalytics_CL", self.printed())
        self.resolve_context.assert_not_awaited()
        self.provisioning_task.assert_not_called()

    async def test_dry_run(self):
        self.assertEqual(await main(["-y", "-t", "2", "--dry-run"]), EXIT_OK)

        printed = self.printed()
        self.assertIn("DRY RUN | Template for VersaFirewall_CL", printed)
        self.assertIn('"plan": "Auxiliary"', printed)
        self.provisioning_task.assert_not_called()

    async def test_declined_confirmation(self):
        self.input.return_value = "n"

        self.assertEqual(await main(["-t", "1"]), EXIT_OK)

        self.provisioning_task.assert_not_called()

    async def test_invalid_catalog(self):
        self.assertEqual(await main(["--catalog", "/nonexistent/tables.yaml"]), EXIT_PRECONDITION)

        self.resolve_context.assert_not_awaited()

    async def test_precondition_failure(self):
        self.resolve_context.side_effect = PreconditionError("Workspace missing-ws not found")

        self.assertEqual(await main(["-y"]), EXIT_PRECONDITION)

        self.provisioning_task.assert_not_called()

    async def test_authentication_failure(self):
        self.resolve_context.side_effect = ClientAuthenticationError("DefaultAzureCredential failed")

        self.assertEqual(await main(["-y"]), EXIT_PRECONDITION)

    async def test_invalid_selection(self):
        self.assertEqual(await main(["-y", "-t", "7"]), EXIT_PRECONDITION)

        self.provisioning_task.assert_not_called()

    async def test_workspace_lookup_connection_failure(self):
        self.resolve_context.side_effect = ClientConnectionError("Cannot connect to host management.azure.com")

        self.assertEqual(await main(["-y"]), EXIT_PRECONDITION)

        self.provisioning_task.assert_not_called()

    async def test_workspace_lookup_timeout(self):
        self.resolve_context.side_effect = TimeoutError()

        self.assertEqual(await main(["-y"]), EXIT_PRECONDITION)
