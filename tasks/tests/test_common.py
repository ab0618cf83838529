# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from unittest import TestCase

# project
from tasks.common import (
    ResourceNames,
    generate_unique_id,
    get_azure_mgmt_url,
    get_deployment_name,
    get_resource_group_id,
    get_resource_names,
)


class TestCommon(TestCase):
    def test_resource_names(self):
        self.assertEqual(
            get_resource_names("VersaAnalytics"),
            ResourceNames(
                table="VersaAnalytics_CL",
                endpoint="VersaAnalytics-DCE",
                rule="VersaAnalytics-DCR",
                stream="Custom-VersaAnalytics_CL",
            ),
        )

    def test_resource_group_id(self):
        self.assertEqual(
            get_resource_group_id("0863329b-6e5c-4b49-bb0e-c87fdab76bb2", "monitoring-rg"),
            "/subscriptions/0863329b-6e5c-4b49-bb0e-c87fdab76bb2/resourceGroups/monitoring-rg",
        )

    def test_mgmt_url(self):
        self.assertEqual(get_azure_mgmt_url("eastus2"), "https://management.azure.com")
        self.assertEqual(get_azure_mgmt_url("usgovvirginia"), "https://management.usgovcloudapi.net")
        self.assertEqual(get_azure_mgmt_url(""), "https://management.azure.com")

    def test_generate_unique_id(self):
        self.assertRegex(generate_unique_id(), r"^[0-9a-f]{12}$")
        self.assertNotEqual(generate_unique_id(), generate_unique_id())

    def test_deployment_names_are_unique_per_attempt(self):
        first, second = get_deployment_name("VersaAnalytics"), get_deployment_name("VersaAnalytics")
        self.assertRegex(first, r"^VersaAnalytics-[0-9a-f]{12}$")
        self.assertNotEqual(first, second)
