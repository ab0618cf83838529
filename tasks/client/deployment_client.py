# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from contextlib import AbstractAsyncContextManager
from logging import getLogger
from tempfile import NamedTemporaryFile
from types import TracebackType
from typing import Any, Final, NamedTuple, Self

# 3p
from azure.identity.aio import DefaultAzureCredential
from azure.mgmt.resource.resources.aio import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentExtended,
    DeploymentMode,
    DeploymentProperties,
    ErrorResponse,
)
from tenacity import RetryCallState, retry, retry_if_result, stop_after_delay, wait_fixed

# project
from catalog.common import TableDefinition
from tasks.common import SUCCEEDED_STATE, DeploymentContext, get_azure_mgmt_url, get_deployment_name
from tasks.template import DeploymentTemplate, deserialize_template, serialize_template, template_parameters

TERMINAL_STATES: Final = frozenset({SUCCEEDED_STATE, "Failed", "Canceled"})
POLL_INTERVAL_SECONDS: Final = 10

log = getLogger(__name__)


class SubmitResult(NamedTuple):
    succeeded: bool
    provider_message: str | None = None
    outputs: dict[str, str] | None = None


def get_provisioning_state(deployment: DeploymentExtended | None) -> str | None:
    if deployment is None or deployment.properties is None:
        return None
    return deployment.properties.provisioning_state


def is_deployment_running(deployment: DeploymentExtended | None) -> bool:
    return get_provisioning_state(deployment) not in TERMINAL_STATES


def last_result(state: RetryCallState) -> Any:
    """Stop polling without raising, handing back the last deployment seen"""
    return state.outcome.result() if state.outcome else None


def format_deployment_error(error: ErrorResponse | None, indent: str = "") -> str | None:
    if error is None:
        return None
    lines = [f"{indent}{error.code}: {error.message}"]
    for detail in error.details or []:
        if formatted := format_deployment_error(detail, indent + "  "):
            lines.append(formatted)
    return "\n".join(lines)


def get_outputs(deployment: DeploymentExtended) -> dict[str, str]:
    outputs: dict[str, Any] = {}
    if deployment.properties is not None and deployment.properties.outputs:
        outputs = deployment.properties.outputs
    return {name: output["value"] for name, output in outputs.items() if isinstance(output, dict) and "value" in output}


class DeploymentClient(AbstractAsyncContextManager["DeploymentClient"]):
    """Submits ARM template deployments to the resource group of the deployment context"""

    def __init__(
        self,
        credential: DefaultAzureCredential,
        context: DeploymentContext,
        timeout: float,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.context = context
        self.timeout = timeout
        self.poll_interval = poll_interval
        mgmt_url = get_azure_mgmt_url(context.location)
        self.resource_client = ResourceManagementClient(
            credential, context.subscription_id, base_url=mgmt_url, credential_scopes=[mgmt_url + "/.default"]
        )

    async def __aenter__(self) -> Self:
        await self.resource_client.__aenter__()
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: TracebackType | None
    ) -> None:
        await self.resource_client.__aexit__(exc_type, exc_val, exc_tb)

    async def submit(self, template: DeploymentTemplate, table: TableDefinition) -> SubmitResult:
        """Deploy `template`, reporting failure instead of raising.

        The serialized template lives in a temporary file for the duration of the submission."""
        deployment_name = get_deployment_name(table.name)
        try:
            with NamedTemporaryFile("w+", prefix=f"{deployment_name}-", suffix=".json") as template_file:
                template_file.write(serialize_template(template))
                template_file.flush()
                log.debug("Wrote template for deployment %s to %s", deployment_name, template_file.name)
                template_file.seek(0)
                if (serialized := deserialize_template(template_file.read())) is None:
                    raise ValueError(f"Template written to {template_file.name} is not a valid deployment template")
                deployment = await self.deploy(deployment_name, serialized)
        except Exception as e:
            log.exception("Failed to submit deployment %s", deployment_name)
            return SubmitResult(False, f"{type(e).__name__}: {e}")

        state = get_provisioning_state(deployment)
        if state == SUCCEEDED_STATE:
            log.info("Deployment %s succeeded", deployment_name)
            return SubmitResult(True, outputs=get_outputs(deployment))

        if state in TERMINAL_STATES:
            message = f"Deployment {deployment_name} finished in state {state}"
        else:
            message = f"Deployment {deployment_name} did not finish within {self.timeout:g} seconds (state {state})"
        if deployment is not None and deployment.properties is not None:
            if error := format_deployment_error(deployment.properties.error):
                message += f"\n{error}"
        log.error(message)
        return SubmitResult(False, message)

    async def deploy(self, deployment_name: str, template: dict[str, Any]) -> DeploymentExtended:
        await self.resource_client.deployments.begin_create_or_update(
            self.context.resource_group,
            deployment_name,
            Deployment(
                properties=DeploymentProperties(
                    mode=DeploymentMode.INCREMENTAL,
                    template=template,
                    parameters=template_parameters(self.context),
                )
            ),
        )
        return await self.wait_for_deployment(deployment_name)

    async def wait_for_deployment(self, deployment_name: str) -> DeploymentExtended:
        """Poll the deployment until it reaches a terminal state or the timeout passes"""
        return await retry(
            retry=retry_if_result(is_deployment_running),
            stop=stop_after_delay(self.timeout),
            wait=wait_fixed(self.poll_interval),
            retry_error_callback=last_result,
        )(self.resource_client.deployments.get)(self.context.resource_group, deployment_name)
