# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

"""ARM deployment templates for one auxiliary table and its ingestion pipeline.

A template is built as an object graph: resources refer to each other and to
template parameters/variables through `Expression` objects, which are only
rendered to ARM expression strings (`"[resourceId(...)]"`) by `to_dict`.
"""

# stdlib
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from json import JSONDecodeError, dumps, loads
from typing import Any, Final, TypeAlias

# 3p
from jsonschema import ValidationError, validate

# project
from catalog.common import TableDefinition, column_schema
from tasks.common import AUXILIARY_PLAN, TOTAL_RETENTION_DAYS, DeploymentContext, get_resource_names

TEMPLATE_SCHEMA_URL: Final = "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
CONTENT_VERSION: Final = "1.0.0.0"

ENDPOINT_TYPE: Final = "Microsoft.Insights/dataCollectionEndpoints"
TABLE_TYPE: Final = "Microsoft.OperationalInsights/workspaces/tables"
RULE_TYPE: Final = "Microsoft.Insights/dataCollectionRules"
WORKSPACE_TYPE: Final = "Microsoft.OperationalInsights/workspaces"

DATA_COLLECTION_API_VERSION: Final = "2023-03-11"
# the auxiliary plan is only accepted from this api version on
TABLES_API_VERSION: Final = "2023-01-01-preview"

WORKSPACE_PARAMETER: Final = "workspaceName"
LOCATION_PARAMETER: Final = "location"
TABLE_VARIABLE: Final = "tableName"
ENDPOINT_VARIABLE: Final = "endpointName"
RULE_VARIABLE: Final = "ruleName"
STREAM_VARIABLE: Final = "streamName"

WORKSPACE_DESTINATION: Final = "workspace"

ENDPOINT_URI_OUTPUT: Final = "endpointUri"
RULE_IMMUTABLE_ID_OUTPUT: Final = "ruleImmutableId"
STREAM_NAME_OUTPUT: Final = "streamName"


class Expression(ABC):
    @abstractmethod
    def render(self) -> str:
        """Render the expression body, without the surrounding brackets"""


def render_argument(value: "str | Expression") -> str:
    if isinstance(value, Expression):
        return value.render()
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class Parameter(Expression):
    name: str

    def render(self) -> str:
        return f"parameters({render_argument(self.name)})"


@dataclass(frozen=True)
class Variable(Expression):
    name: str

    def render(self) -> str:
        return f"variables({render_argument(self.name)})"


Segment: TypeAlias = str | Parameter | Variable


@dataclass(frozen=True)
class Concat(Expression):
    parts: tuple[Segment, ...]

    def render(self) -> str:
        return f"concat({', '.join(map(render_argument, self.parts))})"


@dataclass(frozen=True)
class ResourceId(Expression):
    type: str
    segments: tuple[Segment, ...]

    def render(self) -> str:
        return f"resourceId({', '.join(map(render_argument, (self.type, *self.segments)))})"


@dataclass(frozen=True)
class Reference(Expression):
    """Runtime property of a deployed resource, e.g. `reference(resourceId(...), '2023-03-11').immutableId`"""

    resource_id: ResourceId
    api_version: str
    path: str

    def render(self) -> str:
        return f"reference({self.resource_id.render()}, {render_argument(self.api_version)}).{self.path}"


@dataclass(eq=False)
class TemplateResource:
    type: str
    api_version: str
    segments: tuple[Segment, ...]
    properties: dict[str, Any]
    location: Segment | None = None
    depends_on: list["TemplateResource"] = field(default_factory=list)

    @property
    def id(self) -> ResourceId:
        return ResourceId(self.type, self.segments)

    @property
    def name(self) -> Segment | Concat:
        if len(self.segments) == 1:
            return self.segments[0]
        parts: list[Segment] = []
        for segment in self.segments:
            if parts:
                parts.append("/")
            parts.append(segment)
        return Concat(tuple(parts))

    def reference(self, path: str) -> Reference:
        return Reference(self.id, self.api_version, path)

    def to_dict(self) -> dict[str, Any]:
        resource: dict[str, Any] = {"type": self.type, "apiVersion": self.api_version, "name": resolve(self.name)}
        if self.location is not None:
            resource["location"] = resolve(self.location)
        if self.depends_on:
            resource["dependsOn"] = [resolve(dependency) for dependency in self.depends_on]
        resource["properties"] = resolve(self.properties)
        return resource


def resolve(value: Any) -> Any:
    """Render every expression and resource reference nested in `value` into ARM template JSON"""
    if isinstance(value, TemplateResource):
        return resolve(value.id)
    if isinstance(value, Expression):
        return f"[{value.render()}]"
    if isinstance(value, Mapping):
        return {k: resolve(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [resolve(v) for v in value]
    return value


@dataclass(frozen=True)
class TemplateParameter:
    type: str
    default_value: Any = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        parameter: dict[str, Any] = {"type": self.type}
        if self.default_value is not None:
            parameter["defaultValue"] = resolve(self.default_value)
        if self.description:
            parameter["metadata"] = {"description": self.description}
        return parameter


@dataclass
class DeploymentTemplate:
    parameters: dict[str, TemplateParameter]
    variables: dict[str, str]
    resources: list[TemplateResource]
    outputs: dict[str, Expression] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "$schema": TEMPLATE_SCHEMA_URL,
            "contentVersion": CONTENT_VERSION,
            "parameters": {name: parameter.to_dict() for name, parameter in self.parameters.items()},
            "variables": dict(self.variables),
            "resources": [resource.to_dict() for resource in self.resources],
            "outputs": {name: {"type": "string", "value": resolve(value)} for name, value in self.outputs.items()},
        }


def build_template(table: TableDefinition, context: DeploymentContext) -> DeploymentTemplate:
    """Build the endpoint, table and rule deployment for `table`. The rule depends on the other two."""
    if not table.columns:
        raise ValueError(f"Table definition {table.name} has no columns")
    names = get_resource_names(table.name)
    columns = column_schema(table)
    workspace_name = Parameter(WORKSPACE_PARAMETER)
    location = Parameter(LOCATION_PARAMETER)

    endpoint = TemplateResource(
        type=ENDPOINT_TYPE,
        api_version=DATA_COLLECTION_API_VERSION,
        segments=(Variable(ENDPOINT_VARIABLE),),
        location=location,
        properties={"networkAcls": {"publicNetworkAccess": "Enabled"}},
    )
    table_resource = TemplateResource(
        type=TABLE_TYPE,
        api_version=TABLES_API_VERSION,
        segments=(workspace_name, Variable(TABLE_VARIABLE)),
        properties={
            "schema": {"name": Variable(TABLE_VARIABLE), "columns": columns},
            "totalRetentionInDays": TOTAL_RETENTION_DAYS,
            "plan": AUXILIARY_PLAN,
        },
    )
    rule = TemplateResource(
        type=RULE_TYPE,
        api_version=DATA_COLLECTION_API_VERSION,
        segments=(Variable(RULE_VARIABLE),),
        location=location,
        depends_on=[endpoint, table_resource],
        properties={
            "dataCollectionEndpointId": endpoint,
            "streamDeclarations": {names.stream: {"columns": columns}},
            "destinations": {
                "logAnalytics": [
                    {
                        "workspaceResourceId": ResourceId(WORKSPACE_TYPE, (workspace_name,)),
                        "name": WORKSPACE_DESTINATION,
                    }
                ]
            },
            "dataFlows": [
                {
                    "streams": [names.stream],
                    "destinations": [WORKSPACE_DESTINATION],
                    "transformKql": "source",
                    "outputStream": names.stream,
                }
            ],
        },
    )

    return DeploymentTemplate(
        parameters={
            WORKSPACE_PARAMETER: TemplateParameter(
                "string", context.workspace_name, "Name of the existing Log Analytics workspace"
            ),
            LOCATION_PARAMETER: TemplateParameter("string", context.location, "Region of the ingestion resources"),
        },
        variables={
            TABLE_VARIABLE: names.table,
            ENDPOINT_VARIABLE: names.endpoint,
            RULE_VARIABLE: names.rule,
            STREAM_VARIABLE: names.stream,
        },
        resources=[endpoint, table_resource, rule],
        outputs={
            ENDPOINT_URI_OUTPUT: endpoint.reference("logsIngestion.endpoint"),
            RULE_IMMUTABLE_ID_OUTPUT: rule.reference("immutableId"),
            STREAM_NAME_OUTPUT: Variable(STREAM_VARIABLE),
        },
    )


def template_parameters(context: DeploymentContext) -> dict[str, Any]:
    """Parameter values for a deployment of a template from `build_template`"""
    return {
        WORKSPACE_PARAMETER: {"value": context.workspace_name},
        LOCATION_PARAMETER: {"value": context.location},
    }


TEMPLATE_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "$schema": {"type": "string"},
        "contentVersion": {"type": "string"},
        "parameters": {"type": "object"},
        "variables": {"type": "object"},
        "resources": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string"},
                    "apiVersion": {"type": "string"},
                    "name": {"type": "string"},
                    "properties": {"type": "object"},
                    "dependsOn": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["type", "apiVersion", "name", "properties"],
            },
        },
        "outputs": {"type": "object"},
    },
    "required": ["$schema", "contentVersion", "parameters", "variables", "resources"],
}


def serialize_template(template: DeploymentTemplate) -> str:
    return dumps(template.to_dict(), indent=2)


def deserialize_template(raw_template: str) -> dict[str, Any] | None:
    try:
        template = loads(raw_template)
        validate(instance=template, schema=TEMPLATE_JSON_SCHEMA)
        return template
    except (JSONDecodeError, ValidationError):
        return None
