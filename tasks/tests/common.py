# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import AsyncIterable
from typing import Any, TypeVar
from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock, MagicMock, Mock, call, patch

# project
from catalog.common import Column, TableDefinition
from tasks.common import DeploymentContext

CONTEXT = DeploymentContext(
    subscription_id="0863329b-6e5c-4b49-bb0e-c87fdab76bb2",
    resource_group="monitoring-rg",
    workspace_name="security-ws",
    location="eastus2",
)


def table_definition(name: str, *columns: tuple[str, str]) -> TableDefinition:
    return TableDefinition(
        name=name,
        display_name=name,
        description="",
        columns=tuple(Column(n, t) for n, t in columns) or (Column("TimeGenerated", "datetime"),),  # type: ignore
    )


class AsyncTestCase(IsolatedAsyncioTestCase):
    def patch_path(self, path: str, **kwargs: Any) -> MagicMock | AsyncMock:
        p = patch(path, **kwargs)
        self.addCleanup(p.stop)
        return p.start()

    def assertCalledTimesWith(self, mock: AsyncMock, times: int, /, *args: Any, **kwargs: Any):
        self.assertEqual(mock.await_count, times)
        self.assertEqual([call(*args, **kwargs)] * times, mock.await_args_list)


T = TypeVar("T")


class TaskTestCase(AsyncTestCase):
    TASK_NAME: str = NotImplemented

    def patch(self, obj: str, **kwargs: Any):
        return self.patch_path(f"tasks.{self.TASK_NAME}.{obj}", **kwargs)

    def setUp(self) -> None:
        cred_mock = self.patch_path("tasks.task.DefaultAzureCredential", return_value=AsyncMockClient())
        self.credential = cred_mock.return_value
        self.datadog_api_client = self.patch_path("tasks.task.AsyncApiClient", return_value=AsyncMockClient())
        self.datadog_logs_api = self.patch_path("tasks.task.LogsApi", return_value=AsyncMock())
        self.datadog_metrics_api = self.patch_path("tasks.task.MetricsApi", return_value=AsyncMock())
        self.env: dict[str, str] = {}
        task_env_mock = self.patch_path("tasks.task.environ", create=True)
        task_env_mock.get.side_effect = lambda k, default=None: self.env.get(k, default)
        env_env_mock = self.patch_path("config.env.environ", create=True)
        env_env_mock.get.side_effect = lambda k, default=None: self.env.get(k, default)


async def async_generator(*items: T) -> AsyncIterable[T]:
    for x in items:
        if isinstance(x, Exception):
            raise x
        yield x


def mock(**kwargs: Any) -> Mock:
    m = Mock()
    for k, v in kwargs.items():
        setattr(m, k, v)
    return m


def AsyncMockClient(**kwargs: Any) -> AsyncMock:
    """An AsyncMock with the context manager methods set up to use as a client"""
    m = AsyncMock(**kwargs)
    m.__aenter__.return_value = m
    m.__aexit__.return_value = None
    return m


def mock_response(status: int = 200, json: Any = None, text: str = "", body: bytes | None = None) -> AsyncMock:
    """An aiohttp response usable as `async with session.get(...) as resp`"""
    resp = AsyncMockClient()
    resp.status = status
    resp.ok = status < 400
    resp.reason = "OK" if resp.ok else "Error"
    resp.json.return_value = json
    resp.text.return_value = text
    resp.read.return_value = text.encode() if body is None else body
    return resp
