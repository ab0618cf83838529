# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from abc import abstractmethod
from asyncio import gather
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from logging import ERROR, Handler, LogRecord, basicConfig, getLogger
from os import environ
from time import time
from traceback import format_exception
from types import TracebackType
from typing import Self
from uuid import uuid4

# 3p
from azure.identity.aio import DefaultAzureCredential
from datadog_api_client import AsyncApiClient, Configuration
from datadog_api_client.v2.api.logs_api import LogsApi
from datadog_api_client.v2.api.metrics_api import MetricsApi
from datadog_api_client.v2.model.http_log import HTTPLog
from datadog_api_client.v2.model.http_log_item import HTTPLogItem
from datadog_api_client.v2.model.metric_payload import MetricPayload
from datadog_api_client.v2.model.metric_point import MetricPoint
from datadog_api_client.v2.model.metric_series import MetricSeries

# project
from config.env import DD_API_KEY_SETTING, DD_TELEMETRY_SETTING, LOG_LEVEL_SETTING, is_truthy
from tasks.common import AUX_TABLES_METRIC_PREFIX

log = getLogger(__name__)

getLogger("azure").setLevel(ERROR)

SERVICE = "aux-tables"
LOG_LEVELS = frozenset({"ERROR", "WARN", "WARNING", "INFO", "DEBUG"})
SKIPPED_RECORD_ATTRIBUTES = frozenset({"created", "relativecreated", "thread", "args", "msg", "message", "exc_info"})

ExcInfo = tuple[type[BaseException], BaseException, TracebackType | None] | tuple[None, None, None]


def error_attributes(exc_info: ExcInfo | None) -> dict[str, str]:
    """Exception name and formatted traceback of a log record, if it carries one"""
    if not exc_info or not any(exc_info):
        return {}
    exc_type, exc, tb = exc_info
    attributes = {"exc_info": "".join(format_exception(exc_type, value=exc, tb=tb, limit=20))}
    if exc_type is not None:
        attributes["exception"] = exc_type.__name__
    return attributes


def record_attributes(record: LogRecord) -> dict[str, str]:
    return {k: str(v) for k, v in vars(record).items() if k.lower() not in SKIPPED_RECORD_ATTRIBUTES}


def telemetry_enabled() -> bool:
    return is_truthy(DD_TELEMETRY_SETTING) and bool(environ.get(DD_API_KEY_SETTING))


class RecordBuffer(Handler):
    """Holds log records until they are drained for submission"""

    def __init__(self) -> None:
        super().__init__()
        self.records: list[LogRecord] = []

    def emit(self, record: LogRecord) -> None:
        record.asctime = datetime.now(UTC).isoformat()
        self.records.append(record)

    def drain(self) -> list[LogRecord]:
        records, self.records = self.records, []
        return records


class TelemetryReporter(AbstractAsyncContextManager["TelemetryReporter"]):
    """Sends a task's buffered log records and its metrics to Datadog"""

    def __init__(self, task_name: str, tags: list[str], enabled: bool) -> None:
        self.task_name = task_name
        self.tags = tags
        self.enabled = enabled
        self.execution_id = str(uuid4())
        self.buffer = RecordBuffer()
        self.api_client = AsyncApiClient(Configuration())
        self.logs_api = LogsApi(self.api_client)
        self.metrics_api = MetricsApi(self.api_client)

    async def __aenter__(self) -> Self:
        await self.api_client.__aenter__()
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_value: BaseException | None, traceback: TracebackType | None
    ) -> None:
        await self.api_client.__aexit__(exc_type, exc_value, traceback)

    def log_item(self, record: LogRecord) -> HTTPLogItem:
        return HTTPLogItem(
            **record_attributes(record),
            message=record.getMessage(),
            ddsource="azure",
            service=SERVICE,
            time=record.asctime,
            level=record.levelname,
            execution_id=self.execution_id,
            task=self.task_name,
            **error_attributes(record.exc_info),
        )

    async def submit(self, series: list[MetricSeries]) -> None:
        if not self.enabled:
            return
        records = self.buffer.drain()
        if not records:
            return
        logs = HTTPLog(value=[self.log_item(record) for record in records])
        await gather(
            self.logs_api.submit_log(logs, ddtags=",".join(self.tags)),  # type: ignore
            self.metrics_api.submit_metrics(MetricPayload(series=series)),  # type: ignore
        )


class Task(AbstractAsyncContextManager["Task"]):
    NAME: str

    def __init__(self) -> None:
        self.credential = DefaultAzureCredential()
        self.start_time = time()
        self.tags = [f"service:{SERVICE}", f"task:{self.NAME}"]
        self.log = log.getChild(type(self).__name__)
        self.telemetry = TelemetryReporter(self.NAME, self.tags, telemetry_enabled())
        if self.telemetry.enabled:
            log.info("Telemetry enabled, will submit logs for %s", self.NAME)
            self.log.addHandler(self.telemetry.buffer)

    @abstractmethod
    async def run(self) -> None: ...

    async def __aenter__(self) -> Self:
        await gather(self.credential.__aenter__(), self.telemetry.__aenter__())
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_value: BaseException | None, traceback: TracebackType | None
    ) -> None:
        await self.credential.__aexit__(exc_type, exc_value, traceback)
        try:
            await self.telemetry.submit(self.metric_series())
        except Exception:
            log.exception("Failed to submit telemetry")
        finally:
            self.log.removeHandler(self.telemetry.buffer)
        await self.telemetry.__aexit__(exc_type, exc_value, traceback)

    def metric_series(self) -> list[MetricSeries]:
        """Metrics submitted alongside the task's logs"""
        return [
            MetricSeries(
                metric=AUX_TABLES_METRIC_PREFIX + "runtime_seconds",
                points=[MetricPoint(timestamp=int(self.start_time), value=time() - self.start_time)],
                tags=self.tags,
            )
        ]


def configure_logging() -> str:
    """Set the root log level from LOG_LEVEL, falling back to INFO"""
    level = environ.get(LOG_LEVEL_SETTING, "INFO").upper()
    if level not in LOG_LEVELS:
        level = "INFO"
    basicConfig(format="%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    getLogger().setLevel(level)
    return level
