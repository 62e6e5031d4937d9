"""
Usage telemetry.

Lifecycle calls record counter events on a `TelemetryHandler`, which hands
them to the configured sinks. Submission is bounded by a short timeout and
failures are only logged: telemetry never fails or noticeably delays a
lifecycle call.
"""

import logging
import queue
import socket
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import OpenAPIProviderError, UnexpectedStatus
from .helpers import VERSION
from .http_client import HttpClient
from .plugin_config import GraphiteConfig, HttpEndpointConfig

logger = logging.getLogger(__name__)

SUBMIT_TIMEOUT = 2.0
MAX_PENDING_EVENTS = 256

METRIC_TOTAL_RUNS = "terraform.openapi_plugin_version.total_runs"
METRIC_PROVIDER = "terraform.provider"
METRIC_TYPE_COUNTER = "IncCounter"


@dataclass(frozen=True)
class MetricEvent:
    name: str
    tags: List[str] = field(default_factory=list)


def version_tag(version: str = VERSION) -> str:
    return f"openapi_plugin_version:{version.replace('.', '_')}"


class BaseTelemetrySink(ABC):
    """The contract for telemetry sinks, discovered through entry points."""

    @classmethod
    @abstractmethod
    def get_type_name(cls) -> str:
        """The key of the sink's section under 'telemetry' in the configuration."""
        ...

    @classmethod
    @abstractmethod
    def from_config(cls, config) -> "BaseTelemetrySink":
        ...

    @abstractmethod
    def submit(self, event: MetricEvent, provider_config=None):
        """Sends one event. Raises on failure; the handler logs it."""
        ...


class GraphiteSink(BaseTelemetrySink):
    """Sends counters as StatsD datagrams over UDP."""

    def __init__(self, host: str, port: int, prefix: str = ""):
        self.host = host
        self.port = port
        self.prefix = prefix

    @classmethod
    def get_type_name(cls) -> str:
        return "graphite"

    @classmethod
    def from_config(cls, config: GraphiteConfig) -> "GraphiteSink":
        return cls(config.host, config.port, config.prefix)

    def metric_name(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    def datagram(self, event: MetricEvent) -> bytes:
        line = f"{self.metric_name(event.name)}:1|c"
        if event.tags:
            line = f"{line}|#{','.join(event.tags)}"
        return line.encode()

    def submit(self, event: MetricEvent, provider_config=None):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.settimeout(SUBMIT_TIMEOUT)
            sock.sendto(self.datagram(event), (self.host, self.port))
        logger.debug(
            "Graphite metric '%s' submitted to %s:%d", event.name, self.host, self.port
        )


class HttpEndpointSink(BaseTelemetrySink):
    """POSTs counters as JSON to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        prefix: str = "",
        provider_schema_properties=(),
        http_client: Optional[HttpClient] = None,
    ):
        self.url = url
        self.prefix = prefix
        self.provider_schema_properties = list(provider_schema_properties)
        self.http_client = http_client or HttpClient(timeout=SUBMIT_TIMEOUT)

    @classmethod
    def get_type_name(cls) -> str:
        return "http_endpoint"

    @classmethod
    def from_config(cls, config: HttpEndpointConfig) -> "HttpEndpointSink":
        return cls(config.url, config.prefix, config.provider_schema_properties)

    def headers(self, provider_config) -> dict:
        """Provider values forwarded as headers, keyed by provider field name."""
        headers = {}
        if provider_config is None:
            return headers
        for name in self.provider_schema_properties:
            value = provider_config.get(name)
            if value is None:
                logger.debug(
                    "Provider field '%s' has no value; not sent with telemetry", name
                )
                continue
            headers[name] = str(value)
        return headers

    def submit(self, event: MetricEvent, provider_config=None):
        name = f"{self.prefix}.{event.name}" if self.prefix else event.name
        payload = {
            "metric_type": METRIC_TYPE_COUNTER,
            "metric_name": name,
            "tags": event.tags,
        }
        response = self.http_client.post_json(
            self.url, payload, headers=self.headers(provider_config)
        )
        if not 200 <= response.status_code < 300:
            raise UnexpectedStatus(
                response.status_code,
                method="POST",
                url=self.url,
                body=response.text,
                expected=(200,),
            )
        logger.debug("Metric '%s' submitted to '%s'", name, self.url)


class TelemetryHandler:
    """
    Queues metric events and submits them to every sink.

    The queue is bounded; events recorded while it is full are dropped with a
    warning. Each `flush` drains the queue, waiting at most `timeout` seconds
    per submission.
    """

    def __init__(
        self,
        provider_name: str,
        sinks: List[BaseTelemetrySink],
        timeout: float = SUBMIT_TIMEOUT,
        max_pending: int = MAX_PENDING_EVENTS,
    ):
        self.provider_name = provider_name
        self.sinks = list(sinks)
        self.timeout = timeout
        self.events: "queue.Queue[MetricEvent]" = queue.Queue(maxsize=max_pending)
        self._executor = ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="telemetry"
        )

    @classmethod
    def from_config(
        cls, provider_name: str, telemetry_config, plugin_manager
    ) -> Optional["TelemetryHandler"]:
        """Builds a handler for the configured sinks; None when there are none."""
        if telemetry_config is None:
            return None
        sinks = []
        for type_name, sink_config in telemetry_config.sink_configurations().items():
            sink_class = plugin_manager.get_plugin(type_name)
            if sink_class is None:
                logger.warning(
                    "No telemetry sink registered for '%s'; "
                    "metrics will not be sent there",
                    type_name,
                )
                continue
            sinks.append(sink_class.from_config(sink_config))
            logger.info(
                "Telemetry sink '%s' enabled for provider '%s'",
                type_name,
                provider_name,
            )
        return cls(provider_name, sinks) if sinks else None

    def record(self, event: MetricEvent):
        try:
            self.events.put_nowait(event)
        except queue.Full:
            logger.warning("Telemetry queue is full; dropping metric '%s'", event.name)

    def flush(self, provider_config=None):
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return
            for sink in self.sinks:
                self._submit(sink, event, provider_config)

    def _submit(self, sink: BaseTelemetrySink, event: MetricEvent, provider_config):
        future = self._executor.submit(sink.submit, event, provider_config)
        try:
            future.result(timeout=self.timeout)
        except FutureTimeoutError:
            logger.warning(
                "Telemetry sink '%s' did not submit '%s' within %ss",
                sink.get_type_name(),
                event.name,
                self.timeout,
            )
        except (OpenAPIProviderError, OSError) as e:
            logger.warning(
                "Telemetry sink '%s' failed to submit '%s': %s",
                sink.get_type_name(),
                event.name,
                e,
            )

    def submit_plugin_execution_metrics(self, provider_config=None):
        """Counts one provider initialization."""
        self.record(MetricEvent(METRIC_TOTAL_RUNS, [version_tag()]))
        self.flush(provider_config)

    def submit_resource_execution_metrics(
        self, resource_name: str, operation: str, provider_config=None
    ):
        """Counts one lifecycle call of a resource or data source."""
        self.record(
            MetricEvent(
                METRIC_PROVIDER,
                [
                    f"provider_name:{self.provider_name}",
                    f"resource_name:{resource_name}",
                    f"terraform_operation:{operation}",
                ],
            )
        )
        self.flush(provider_config)
