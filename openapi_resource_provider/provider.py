"""
The provider: everything derived from one OpenAPI document, plus the runtime
pieces created when the user configures it.
"""

import logging
import os
from typing import Any, Dict, Mapping, Optional, Tuple

from .api_parser import ApiSpecAnalyser
from .auth import ApiAuthenticator
from .client import OpenAPIClient
from .data_source import DataSourceInstanceOperator, DataSourceOperator
from .errors import InvalidConfiguration
from .http_client import HttpClient
from .loader import load_document
from .models import SpecResource
from .plugin_config import PluginConfiguration, ServiceConfig
from .plugin_manager import PluginManager
from .provider_config import ProviderConfiguration, provider_schema
from .runner import ResourceOperator
from .schema_parser import SchemaSynthesizer, TypedSchema
from .telemetry import TelemetryHandler

logger = logging.getLogger(__name__)


class Provider:
    """
    Analyses the document once, at construction, and keeps the resources,
    data sources and their schemas for the lifetime of the process.
    """

    def __init__(
        self,
        name: str,
        api_spec_data: Dict[str, Any],
        service_config: Optional[ServiceConfig] = None,
        document_url: str = "",
        http_client: Optional[HttpClient] = None,
        telemetry: Optional[TelemetryHandler] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Raises:
            UnsupportedSpec: The document is not Swagger 2.0, or its security
                or multi-region declarations are malformed.
            SpecLoadError: No host can be determined for the API.
        """
        self.name = name
        self.service_config = service_config
        self.http_client = http_client or HttpClient(
            insecure_skip_verify=bool(
                service_config and service_config.insecure_skip_verify
            )
        )
        self.telemetry = telemetry
        self.environ = os.environ if environ is None else environ

        analyser = ApiSpecAnalyser(api_spec_data, document_url)
        self.backend = analyser.backend_configuration()
        self.security_definitions = analyser.security_definitions()
        self.global_security = analyser.global_security()

        synthesizer = SchemaSynthesizer()
        self.resources: Dict[str, Tuple[SpecResource, TypedSchema]] = {}
        for resource in analyser.terraform_compliant_resources():
            self.resources[resource.name] = (resource, synthesizer.synthesize(resource))

        self.data_sources: Dict[str, Tuple[SpecResource, TypedSchema]] = {}
        for data_source in analyser.data_sources():
            self.data_sources[data_source.name] = (
                data_source,
                synthesizer.synthesize_data_source(data_source),
            )
        self.data_source_instances: Dict[str, Tuple[SpecResource, TypedSchema]] = {}
        managed = [resource for resource, _ in self.resources.values()]
        for instance in analyser.data_source_instances(managed):
            self.data_source_instances[instance.name] = (
                instance,
                synthesizer.synthesize_data_source_instance(instance),
            )

        if analyser.collector.has_errors:
            logger.warning(
                analyser.collector.summary(
                    f"Provider '{name}' skipped some paths of the document:"
                )
            )

        self.schema = provider_schema(
            self.security_definitions,
            analyser.header_parameters(),
            self.resources,
            self.global_security,
        )
        self.provider_config: Optional[ProviderConfiguration] = None
        self.client: Optional[OpenAPIClient] = None
        logger.info(
            "Provider '%s' exposes %d resources and %d data sources",
            name,
            len(self.resources),
            len(self.data_sources) + len(self.data_source_instances),
        )

    @classmethod
    def from_plugin_configuration(
        cls,
        name: str,
        environ: Optional[Mapping[str, str]] = None,
        plugin_manager: Optional[PluginManager] = None,
    ) -> "Provider":
        """
        Builds a provider from the plugin configuration file and environment.

        Raises:
            ConfigLoadError: The plugin configuration is invalid or names no
                document for this provider.
            SpecLoadError: The document can not be fetched or parsed.
        """
        # 1. Resolve the service configuration.
        service = PluginConfiguration.from_env(name, environ).service_configuration()

        # 2. Commands run once, before any external file is read.
        service.execute_commands()

        # 3. Load the document and enable telemetry.
        http_client = HttpClient(insecure_skip_verify=service.insecure_skip_verify)
        document = load_document(
            service.swagger_url, service.insecure_skip_verify, http_client
        )
        telemetry = None
        if service.telemetry is not None:
            telemetry = TelemetryHandler.from_config(
                name, service.telemetry, plugin_manager or PluginManager()
            )
        return cls(
            name,
            document,
            service,
            service.swagger_url,
            http_client,
            telemetry,
            environ,
        )

    def configure(self, values: Optional[Dict[str, Any]] = None) -> "Provider":
        """
        Resolves the provider values and prepares the API client.

        Raises:
            InvalidConfiguration: The values do not fit the provider schema.
            SecretResolutionError: An external configuration file can not
                provide its value.
        """
        self.provider_config = ProviderConfiguration.build(
            self.schema, values, self.service_config, self.environ
        )
        authenticator = ApiAuthenticator(
            self.security_definitions, self.global_security, self.http_client
        )
        self.client = OpenAPIClient(
            self.backend, authenticator, self.provider_config, self.http_client
        )
        if self.telemetry is not None:
            self.telemetry.submit_plugin_execution_metrics(self.provider_config)
        return self

    def _require_client(self) -> OpenAPIClient:
        if self.client is None:
            raise InvalidConfiguration(
                f"provider '{self.name}' must be configured before use"
            )
        return self.client

    def resource(self, name: str) -> ResourceOperator:
        if name not in self.resources:
            raise InvalidConfiguration(
                f"provider '{self.name}' has no resource named '{name}'"
            )
        resource, schema = self.resources[name]
        return ResourceOperator(
            resource, self._require_client(), schema, self.telemetry
        )

    def data_source(self, name: str) -> DataSourceOperator:
        if name in self.data_sources:
            resource, schema = self.data_sources[name]
            return DataSourceOperator(
                resource, self._require_client(), schema, self.telemetry
            )
        if name in self.data_source_instances:
            resource, schema = self.data_source_instances[name]
            return DataSourceInstanceOperator(
                resource, self._require_client(), schema, self.telemetry
            )
        raise InvalidConfiguration(
            f"provider '{self.name}' has no data source named '{name}'"
        )

    def resource_schemas(self) -> Dict[str, TypedSchema]:
        return {name: schema for name, (_, schema) in self.resources.items()}

    def data_source_schemas(self) -> Dict[str, TypedSchema]:
        schemas = {name: schema for name, (_, schema) in self.data_sources.items()}
        schemas.update(
            {name: schema for name, (_, schema) in self.data_source_instances.items()}
        )
        return schemas
