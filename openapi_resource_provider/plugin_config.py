"""
The plugin configuration file.

A single YAML file, shared by every provider built with this package, tells a
provider where its OpenAPI document lives and how to resolve provider values
that should not be typed into configuration by hand:

    version: '1'
    services:
      cdn:
        swagger-url: https://api.example.com/swagger.yaml
        insecure_skip_verify: false
        telemetry:
          graphite:
            host: localhost
            port: 8125
        schema_configuration:
          - schema_property_name: api_token
            cmd: ['vault', 'login']
            schema_property_external_configuration:
              file: ~/.cdn/token.json
              key_name: $.auth.token
              content_type: json
"""

import json
import logging
import os
import re
import subprocess
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigLoadError, SecretResolutionError
from .helpers import ValidationErrorCollector, is_true

logger = logging.getLogger(__name__)

DEFAULT_PLUGIN_CONFIG_PATH = "~/.terraform.d/plugins/terraform-provider-openapi.yaml"
PLUGIN_CONFIG_PATH_ENV_FMT = "OTF_VAR_{}_PLUGIN_CONFIGURATION_FILE"
SWAGGER_URL_ENV_FMT = "OTF_VAR_{}_SWAGGER_URL"
INSECURE_SKIP_VERIFY_ENV = "OTF_INSECURE_SKIP_VERIFY"
SUPPORTED_CONFIG_VERSION = "1"
DEFAULT_CMD_TIMEOUT = 10

CONTENT_TYPE_RAW = "raw"
CONTENT_TYPE_JSON = "json"

_JSON_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def lookup_json_key(document: Any, key_name: str) -> Any:
    """
    Looks up a value inside a parsed JSON document. Both JSONPath-like keys
    ('$.auth.token', '$.tokens[0]') and slash-separated keys ('/auth/token')
    are accepted.

    Raises:
        KeyError: The key does not exist in the document.
    """
    key = key_name.strip()
    if key.startswith("$"):
        key = key[1:]
    tokens = []
    if key.startswith("/"):
        tokens = [part for part in key.split("/") if part]
    else:
        for name, index in _JSON_PATH_TOKEN.findall(key):
            tokens.append(int(index) if index else name)
    value = document
    for token in tokens:
        if isinstance(value, list):
            try:
                value = value[int(token)]
            except (ValueError, IndexError) as e:
                raise KeyError(key_name) from e
        elif isinstance(value, dict) and token in value:
            value = value[token]
        else:
            raise KeyError(key_name)
    return value


class ExternalConfiguration(BaseModel):
    """Points at a file holding the value of one provider field."""

    # Path to the file; '~' is expanded.
    file: str

    # For JSON files, the key of the value inside the document.
    key_name: Optional[str] = None

    # 'raw' uses the whole file content, 'json' looks up `key_name`.
    content_type: str = CONTENT_TYPE_RAW

    @field_validator("content_type")
    @classmethod
    def check_content_type(cls, value: str) -> str:
        if value not in (CONTENT_TYPE_RAW, CONTENT_TYPE_JSON):
            raise ValueError(
                f"content_type '{value}' not supported, "
                f"use '{CONTENT_TYPE_RAW}' or '{CONTENT_TYPE_JSON}'"
            )
        return value

    @model_validator(mode="after")
    def check_key_name(self):
        if self.content_type == CONTENT_TYPE_JSON and not self.key_name:
            raise ValueError("key_name is required when content_type is 'json'")
        return self

    def read_value(self) -> str:
        """
        Raises:
            SecretResolutionError: The file can not be read, is not valid JSON
                or does not contain `key_name`.
        """
        path = os.path.expanduser(self.file)
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise SecretResolutionError(
                f"failed to read external configuration file '{path}': {e}"
            ) from e
        if self.content_type == CONTENT_TYPE_RAW:
            return content.strip()
        try:
            document = json.loads(content)
        except ValueError as e:
            raise SecretResolutionError(
                f"external configuration file '{path}' is not valid JSON: {e}"
            ) from e
        try:
            value = lookup_json_key(document, self.key_name)
        except KeyError as e:
            raise SecretResolutionError(
                f"key '{self.key_name}' not found in external configuration "
                f"file '{path}'"
            ) from e
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)


class SchemaPropertyConfiguration(BaseModel):
    """Where a provider field takes its value from when the user leaves it unset."""

    # The provider field name, e.g. 'api_token'.
    schema_property_name: str

    # Literal value used when nothing else provides one.
    default_value: Optional[str] = None

    # A command executed once at startup, before the external file is read.
    cmd: List[str] = Field(default_factory=list)

    # Seconds the command may run before it is killed.
    cmd_timeout: int = DEFAULT_CMD_TIMEOUT

    schema_property_external_configuration: Optional[ExternalConfiguration] = None

    @field_validator("cmd_timeout")
    @classmethod
    def check_cmd_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("cmd_timeout must be a positive number of seconds")
        return value

    def execute_command(self):
        """
        Runs `cmd`. Failures are logged and do not stop the provider; the
        external file is read afterwards either way.
        """
        if not self.cmd:
            return
        logger.info(
            "Executing command %s for property '%s' (timeout %ds)",
            self.cmd,
            self.schema_property_name,
            self.cmd_timeout,
        )
        try:
            result = subprocess.run(
                self.cmd,
                capture_output=True,
                text=True,
                timeout=self.cmd_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "Command %s for property '%s' timed out after %ds",
                self.cmd,
                self.schema_property_name,
                self.cmd_timeout,
            )
            return
        except OSError as e:
            logger.warning(
                "Command %s for property '%s' failed: %s",
                self.cmd,
                self.schema_property_name,
                e,
            )
            return
        if result.returncode != 0:
            logger.warning(
                "Command %s for property '%s' exited with code %d: %s",
                self.cmd,
                self.schema_property_name,
                result.returncode,
                result.stderr.strip(),
            )
        else:
            logger.debug(
                "Command %s for property '%s' succeeded",
                self.cmd,
                self.schema_property_name,
            )

    def get_default_value(self) -> Optional[str]:
        """The external file's value if one is configured, else `default_value`."""
        if self.schema_property_external_configuration is not None:
            return self.schema_property_external_configuration.read_value()
        return self.default_value


class GraphiteConfig(BaseModel):
    host: str
    port: int
    # Prepended to every metric name as '<prefix>.<name>'.
    prefix: str = ""

    @field_validator("port")
    @classmethod
    def check_port(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"'{value}' is not a valid graphite port number")
        return value


class HttpEndpointConfig(BaseModel):
    url: str
    prefix: str = ""
    # Provider fields whose values are sent as headers with every metric.
    provider_schema_properties: List[str] = Field(default_factory=list)

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"http endpoint url '{value}' is not a valid http(s) URL")
        return value


class TelemetryConfig(BaseModel):
    graphite: Optional[GraphiteConfig] = None
    http_endpoint: Optional[HttpEndpointConfig] = None

    @model_validator(mode="after")
    def check_single_sink(self):
        if self.graphite is not None and self.http_endpoint is not None:
            raise ValueError(
                "only one telemetry provider can be configured per service"
            )
        return self

    def sink_configurations(self) -> Dict[str, BaseModel]:
        """Configured sinks keyed by their registered type name."""
        sinks = {}
        if self.graphite is not None:
            sinks["graphite"] = self.graphite
        if self.http_endpoint is not None:
            sinks["http_endpoint"] = self.http_endpoint
        return sinks


class ServiceConfig(BaseModel):
    """Configuration of one provider, keyed by provider name in the file."""

    swagger_url: Optional[str] = Field(default=None, alias="swagger-url")
    plugin_version: Optional[str] = None
    insecure_skip_verify: bool = False
    telemetry: Optional[TelemetryConfig] = None
    schema_configuration: List[SchemaPropertyConfiguration] = Field(
        default_factory=list
    )

    class Config:
        populate_by_name = True

    def get_schema_property_configuration(
        self, name: str
    ) -> Optional[SchemaPropertyConfiguration]:
        for property_config in self.schema_configuration:
            if property_config.schema_property_name == name:
                return property_config
        return None

    def execute_commands(self):
        for property_config in self.schema_configuration:
            property_config.execute_command()


class PluginConfigSchema(BaseModel):
    version: str
    # Applies to services that do not declare their own telemetry.
    telemetry: Optional[TelemetryConfig] = None
    services: Dict[str, ServiceConfig] = Field(default_factory=dict)

    @field_validator("version", mode="before")
    @classmethod
    def check_version(cls, value: Any) -> str:
        value = str(value)
        if value != SUPPORTED_CONFIG_VERSION:
            raise ValueError(
                f"plugin configuration version '{value}' not supported, "
                f"use '{SUPPORTED_CONFIG_VERSION}'"
            )
        return value


def _lookup_env(
    environ: Mapping[str, str], fmt: str, provider_name: str
) -> Optional[str]:
    variable = fmt.format(provider_name)
    for name in (variable, variable.upper()):
        value = environ.get(name)
        if value:
            logger.debug("Found environment variable '%s'", name)
            return value
    return None


def _format_validation_error(error: ValidationError, source: str) -> str:
    collector = ValidationErrorCollector()
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        collector.add_error(f"{location}: {item['msg']}")
    return collector.summary(f"Invalid plugin configuration '{source}':")


class PluginConfiguration:
    """
    Resolves the `ServiceConfig` of one provider from the plugin configuration
    file and the environment.

    The swagger URL may be given by `OTF_VAR_<provider>_SWAGGER_URL`; the
    variable is looked up with the provider name as given, then upper-cased,
    and it takes precedence over the file. When the variable is set the file is
    optional.
    """

    def __init__(
        self,
        provider_name: str,
        content: Optional[str] = None,
        source: str = "",
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.provider_name = provider_name
        self.content = content
        self.source = source
        self.environ = os.environ if environ is None else environ

    @classmethod
    def from_env(cls, provider_name: str, environ: Optional[Mapping[str, str]] = None):
        """
        Reads the configuration file named by
        OTF_VAR_<provider>_PLUGIN_CONFIGURATION_FILE, or the default location.
        A missing file is not an error at this point.
        """
        environ = os.environ if environ is None else environ
        path = os.path.expanduser(
            _lookup_env(environ, PLUGIN_CONFIG_PATH_ENV_FMT, provider_name)
            or DEFAULT_PLUGIN_CONFIG_PATH
        )
        content = None
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    content = f.read()
            except OSError as e:
                raise ConfigLoadError(
                    f"Failed to read plugin configuration file '{path}': {e}"
                ) from e
            logger.debug("Loaded plugin configuration file '%s'", path)
        else:
            logger.debug("Plugin configuration file '%s' does not exist", path)
        return cls(provider_name, content=content, source=path, environ=environ)

    def swagger_url_from_env(self) -> Optional[str]:
        return _lookup_env(self.environ, SWAGGER_URL_ENV_FMT, self.provider_name)

    def parse(self) -> Optional[PluginConfigSchema]:
        """
        Raises:
            ConfigLoadError: The file is not YAML or does not match the schema.
        """
        if self.content is None:
            return None
        try:
            data = yaml.safe_load(self.content) or {}
        except yaml.YAMLError as e:
            raise ConfigLoadError(
                f"Failed to parse plugin configuration '{self.source}': {e}"
            ) from e
        if not isinstance(data, dict):
            raise ConfigLoadError(
                f"Plugin configuration '{self.source}' is not a YAML mapping"
            )
        try:
            return PluginConfigSchema.model_validate(data)
        except ValidationError as e:
            raise ConfigLoadError(_format_validation_error(e, self.source)) from e

    def service_configuration(self) -> ServiceConfig:
        """
        Returns the configuration of this provider, with environment overrides
        applied.

        Raises:
            ConfigLoadError: The file is invalid, or no document URL is known
                for the provider.
        """
        env_url = self.swagger_url_from_env()
        schema = self.parse()
        service = None
        if schema is not None:
            service = schema.services.get(self.provider_name)
        if service is None:
            if env_url is None:
                raise ConfigLoadError(
                    "No OpenAPI document URL configured for provider "
                    f"'{self.provider_name}'; set "
                    f"'{SWAGGER_URL_ENV_FMT.format(self.provider_name)}' "
                    f"or add the service to '{self.source}'"
                )
            service = ServiceConfig(swagger_url=env_url)
        elif env_url is not None:
            service = service.model_copy(update={"swagger_url": env_url})
        if (
            service.telemetry is None
            and schema is not None
            and schema.telemetry is not None
        ):
            service = service.model_copy(update={"telemetry": schema.telemetry})
        if not service.swagger_url:
            raise ConfigLoadError(
                f"Service '{self.provider_name}' is missing the 'swagger-url' value"
            )
        if INSECURE_SKIP_VERIFY_ENV in self.environ:
            service = service.model_copy(
                update={
                    "insecure_skip_verify": is_true(
                        self.environ[INSECURE_SKIP_VERIFY_ENV]
                    )
                }
            )
        return service
