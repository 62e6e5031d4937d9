"""
Provider-level configuration: security credentials, header values and
per-resource endpoint overrides.

The value of every field is resolved once, when the provider is configured,
in this order:

1. the value the user declared;
2. the environment variable named after the field, upper-cased;
3. the plugin configuration (external file, then literal default);
4. unset.
"""

import logging
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import InvalidConfiguration
from .helpers import ValidationErrorCollector, redact
from .models import HeaderParameter, SecurityDefinition
from .plugin_config import ServiceConfig
from .schema_parser import SchemaField, TypedSchema

logger = logging.getLogger(__name__)

ENDPOINTS_FIELD = "endpoints"


def provider_schema(
    security_definitions: Mapping[str, SecurityDefinition],
    header_parameters: Iterable[HeaderParameter],
    resource_names: Iterable[str] = (),
    global_security=(),
) -> TypedSchema:
    """
    Builds the provider's TypedSchema. Credentials named by the document's
    global security are required; other credentials and headers are optional.
    An 'endpoints' block allows overriding the host of individual resources.
    """
    globally_required = {
        name for requirement in global_security for name in requirement
    }
    schema = TypedSchema()
    for name, definition in security_definitions.items():
        schema.fields[definition.terraform_name] = SchemaField(
            name=definition.terraform_name,
            wire_name=name,
            type="string",
            required=name in globally_required,
            optional=name not in globally_required,
            sensitive=True,
            description=f"Credential for the '{name}' security definition.",
        )
    for header in header_parameters:
        if header.terraform_name in schema.fields:
            continue
        schema.fields[header.terraform_name] = SchemaField(
            name=header.terraform_name,
            wire_name=header.name,
            type="string",
            optional=True,
            description=f"Value sent in the '{header.name}' header.",
        )
    resource_names = sorted(resource_names)
    if resource_names:
        schema.fields[ENDPOINTS_FIELD] = SchemaField(
            name=ENDPOINTS_FIELD,
            wire_name=ENDPOINTS_FIELD,
            type="object",
            optional=True,
            description="Overrides the host used by individual resources.",
            nested=TypedSchema(
                {
                    name: SchemaField(
                        name=name, wire_name=name, type="string", optional=True
                    )
                    for name in resource_names
                }
            ),
        )
    return schema


class ProviderConfiguration:
    """The resolved provider values used while serving requests."""

    def __init__(
        self, values: Dict[str, Any], endpoints: Optional[Dict[str, str]] = None
    ):
        """
        Args:
            values: Resolved values keyed by provider field name.
            endpoints: Resource name -> host override.
        """
        self.values = values
        self.endpoints = endpoints or {}

    @classmethod
    def build(
        cls,
        schema: TypedSchema,
        user_values: Optional[Dict[str, Any]] = None,
        service_config: Optional[ServiceConfig] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ProviderConfiguration":
        """
        Validates the user's values and resolves every field.

        Raises:
            InvalidConfiguration: A value does not fit the schema, or a
                required field has no value from any source.
            SecretResolutionError: An external configuration file can not
                provide its value.
        """
        user_values = dict(user_values or {})
        environ = os.environ if environ is None else environ
        endpoints = cls._endpoints(schema, user_values.pop(ENDPOINTS_FIELD, None))

        collector = ValidationErrorCollector()
        values: Dict[str, Any] = {}
        for name, schema_field in schema.fields.items():
            if name == ENDPOINTS_FIELD:
                continue
            user_value = user_values.get(name)
            if user_value is not None and not isinstance(user_value, str):
                collector.add_error(f"'{name}' must be of type 'string'")
                continue
            value = cls._resolve(name, user_value, service_config, environ)
            if value is None:
                if schema_field.required:
                    collector.add_error(f"'{name}' is required")
                continue
            values[name] = value

        for name in user_values:
            if name not in schema.fields:
                collector.add_error(f"'{name}' is not a supported field")
        collector.raise_for_errors(
            InvalidConfiguration, "Invalid provider configuration:"
        )

        sensitive = {
            name
            for name, schema_field in schema.fields.items()
            if schema_field.sensitive
        }
        logger.debug("Provider configuration resolved: %s", redact(values, sensitive))

        return cls(values, endpoints)

    @staticmethod
    def _resolve(
        name: str,
        user_value: Any,
        service_config: Optional[ServiceConfig],
        environ: Mapping[str, str],
    ) -> Optional[str]:
        if user_value is not None:
            return user_value
        env_value = environ.get(name.upper())
        if env_value:
            logger.debug(
                "Value of provider field '%s' taken from the environment", name
            )
            return env_value
        if service_config is not None:
            property_config = service_config.get_schema_property_configuration(name)
            if property_config is not None:
                value = property_config.get_default_value()
                if value is not None:
                    logger.debug(
                        "Value of provider field '%s' taken from the "
                        "plugin configuration",
                        name,
                    )
                    return value
        return None

    @staticmethod
    def _endpoints(schema: TypedSchema, value: Any) -> Dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, list):
            value = value[0] if value else {}
        if not isinstance(value, dict):
            raise InvalidConfiguration(
                f"'{ENDPOINTS_FIELD}' must be a mapping of resource name to host"
            )
        endpoints_field = schema.get(ENDPOINTS_FIELD)
        known = set()
        if endpoints_field is not None and endpoints_field.nested is not None:
            known = set(endpoints_field.nested.fields)
        unknown: List[str] = [name for name in value if name not in known]
        if unknown:
            raise InvalidConfiguration(
                f"'{ENDPOINTS_FIELD}' contains unknown resource names "
                f"{sorted(unknown)}; valid names are {sorted(known)}"
            )
        return {name: host for name, host in value.items() if host}

    def get(self, name: str) -> Optional[Any]:
        return self.values.get(name)

    def security_value(self, terraform_name: str) -> Optional[str]:
        return self.values.get(terraform_name)

    def header_value(self, terraform_name: str) -> Optional[str]:
        return self.values.get(terraform_name)

    def endpoint_for(self, resource_name: str) -> Optional[str]:
        return self.endpoints.get(resource_name)
