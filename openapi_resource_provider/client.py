"""
The OpenAPI client: turns a resource operation into an authenticated HTTP
request against the right host.
"""

import logging
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote

from .auth import ApiAuthenticator
from .errors import InvalidConfiguration, UnsupportedOp
from .http_client import HttpClient, HttpResponse
from .models import (
    OP_CREATE,
    OP_DELETE,
    OP_LIST,
    OP_READ,
    OP_UPDATE,
    ApiOperation,
    BackendConfiguration,
    SpecResource,
    substitute_region,
)
from .provider_config import ProviderConfiguration

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = ("http://", "https://")


def fill_path(path: str, values: Sequence[str]) -> str:
    """
    Substitutes the path parameters of `path` positionally.

    Raises:
        InvalidConfiguration: The number of values does not match the number
            of parameters.
    """
    segments = path.split("/")
    param_indexes = [
        i for i, s in enumerate(segments) if s.startswith("{") and s.endswith("}")
    ]
    if len(param_indexes) != len(values):
        raise InvalidConfiguration(
            f"could not resolve path '{path}': expected {len(param_indexes)} "
            f"identifiers, got {len(values)}"
        )
    for index, value in zip(param_indexes, values):
        if value is None or value == "":
            raise InvalidConfiguration(
                f"could not resolve path '{path}': an identifier is empty"
            )
        segments[index] = quote(str(value), safe="")
    return "/".join(segments)


class OpenAPIClient:
    """
    Issues the HTTP calls of resource operations.

    The host of a request is, in order of precedence: the user's endpoint
    override for the resource, the resource's own host extension (with its
    region substituted), and the backend host for the resource's region.
    """

    def __init__(
        self,
        backend: BackendConfiguration,
        authenticator: ApiAuthenticator,
        provider_config: ProviderConfiguration,
        http_client: Optional[HttpClient] = None,
    ):
        self.backend = backend
        self.authenticator = authenticator
        self.provider_config = provider_config
        self.http_client = http_client or HttpClient()

    def resolve_host(self, resource: SpecResource) -> str:
        override = self.provider_config.endpoint_for(resource.name)
        if override:
            logger.debug(
                "Using endpoint override '%s' for resource '%s'",
                override,
                resource.name,
            )
            return override
        if resource.host_override:
            return substitute_region(resource.host_override, resource.region)
        return self.backend.host_for_region(resource.region)

    def resource_url(
        self,
        resource: SpecResource,
        parent_ids: Sequence[str] = (),
        instance_id: Optional[str] = None,
    ) -> str:
        """Builds the collection URL, or the instance URL for `instance_id`."""
        if instance_id is None:
            path = fill_path(resource.root_path, list(parent_ids))
        else:
            path = fill_path(resource.instance_path, list(parent_ids) + [instance_id])
        host = self.resolve_host(resource).rstrip("/")
        if host.startswith(_ALLOWED_SCHEMES):
            return f"{host}{self.backend.base_path}{path}"
        return f"{self.backend.scheme}://{host}{self.backend.base_path}{path}"

    def operation_headers(self, operation: ApiOperation) -> Dict[str, str]:
        """
        Raises:
            InvalidConfiguration: A required header has no configured value.
        """
        headers = {}
        for header in operation.header_parameters:
            value = self.provider_config.header_value(header.terraform_name)
            if value is None or value == "":
                if header.required:
                    raise InvalidConfiguration(
                        f"required header '{header.name}' for operation "
                        f"'{operation.method} {operation.path}' is missing the value; "
                        f"set the provider field '{header.terraform_name}'"
                    )
                continue
            headers[header.name] = value
        return headers

    def _operation(self, resource: SpecResource, kind: str) -> ApiOperation:
        operation = resource.operation(kind)
        if operation is None:
            raise UnsupportedOp(
                f"resource '{resource.name}' does not support the '{kind}' operation"
            )
        return operation

    def _perform(
        self, resource: SpecResource, kind: str, url: str, payload: Any = None
    ) -> HttpResponse:
        operation = self._operation(resource, kind)
        auth = self.authenticator.prepare_auth(
            operation.operation_id or f"{operation.method} {operation.path}",
            url,
            operation.security,
            self.provider_config,
            method=operation.method,
        )
        headers = self.operation_headers(operation)
        headers.update(auth.headers)
        logger.info("Performing %s operation of resource '%s'", kind, resource.name)
        return self.http_client.request(
            operation.method,
            auth.url,
            headers=headers,
            payload=payload,
            secret_query_params=auth.secret_query_params,
        )

    def post(
        self,
        resource: SpecResource,
        payload: Dict[str, Any],
        parent_ids: Sequence[str] = (),
    ):
        url = self.resource_url(resource, parent_ids)
        return self._perform(resource, OP_CREATE, url, payload)

    def get(
        self, resource: SpecResource, instance_id: str, parent_ids: Sequence[str] = ()
    ):
        url = self.resource_url(resource, parent_ids, instance_id)
        return self._perform(resource, OP_READ, url)

    def put(
        self,
        resource: SpecResource,
        instance_id: str,
        payload: Dict[str, Any],
        parent_ids: Sequence[str] = (),
    ):
        url = self.resource_url(resource, parent_ids, instance_id)
        return self._perform(resource, OP_UPDATE, url, payload)

    def delete(
        self, resource: SpecResource, instance_id: str, parent_ids: Sequence[str] = ()
    ):
        url = self.resource_url(resource, parent_ids, instance_id)
        return self._perform(resource, OP_DELETE, url)

    def list(self, resource: SpecResource, parent_ids: Sequence[str] = ()):
        return self._perform(resource, OP_LIST, self.resource_url(resource, parent_ids))
