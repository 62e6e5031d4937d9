"""
This module defines the core data structures shared by the analyser, the schema
synthesizer and the resource operator. Everything built from the OpenAPI
document at startup is a dataclass that is treated as read-only afterwards;
`ResourceData` and `AuthContext` are the only per-call, mutable structures.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import MissingIdentifier
from .helpers import PRIMITIVE_TYPES, convert_name

# Kinds of security definitions understood by the auth pipeline.
API_KEY_HEADER = "apiKeyHeader"
API_KEY_QUERY = "apiKeyQuery"
REFRESH_TOKEN = "refreshToken"

# Lifecycle operation kinds.
OP_CREATE = "create"
OP_READ = "read"
OP_UPDATE = "update"
OP_DELETE = "delete"
OP_LIST = "list"

DEFAULT_TIMEOUT_SECONDS = 600.0

_REGION_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


@dataclass(frozen=True)
class OperationResponse:
    """Polling hints attached to a single response code of an operation."""

    status_code: int
    poll_enabled: bool = False
    completed_statuses: Tuple[str, ...] = ()
    pending_statuses: Tuple[str, ...] = ()
    failed_statuses: Tuple[str, ...] = ()


@dataclass(frozen=True)
class HeaderParameter:
    """A header parameter surfaced as a provider-level configurable field."""

    name: str  # The header name on the wire, e.g. X-Request-ID
    terraform_name: str  # The provider field name, e.g. x_request_id
    required: bool = False


@dataclass(frozen=True)
class ApiOperation:
    """
    Represents all the necessary information about a single API operation,
    parsed from the OpenAPI specification.
    """

    path: str  # The API path, e.g. /v1/cdns/{id}
    method: str  # The HTTP method, e.g. GET, POST
    operation_id: str = ""
    # Security requirements of the operation; None when the operation does not
    # declare any and the global requirements apply.
    security: Optional[Tuple[Dict[str, Any], ...]] = None
    header_parameters: Tuple[HeaderParameter, ...] = ()
    responses: Dict[int, OperationResponse] = field(
        default_factory=dict, compare=False, hash=False
    )
    timeout: Optional[float] = None  # Seconds, from x-terraform-resource-timeout
    raw_spec: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def get_response(self, status_code: int) -> Optional[OperationResponse]:
        return self.responses.get(status_code)


@dataclass(frozen=True)
class SecurityDefinition:
    """A security definition declared in the document's securityDefinitions."""

    name: str
    kind: str  # One of API_KEY_HEADER, API_KEY_QUERY, REFRESH_TOKEN
    parameter_name: str  # Header or query parameter carrying the credential
    bearer: bool = False
    refresh_url: Optional[str] = None

    @property
    def terraform_name(self) -> str:
        return convert_name(self.name)

    @property
    def location(self) -> str:
        return "query" if self.kind == API_KEY_QUERY else "header"


@dataclass(frozen=True)
class BackendConfiguration:
    """Where the API lives: host, base path, schemes and region layout."""

    host: str
    base_path: str = ""
    schemes: Tuple[str, ...] = ()
    is_multi_region: bool = False
    region_template: Optional[str] = None
    regions: Tuple[str, ...] = ()

    @property
    def scheme(self) -> str:
        return "https" if "https" in self.schemes else "http"

    def default_region(self) -> Optional[str]:
        return self.regions[0] if self.regions else None

    def host_for_region(self, region: Optional[str]) -> str:
        if not self.is_multi_region or not self.region_template:
            return self.host
        return substitute_region(self.region_template, region or self.default_region())


def substitute_region(template: str, region: Optional[str]) -> str:
    """Replaces the ${...} placeholder of a host template with `region`."""
    if region is None:
        return template
    return _REGION_PLACEHOLDER.sub(region, template)


def region_placeholder(template: str) -> Optional[str]:
    """Returns the keyword of the ${keyword} placeholder in a host template."""
    match = _REGION_PLACEHOLDER.search(template or "")
    return match.group(1) if match else None


@dataclass
class SchemaProperty:
    """
    One property of a resource schema, with its attributes already resolved
    from the OpenAPI keywords and x-terraform-* extensions.
    """

    name: str  # The name on the wire
    type: str  # string, integer, number, boolean, list or object
    item_type: Optional[str] = None  # Element type when type == 'list'
    required: bool = False
    read_only: bool = False
    force_new: bool = False
    immutable: bool = False
    sensitive: bool = False
    optional_computed: bool = False
    default: Any = None
    description: str = ""
    preferred_name: Optional[str] = None
    is_identifier: bool = False
    is_status: bool = False
    is_parent: bool = False
    nested: Optional["SchemaDefinition"] = None

    @property
    def computed(self) -> bool:
        return self.read_only or self.optional_computed

    @property
    def terraform_name(self) -> str:
        return self.preferred_name or convert_name(self.name)

    @property
    def is_primitive(self) -> bool:
        return self.type in PRIMITIVE_TYPES

    @property
    def is_object(self) -> bool:
        return self.type == "object"

    @property
    def is_list_of_objects(self) -> bool:
        return self.type == "list" and self.item_type == "object"


@dataclass
class SchemaDefinition:
    """Ordered mapping of property name to SchemaProperty."""

    properties: Dict[str, SchemaProperty] = field(default_factory=dict)

    def __iter__(self):
        return iter(self.properties.values())

    def get_property(self, name: str) -> Optional[SchemaProperty]:
        return self.properties.get(name)

    def get_property_by_terraform_name(self, name: str) -> Optional[SchemaProperty]:
        for prop in self.properties.values():
            if prop.terraform_name == name:
                return prop
        return None

    def identifier_property(self) -> SchemaProperty:
        """
        Returns the property used as the resource identifier: the one marked
        with x-terraform-id, otherwise the property literally named 'id'.
        """
        for prop in self.properties.values():
            if prop.is_identifier:
                return prop
        prop = self.properties.get("id")
        if prop is None:
            raise MissingIdentifier(
                "resource schema is missing a property that uniquely identifies the "
                "resource, either a property named 'id' or a property with the "
                "'x-terraform-id' extension set to true"
            )
        return prop


@dataclass(frozen=True)
class ParentLink:
    """The ancestors of a sub-resource, outermost first."""

    parent_names: Tuple[str, ...]  # e.g. ('cdns_v1',)
    parent_property_names: Tuple[str, ...]  # e.g. ('cdns_v1_id',)
    parent_instance_paths: Tuple[str, ...]  # e.g. ('/v1/cdns/{id}',)


@dataclass
class SpecResource:
    """
    A REST entity exposed as a managed resource. `root_path` is the collection
    path (POST, list GET) and `instance_path` the item path (GET, PUT, DELETE).
    Path parameters of both paths are filled positionally: parent ids first,
    then the resource id for the instance path.
    """

    name: str
    root_path: str
    instance_path: str
    schema_definition: SchemaDefinition
    get_op: ApiOperation
    create_op: Optional[ApiOperation] = None
    put_op: Optional[ApiOperation] = None
    delete_op: Optional[ApiOperation] = None
    list_op: Optional[ApiOperation] = None
    parent: Optional[ParentLink] = None
    region: Optional[str] = None
    is_ignored: bool = False
    # x-terraform-resource-host; may contain a ${keyword} region placeholder.
    host_override: Optional[str] = None
    host_regions: Tuple[str, ...] = ()

    @property
    def parent_property_names(self) -> Tuple[str, ...]:
        return self.parent.parent_property_names if self.parent else ()

    def operation(self, kind: str) -> Optional[ApiOperation]:
        return {
            OP_CREATE: self.create_op,
            OP_READ: self.get_op,
            OP_UPDATE: self.put_op,
            OP_DELETE: self.delete_op,
            OP_LIST: self.list_op,
        }.get(kind)

    def timeout(self, kind: str) -> float:
        operation = self.operation(kind)
        if operation is not None and operation.timeout is not None:
            return operation.timeout
        return DEFAULT_TIMEOUT_SECONDS


@dataclass
class AuthContext:
    """Headers and URL of a single outgoing request, after authentication."""

    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    # Query parameters carrying credentials, masked in error messages.
    secret_query_params: List[str] = field(default_factory=list)


@dataclass
class ResourceData:
    """
    The host's view of one managed resource instance: its identifier plus a
    flat mapping of configuration and computed values keyed by field name.
    """

    id: Optional[str] = None
    values: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def set(self, name: str, value: Any):
        self.values[name] = value

    def mark_gone(self):
        self.id = None
