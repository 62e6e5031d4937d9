import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .errors import (
    InvalidResource,
    InvalidSchema,
    SpecLoadError,
    UnsupportedSpec,
)
from .helpers import ValidationErrorCollector, convert_name, is_true, split_csv
from .models import (
    API_KEY_HEADER,
    API_KEY_QUERY,
    REFRESH_TOKEN,
    ApiOperation,
    BackendConfiguration,
    HeaderParameter,
    OperationResponse,
    ParentLink,
    SchemaDefinition,
    SecurityDefinition,
    SpecResource,
    region_placeholder,
)
from .schema_parser import (
    SchemaDefinitionBuilder,
    SchemaResolver,
    merge_response_properties,
    parent_property,
)

logger = logging.getLogger(__name__)

SUPPORTED_SWAGGER_VERSION = "2.0"

EXT_EXCLUDE_RESOURCE = "x-terraform-exclude-resource"
EXT_RESOURCE_NAME = "x-terraform-resource-name"
EXT_RESOURCE_HOST = "x-terraform-resource-host"
EXT_RESOURCE_TIMEOUT = "x-terraform-resource-timeout"
EXT_RESOURCE_REGIONS_FMT = "x-terraform-resource-regions-{}"
EXT_POLL_ENABLED = "x-terraform-resource-poll-enabled"
EXT_POLL_COMPLETED = "x-terraform-resource-poll-completed-statuses"
EXT_POLL_PENDING = "x-terraform-resource-poll-pending-statuses"
EXT_POLL_FAILED = "x-terraform-resource-poll-failed-statuses"
EXT_HEADER = "x-terraform-header"
EXT_BEARER = "x-terraform-authentication-scheme-bearer"
EXT_REFRESH_TOKEN_URL = "x-terraform-refresh-token-url"
EXT_MULTIREGION_FQDN = "x-terraform-provider-multiregion-fqdn"
EXT_PROVIDER_REGIONS = "x-terraform-provider-regions"

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch")

DATA_SOURCE_INSTANCE_SUFFIX = "_instance"

# An instance path ends in a path parameter that follows a fixed segment,
# e.g. /v1/cdns/{id} or /v1/cdns/{cdn_id}/v1/firewalls/{id}.
INSTANCE_PATH_RE = re.compile(r"^(?P<root>(?:/[^/]*)*/[^/{}]+)/\{[^/{}]+\}/?$")
PATH_PARAM_RE = re.compile(r"\{[^/{}]+\}")
# A parent is a (possibly versioned) fixed segment followed by a parameter.
PARENT_RE = re.compile(r"(?:/(v\d+))?/(\w+)/\{[^/{}]+\}")
TIMEOUT_RE = re.compile(r"^(\d+(?:\.\d+)?)([smh])$")
_TIMEOUT_UNITS = {"s": 1, "m": 60, "h": 3600}


def parse_timeout(value: Any, context: str) -> Optional[float]:
    """Parses x-terraform-resource-timeout values such as '30s', '10m' or '1.5h'."""
    if value is None:
        return None
    match = TIMEOUT_RE.match(str(value).strip())
    if not match:
        raise InvalidResource(
            f"{context}: invalid duration value '{value}' "
            f"for '{EXT_RESOURCE_TIMEOUT}'. The value must be a sequence of numbers "
            "followed by one of 's', 'm' or 'h'"
        )
    return float(match.group(1)) * _TIMEOUT_UNITS[match.group(2)]


def resource_name_from_path(root_path: str) -> Tuple[str, Optional[str]]:
    """Returns the last fixed segment of a collection path and its version, if any."""
    segments = [s for s in root_path.strip("/").split("/") if s]
    if not segments or PATH_PARAM_RE.fullmatch(segments[-1]):
        raise InvalidResource(
            f"could not find a valid name for resource path '{root_path}'"
        )
    name = segments[-1]
    version = None
    if len(segments) > 1 and re.fullmatch(r"v\d+", segments[-2]):
        version = segments[-2]
    return name, version


class ApiSpecAnalyser:
    """
    Walks a parsed Swagger 2.0 document and exposes the resources, data
    sources, security definitions, header parameters and backend
    configuration that it describes.

    Problems found in individual paths are recorded on `collector` and the path
    is skipped; only an unsupported document version stops the analysis.
    """

    def __init__(
        self,
        api_spec_data: Dict[str, Any],
        document_url: str = "",
        collector: Optional[ValidationErrorCollector] = None,
    ):
        """
        Initializes the analyser with the OpenAPI specification data.

        Args:
            api_spec_data: The parsed OpenAPI document.
            document_url: Where the document was loaded from; used as the host
                fallback when the document declares none.
            collector: Receives a message for every skipped path.
        """
        self.api_spec = api_spec_data
        self.document_url = document_url
        self.collector = collector or ValidationErrorCollector()
        self.resolver = SchemaResolver(api_spec_data)
        self.builder = SchemaDefinitionBuilder(self.resolver)

    @property
    def paths(self) -> Dict[str, Dict[str, Any]]:
        return self.api_spec.get("paths") or {}

    def validate_version(self):
        version = str(self.api_spec.get("swagger", ""))
        if version != SUPPORTED_SWAGGER_VERSION:
            raise UnsupportedSpec(
                f"swagger version '{version}' not supported, "
                f"only '{SUPPORTED_SWAGGER_VERSION}' documents are"
            )

    # --- Resources ---

    def terraform_compliant_resources(self) -> List[SpecResource]:
        """
        Returns every path that qualifies as a managed resource, ordered by
        path, with multi-region resources expanded into one entry per region.
        Ignored resources are omitted.
        """
        self.validate_version()
        resources = []
        for path in sorted(self.paths):
            try:
                resource = self.build_resource(path)
            except (InvalidResource, InvalidSchema) as e:
                self.collector.add_error(f"Path '{path}': {e}")
                logger.warning("Ignoring resource path '%s': %s", path, e)
                continue
            if resource is None:
                continue
            if resource.is_ignored:
                logger.info(
                    "Resource '%s' is excluded from the provider", resource.name
                )
                continue
            try:
                expanded = self._expand_regions(resource)
            except InvalidResource as e:
                self.collector.add_error(f"Path '{path}': {e}")
                logger.warning("Ignoring resource path '%s': %s", path, e)
                continue
            for item in expanded:
                logger.info(
                    "Found resource [name='%s', rootPath='%s', instancePath='%s']",
                    item.name,
                    item.root_path,
                    item.instance_path,
                )
            resources.extend(expanded)
        logger.info("Found %d resources", len(resources))
        return resources

    def build_resource(self, instance_path: str) -> Optional[SpecResource]:
        """
        Classifies a single path. Returns None when the path is not a resource
        instance path at all.

        Raises:
            InvalidResource: The POST body of the collection path is malformed.
            MissingIdentifier: The resource schema has no identifier property.
            InvalidSchema: A property violates the attribute rules.
        """
        match = INSTANCE_PATH_RE.match(instance_path)
        if not match:
            return None
        instance_item = self.paths[instance_path] or {}
        if "get" not in instance_item:
            logger.debug(
                "Instance path '%s' has no GET operation; skipping", instance_path
            )
            return None

        root_path = self.find_root_path(match.group("root"))
        if root_path is None:
            logger.debug(
                "Instance path '%s' has no matching root path; skipping", instance_path
            )
            return None
        root_item = self.paths[root_path] or {}
        post = root_item.get("post")
        if post is None:
            logger.debug(
                "Root path '%s' declares no POST operation; skipping", root_path
            )
            return None

        definition = self._payload_definition(root_path, post)
        definition = self._merge_response_schema(definition, instance_item["get"])
        identifier = definition.identifier_property()
        logger.debug("Resource '%s' identified by '%s'", root_path, identifier.name)

        parent = self.parent_link(root_path)
        if parent is not None:
            for property_name in parent.parent_property_names:
                definition.properties[property_name] = parent_property(property_name)

        return SpecResource(
            name=self.resource_name(root_path, post, parent),
            root_path=root_path,
            instance_path=instance_path,
            schema_definition=definition,
            get_op=self._build_operation(instance_path, "get", instance_item),
            create_op=self._build_operation(root_path, "post", root_item),
            put_op=self._build_operation(instance_path, "put", instance_item),
            delete_op=self._build_operation(instance_path, "delete", instance_item),
            list_op=self._build_operation(root_path, "get", root_item),
            parent=parent,
            is_ignored=is_true(post.get(EXT_EXCLUDE_RESOURCE)),
            host_override=post.get(EXT_RESOURCE_HOST) or None,
        )

    def find_root_path(self, root: str) -> Optional[str]:
        """Looks up the collection path, preferring the form with a trailing slash."""
        for candidate in (root.rstrip("/") + "/", root.rstrip("/")):
            if candidate in self.paths:
                return candidate
        return None

    def _payload_definition(
        self, root_path: str, post: Dict[str, Any]
    ) -> SchemaDefinition:
        body_params = [
            p for p in self._operation_parameters(post, {}) if p.get("in") == "body"
        ]
        context = f"resource root path '{root_path}' POST operation"
        if not body_params:
            raise InvalidResource(
                f"{context} is missing required 'body' type parameter"
            )
        if len(body_params) > 1:
            raise InvalidResource(f"{context} contains multiple 'body' parameters")
        schema = body_params[0].get("schema")
        if not isinstance(schema, dict) or not schema:
            raise InvalidResource(
                f"{context} is missing the ref to the schema definition"
            )
        if "$ref" in schema:
            try:
                self.resolver.get_schema_by_ref(schema["$ref"])
            except InvalidSchema as e:
                raise InvalidResource(
                    f"{context}: missing schema definition in the document "
                    f"with the supplied ref '{schema['$ref']}'"
                ) from e
        elif not schema.get("properties") and not schema.get("allOf"):
            raise InvalidResource(
                f"{context} has an empty schema ref and the embedded schema "
                "does not contain any properties"
            )
        return self.builder.build(schema)

    def _merge_response_schema(
        self, definition: SchemaDefinition, get_operation: Dict[str, Any]
    ) -> SchemaDefinition:
        response = (get_operation.get("responses") or {}).get("200") or (
            get_operation.get("responses") or {}
        ).get(200)
        schema = (response or {}).get("schema")
        if not isinstance(schema, dict) or not schema:
            return definition
        try:
            response_definition = self.builder.build(schema)
        except InvalidSchema as e:
            logger.debug("Ignoring GET response schema: %s", e)
            return definition
        return merge_response_properties(definition, response_definition)

    def parent_link(self, root_path: str) -> Optional[ParentLink]:
        """Describes the ancestors of a sub-resource path, outermost first."""
        names = []
        instance_paths = []
        for match in PARENT_RE.finditer(root_path):
            version, name = match.group(1), match.group(2)
            names.append(f"{name}_{version}" if version else name)
            instance_paths.append(root_path[: match.end()])
        if not names:
            return None
        return ParentLink(
            parent_names=tuple(names),
            parent_property_names=tuple(f"{name}_id" for name in names),
            parent_instance_paths=tuple(instance_paths),
        )

    def resource_name(
        self, root_path: str, post: Dict[str, Any], parent: Optional[ParentLink]
    ) -> str:
        """
        Derives the resource name from the last fixed segment of the collection
        path, or from x-terraform-resource-name, adding the version segment and
        the names of any parents.
        """
        name, version = resource_name_from_path(root_path)
        preferred = post.get(EXT_RESOURCE_NAME)
        if preferred:
            name = preferred
        name = convert_name(name)
        if version:
            name = f"{name}_{version}"
        if parent is not None:
            name = "_".join(parent.parent_names) + "_" + name
        return name

    def _expand_regions(self, resource: SpecResource) -> List[SpecResource]:
        if resource.host_override and region_placeholder(resource.host_override):
            keyword = region_placeholder(resource.host_override)
            extension = EXT_RESOURCE_REGIONS_FMT.format(keyword)
            regions = split_csv(self.api_spec.get(extension))
            if not regions:
                raise InvalidResource(
                    f"missing matching '{keyword}' root level region extension "
                    f"'{extension}'"
                )
            return [
                replace(
                    resource,
                    name=f"{resource.name}_{region}",
                    region=region,
                    host_regions=tuple(regions),
                )
                for region in regions
            ]

        if not resource.host_override:
            return [
                replace(resource, name=f"{resource.name}_{region}", region=region)
                for region in self.provider_regions()
            ] or [resource]
        return [resource]

    # --- Data sources ---

    def data_sources(self) -> List[SpecResource]:
        """
        Returns read-only resources built from collection paths whose GET
        returns a list of objects carrying an identifier.
        """
        self.validate_version()
        data_sources = []
        for path in sorted(self.paths):
            try:
                data_source = self.build_data_source(path)
            except (InvalidResource, InvalidSchema) as e:
                self.collector.add_error(f"Path '{path}': {e}")
                logger.warning("Ignoring data source path '%s': %s", path, e)
                continue
            if data_source is None:
                continue
            regions = self.provider_regions()
            if regions:
                data_sources.extend(
                    replace(
                        data_source, name=f"{data_source.name}_{region}", region=region
                    )
                    for region in regions
                )
            else:
                data_sources.append(data_source)
        logger.info("Found %d data sources", len(data_sources))
        return data_sources

    def build_data_source(self, root_path: str) -> Optional[SpecResource]:
        if PATH_PARAM_RE.search(root_path.rstrip("/").rsplit("/", 1)[-1]):
            return None
        root_item = self.paths[root_path] or {}
        get = root_item.get("get")
        if get is None:
            return None
        responses = get.get("responses") or {}
        schema = (responses.get("200") or responses.get(200) or {}).get("schema")
        if not isinstance(schema, dict):
            return None
        resolved = self.resolver.resolve(schema)
        items = resolved.get("items")
        if resolved.get("type") != "array" or not isinstance(items, dict):
            return None

        definition = self.builder.build(items)
        definition.identifier_property()
        parent = self.parent_link(root_path)
        if parent is not None:
            for property_name in parent.parent_property_names:
                definition.properties[property_name] = parent_property(property_name)

        list_op = self._build_operation(root_path, "get", root_item)
        instance_path = root_path.rstrip("/") + "/{id}"
        return SpecResource(
            name=self.resource_name(root_path, root_item.get("post") or {}, parent),
            root_path=root_path,
            instance_path=instance_path,
            schema_definition=definition,
            get_op=list_op,
            list_op=list_op,
            parent=parent,
        )

    def data_source_instances(
        self, resources: Optional[List[SpecResource]] = None
    ) -> List[SpecResource]:
        """
        Every managed resource can also be read by id as '<name>_instance'.
        Pass `resources` when they were already classified, so skipped paths
        are not reported twice.
        """
        if resources is None:
            resources = self.terraform_compliant_resources()
        return [
            replace(resource, name=f"{resource.name}{DATA_SOURCE_INSTANCE_SUFFIX}")
            for resource in resources
        ]

    # --- Operations ---

    def _operation_parameters(
        self, operation: Dict[str, Any], path_item: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        parameters = []
        declared = list(path_item.get("parameters") or []) + list(
            operation.get("parameters") or []
        )
        for param in declared:
            if "$ref" in param:
                try:
                    param = self.resolver.get_schema_by_ref(param["$ref"])
                except InvalidSchema:
                    logger.debug(
                        "Skipping unresolvable parameter ref '%s'", param["$ref"]
                    )
                    continue
            parameters.append(param)
        return parameters

    def _build_operation(
        self, path: str, method: str, path_item: Dict[str, Any]
    ) -> Optional[ApiOperation]:
        operation = path_item.get(method)
        if operation is None:
            return None
        context = f"{method.upper()} {path}"
        header_parameters = tuple(
            HeaderParameter(
                name=param["name"],
                terraform_name=convert_name(param.get(EXT_HEADER) or param["name"]),
                required=bool(param.get("required", False)),
            )
            for param in self._operation_parameters(operation, path_item)
            if param.get("in") == "header" and param.get("name")
        )
        responses = {}
        for code, response in (operation.get("responses") or {}).items():
            try:
                status_code = int(code)
            except (TypeError, ValueError):
                continue
            response = response or {}
            responses[status_code] = OperationResponse(
                status_code=status_code,
                poll_enabled=is_true(response.get(EXT_POLL_ENABLED)),
                completed_statuses=tuple(split_csv(response.get(EXT_POLL_COMPLETED))),
                pending_statuses=tuple(split_csv(response.get(EXT_POLL_PENDING))),
                failed_statuses=tuple(split_csv(response.get(EXT_POLL_FAILED))),
            )
        security = operation.get("security")
        return ApiOperation(
            path=path,
            method=method.upper(),
            operation_id=operation.get("operationId", ""),
            security=tuple(security) if security is not None else None,
            header_parameters=header_parameters,
            responses=responses,
            timeout=parse_timeout(operation.get(EXT_RESOURCE_TIMEOUT), context),
            raw_spec=operation,
        )

    # --- Provider-level inputs ---

    def backend_configuration(self) -> BackendConfiguration:
        """
        Raises:
            UnsupportedSpec: The document is not 2.0 or its multi-region
                extensions are malformed.
            SpecLoadError: Neither the document nor its URL provide a host.
        """
        self.validate_version()
        host = self.api_spec.get("host")
        if not host:
            host = urlsplit(self.document_url).netloc if self.document_url else ""
            if not host:
                raise SpecLoadError(
                    "could not find valid host from URL provided: "
                    f"'{self.document_url}'"
                )
            logger.warning(
                "Host field not specified in the document, "
                "falling back to the host serving it: '%s'",
                host,
            )
        base_path = self.api_spec.get("basePath") or ""
        if base_path == "/":
            base_path = ""

        region_template = self.api_spec.get(EXT_MULTIREGION_FQDN)
        regions = self.provider_regions()

        return BackendConfiguration(
            host=host,
            base_path=base_path.rstrip("/"),
            schemes=tuple(self.api_spec.get("schemes") or ()),
            is_multi_region=bool(region_template),
            region_template=region_template or None,
            regions=regions,
        )

    def provider_regions(self) -> Tuple[str, ...]:
        """
        Returns the regions of a multi-region document, or an empty tuple.

        Raises:
            UnsupportedSpec: The multi-region extensions are malformed.
        """
        region_template = self.api_spec.get(EXT_MULTIREGION_FQDN)
        if not region_template:
            return ()
        if not region_placeholder(region_template):
            raise UnsupportedSpec(
                f"'{EXT_MULTIREGION_FQDN}' extension value provided not matching "
                "multiregion host format"
            )
        regions = tuple(split_csv(self.api_spec.get(EXT_PROVIDER_REGIONS)))
        if not regions:
            raise UnsupportedSpec(
                f"mandatory multiregion '{EXT_PROVIDER_REGIONS}' extension missing"
            )
        return regions

    def security_definitions(self) -> Dict[str, SecurityDefinition]:
        """Returns the supported apiKey security definitions keyed by name."""
        definitions = {}
        raw_definitions = self.api_spec.get("securityDefinitions") or {}
        for name, sec_def in raw_definitions.items():
            if sec_def.get("type") != "apiKey":
                logger.debug(
                    "Ignoring security definition '%s' of type '%s'",
                    name,
                    sec_def.get("type"),
                )
                continue
            location = sec_def.get("in")
            key_name = sec_def.get("name", "")
            bearer = is_true(sec_def.get(EXT_BEARER))
            refresh_url = sec_def.get(EXT_REFRESH_TOKEN_URL)
            if location == "header":
                if refresh_url:
                    definition = SecurityDefinition(
                        name, REFRESH_TOKEN, "Authorization", True, refresh_url
                    )
                elif bearer:
                    definition = SecurityDefinition(
                        name, API_KEY_HEADER, "Authorization", True
                    )
                else:
                    definition = SecurityDefinition(name, API_KEY_HEADER, key_name)
            elif location == "query":
                if bearer:
                    definition = SecurityDefinition(
                        name, API_KEY_QUERY, "access_token", True
                    )
                else:
                    definition = SecurityDefinition(name, API_KEY_QUERY, key_name)
            else:
                raise UnsupportedSpec(
                    f"apiKey 'in' value '{location}' not supported, "
                    "only 'header' and 'query' values are valid"
                )
            definitions[name] = definition
        return definitions

    def global_security(self) -> Tuple[Dict[str, Any], ...]:
        """
        Raises:
            UnsupportedSpec: A global requirement names an unknown or
                unsupported security definition.
        """
        security = tuple(self.api_spec.get("security") or ())
        definitions = self.security_definitions()
        for requirement in security:
            for name in requirement:
                if name not in definitions:
                    raise UnsupportedSpec(
                        f"global security scheme '{name}' not found or not "
                        "matching supported 'apiKey' type"
                    )
        return security

    def header_parameters(self) -> List[HeaderParameter]:
        """All header parameters declared by any operation, de-duplicated by name."""
        headers: Dict[str, HeaderParameter] = {}
        for path in sorted(self.paths):
            path_item = self.paths[path] or {}
            for method in HTTP_METHODS:
                if method not in path_item:
                    continue
                try:
                    operation = self._build_operation(path, method, path_item)
                except InvalidResource:
                    continue
                for header in operation.header_parameters:
                    headers.setdefault(header.name, header)
        return list(headers.values())

    def get_schema_by_ref(self, ref: str) -> Dict[str, Any]:
        return self.resolver.get_schema_by_ref(ref)
