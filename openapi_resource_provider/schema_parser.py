import logging
import re
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import InvalidSchema
from .helpers import OPENAPI_TO_FIELD_TYPE_MAP, is_true
from .models import SchemaDefinition, SchemaProperty, SpecResource

logger = logging.getLogger(__name__)

EXT_IMMUTABLE = "x-terraform-immutable"
EXT_FORCE_NEW = "x-terraform-force-new"
EXT_SENSITIVE = "x-terraform-sensitive"
EXT_FIELD_NAME = "x-terraform-field-name"
EXT_FIELD_STATUS = "x-terraform-field-status"
EXT_ID = "x-terraform-id"
EXT_COMPUTED = "x-terraform-computed"

DATA_SOURCE_FILTER_FIELD = "filter"


class SchemaResolver:
    """
    Resolves '$ref' and 'allOf' constructs of a Swagger 2.0 document.

    Definitions are looked up by name on every traversal. A reference that is
    already being expanded higher up the stack is reported as a cycle instead
    of being followed again.
    """

    def __init__(self, full_api_spec: Dict[str, Any]):
        self.full_api_spec = full_api_spec

    def get_schema_by_ref(self, ref: str) -> Dict[str, Any]:
        """
        Follows a JSON schema '$ref' path (e.g., '#/definitions/ContentDeliveryNetwork')
        and returns a deep copy of the referenced schema definition.

        Raises:
            InvalidSchema: If the reference can not be resolved.
        """
        if not ref.startswith("#/"):
            raise InvalidSchema(f"Only local references are supported, got '{ref}'")
        schema: Any = self.full_api_spec
        for part in ref[2:].split("/"):
            part = part.replace("~1", "/").replace("~0", "~")
            if not isinstance(schema, dict) or part not in schema:
                raise InvalidSchema(
                    f"Invalid $ref, part '{part}' not found in document: {ref}"
                )
            schema = schema[part]
        return deepcopy(schema)

    def resolve(self, schema: Dict[str, Any], _seen=()) -> Dict[str, Any]:
        """
        Fully resolves a schema fragment by handling '$ref' and 'allOf' and
        returns a single, flattened schema with all properties combined.
        Sibling keys next to a '$ref' override the referenced content.
        """
        if "$ref" in schema:
            ref = schema["$ref"]
            if ref in _seen:
                raise InvalidSchema(
                    f"Circular reference detected while resolving '{ref}'"
                )
            ref_schema = self.get_schema_by_ref(ref)
            ref_schema.update({k: v for k, v in schema.items() if k != "$ref"})
            schema = self.resolve(ref_schema, _seen + (ref,))

        if "allOf" in schema:
            final_schema = {k: v for k, v in schema.items() if k != "allOf"}
            final_schema["properties"] = dict(final_schema.get("properties", {}))
            required = list(final_schema.get("required", []))
            for sub_schema in schema["allOf"]:
                resolved_sub_schema = self.resolve(sub_schema, _seen)
                final_schema["properties"].update(
                    resolved_sub_schema.get("properties", {})
                )
                required.extend(
                    name
                    for name in resolved_sub_schema.get("required", [])
                    if name not in required
                )
                if "type" not in final_schema and "type" in resolved_sub_schema:
                    final_schema["type"] = resolved_sub_schema["type"]
            if required:
                final_schema["required"] = required
            return final_schema

        return schema

    def ref_of(self, schema: Dict[str, Any]) -> Optional[str]:
        """Returns the definition reference of a schema, if it is one."""
        return schema.get("$ref") if isinstance(schema, dict) else None


class SchemaDefinitionBuilder:
    """
    Turns a raw JSON schema into a `SchemaDefinition`, applying the property
    attribute rules:

    - a property cannot be both required and readOnly;
    - a readOnly property cannot carry a default;
    - a property cannot be both immutable and force-new;
    - a non-readOnly property with a default, or one marked x-terraform-computed,
      is optional-computed; x-terraform-computed is invalid together with
      readOnly or default;
    - arrays may only hold primitives or objects.
    """

    def __init__(self, resolver: SchemaResolver):
        self.resolver = resolver

    def build(self, schema: Dict[str, Any], _seen=()) -> SchemaDefinition:
        ref = self.resolver.ref_of(schema)
        if ref and ref in _seen:
            raise InvalidSchema(f"Circular reference detected while resolving '{ref}'")
        seen = _seen + (ref,) if ref else _seen

        resolved = self.resolver.resolve(schema)
        required_names = resolved.get("required", []) or []
        definition = SchemaDefinition()
        for name, raw_property in (resolved.get("properties") or {}).items():
            definition.properties[name] = self.build_property(
                name, raw_property, required_names, seen
            )
        return definition

    def build_property(
        self, name: str, raw_property: Dict[str, Any], required_names, _seen=()
    ) -> SchemaProperty:
        ref = self.resolver.ref_of(raw_property)
        resolved = self.resolver.resolve(raw_property, _seen)

        read_only = bool(resolved.get("readOnly", False))
        required = name in required_names
        default = resolved.get("default")
        computed_ext = is_true(resolved.get(EXT_COMPUTED))

        if required and read_only:
            raise InvalidSchema(
                f"failed to process property '{name}': "
                "a required property cannot be readOnly too"
            )
        if read_only and default is not None:
            raise InvalidSchema(
                f"failed to process property '{name}': "
                "a readOnly property cannot declare a default value"
            )
        if computed_ext and read_only:
            raise InvalidSchema(
                f"optional computed property validation failed for property '{name}': "
                f"properties marked with '{EXT_COMPUTED}' can not be readOnly"
            )
        if computed_ext and default is not None:
            raise InvalidSchema(
                f"optional computed property validation failed for property '{name}': "
                f"properties marked with '{EXT_COMPUTED}' can not have a default value"
            )

        prop = SchemaProperty(
            name=name,
            type=self._property_type(name, resolved),
            required=required,
            read_only=read_only,
            force_new=is_true(resolved.get(EXT_FORCE_NEW)),
            immutable=is_true(resolved.get(EXT_IMMUTABLE)),
            sensitive=is_true(resolved.get(EXT_SENSITIVE)),
            optional_computed=not required
            and not read_only
            and (default is not None or computed_ext),
            default=deepcopy(default),
            description=resolved.get("description", "") or "",
            preferred_name=resolved.get(EXT_FIELD_NAME) or None,
            is_identifier=is_true(resolved.get(EXT_ID)),
            is_status=is_true(resolved.get(EXT_FIELD_STATUS)),
        )

        if prop.immutable and prop.force_new:
            raise InvalidSchema(
                f"failed to process property '{name}': "
                "a property cannot be both immutable and force-new"
            )

        nested_seen = _seen + (ref,) if ref else _seen
        if prop.type == "object":
            prop.nested = self.build(resolved, nested_seen)
        elif prop.type == "list":
            prop.item_type, prop.nested = self._array_items(name, resolved, nested_seen)

        logger.debug("Built property '%s' of type '%s'", name, prop.type)
        return prop

    def _property_type(self, name: str, schema: Dict[str, Any]) -> str:
        schema_type = schema.get("type")
        if isinstance(schema_type, list):
            schema_type = next((t for t in schema_type if t != "null"), None)
        if schema_type is None and schema.get("properties"):
            schema_type = "object"
        if schema_type == "object" and not schema.get("properties"):
            raise InvalidSchema(
                f"failed to process object type property '{name}': object is missing "
                "the nested schema definition"
            )
        field_type = OPENAPI_TO_FIELD_TYPE_MAP.get(schema_type)
        if field_type is None:
            raise InvalidSchema(
                f"property '{name}' has non supported type '{schema_type}'"
            )
        return field_type

    def _array_items(self, name: str, schema: Dict[str, Any], _seen):
        items = schema.get("items")
        if not isinstance(items, dict) or not items:
            raise InvalidSchema(
                f"failed to process array type property '{name}': "
                "array property is missing items schema definition"
            )
        resolved_items = self.resolver.resolve(items, _seen)
        item_type = self._property_type(name, resolved_items)
        if item_type == "list":
            raise InvalidSchema(
                f"failed to process array type property '{name}': "
                "array property can not have items of type 'array'"
            )
        if item_type == "object":
            return item_type, self.build(items, _seen)
        return item_type, None


@dataclass
class SchemaField:
    """A typed configuration field exposed to the host."""

    name: str  # The configuration name, e.g. 'ttl_seconds'
    wire_name: str  # The OpenAPI property name, e.g. 'ttlSeconds'
    type: str
    elem_type: Optional[str] = None
    required: bool = False
    optional: bool = False
    computed: bool = False
    optional_computed: bool = False
    sensitive: bool = False
    force_new: bool = False
    immutable: bool = False
    default: Any = None
    description: str = ""
    nested: Optional["TypedSchema"] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "required": self.required,
            "optional": self.optional,
            "computed": self.computed,
        }
        for flag in ("optional_computed", "sensitive", "force_new", "immutable"):
            if getattr(self, flag):
                data[flag] = True
        if self.elem_type:
            data["elem_type"] = self.elem_type
        if self.default is not None:
            data["default"] = self.default
        if self.description:
            data["description"] = self.description
        if self.nested is not None:
            data["nested"] = self.nested.to_dict()
        return data


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "list": lambda v: isinstance(v, list),
    # Objects are held as a singleton list of one nested record.
    "object": lambda v: isinstance(v, list) and len(v) <= 1,
}


@dataclass
class TypedSchema:
    """The configuration schema of a resource, data source or the provider."""

    fields: Dict[str, SchemaField] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.fields

    def get(self, name: str) -> Optional[SchemaField]:
        return self.fields.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: schema_field.to_dict() for name, schema_field in self.fields.items()
        }

    def validate(self, values: Dict[str, Any], path: str = "") -> List[str]:
        """
        Checks user-declared values against the schema and returns a list of
        problems: missing required fields, unknown fields and type mismatches.
        Nested records are reported as '<field>.<index>.<child>'.
        """
        problems = []
        for name, schema_field in self.fields.items():
            label = f"{path}{name}"
            value = values.get(name)
            if value is None:
                if schema_field.required:
                    problems.append(f"'{label}' is required")
                continue
            check = _TYPE_CHECKS.get(schema_field.type)
            if check and not check(value):
                problems.append(f"'{label}' must be of type '{schema_field.type}'")
                continue
            if schema_field.nested is not None:
                records = value if schema_field.type in ("list", "object") else []
                for index, record in enumerate(records):
                    if isinstance(record, dict):
                        problems.extend(
                            schema_field.nested.validate(
                                record, path=f"{label}.{index}."
                            )
                        )
            elif schema_field.elem_type:
                elem_check = _TYPE_CHECKS.get(schema_field.elem_type)
                if elem_check and not all(elem_check(item) for item in value):
                    problems.append(
                        f"'{label}' items must be of type '{schema_field.elem_type}'"
                    )
        for name in values:
            if name not in self.fields:
                problems.append(f"'{path}{name}' is not a supported field")
        return problems


def generate_description(prop: SchemaProperty) -> str:
    """Returns the property description, or a readable default built from its name."""
    if prop.description:
        return prop.description
    display_name = prop.terraform_name.replace("_", " ")
    display_name = re.sub(
        r"\b(id|url|ip|dns|ttl|api|uuid)\b",
        lambda m: m.group(1).upper(),
        display_name,
    )
    if prop.type == "list":
        return f"A list of {display_name} items."
    return display_name[:1].upper() + display_name[1:]


class SchemaSynthesizer:
    """
    Maps a resource's `SchemaDefinition` into a `TypedSchema` of configuration
    fields. The identifier property never becomes a field: the host tracks it
    separately as the resource id.
    """

    def synthesize(self, resource: SpecResource) -> TypedSchema:
        definition = resource.schema_definition
        identifier = definition.identifier_property()
        schema = TypedSchema()
        for prop in definition:
            if prop.name == identifier.name:
                continue
            schema.fields[prop.terraform_name] = self.synthesize_field(prop)
        return schema

    def synthesize_field(self, prop: SchemaProperty) -> SchemaField:
        required = prop.required and not prop.read_only
        nested = None
        if prop.nested is not None:
            nested = TypedSchema(
                {
                    child.terraform_name: self.synthesize_field(child)
                    for child in prop.nested
                }
            )
        return SchemaField(
            name=prop.terraform_name,
            wire_name=prop.name,
            type=prop.type,
            elem_type=prop.item_type,
            required=required,
            optional=not required and not prop.read_only,
            computed=prop.computed,
            optional_computed=prop.optional_computed,
            sensitive=prop.sensitive,
            force_new=prop.force_new,
            immutable=prop.immutable,
            default=prop.default,
            description=generate_description(prop),
            nested=nested,
        )

    def synthesize_data_source(self, resource: SpecResource) -> TypedSchema:
        """
        Every property becomes computed; a 'filter' block selects the single
        instance to read. Parent properties stay required so the collection
        path can be resolved.
        """
        schema = TypedSchema()
        for prop in resource.schema_definition:
            synthesized = self._as_computed(self.synthesize_field(prop), prop)
            schema.fields[prop.terraform_name] = synthesized
        schema.fields[DATA_SOURCE_FILTER_FIELD] = SchemaField(
            name=DATA_SOURCE_FILTER_FIELD,
            wire_name=DATA_SOURCE_FILTER_FIELD,
            type="list",
            elem_type="object",
            optional=True,
            description=(
                "Filters applied to the list of instances; "
                "exactly one instance must match."
            ),
            nested=TypedSchema(
                {
                    "name": SchemaField(
                        name="name", wire_name="name", type="string", required=True
                    ),
                    "values": SchemaField(
                        name="values",
                        wire_name="values",
                        type="list",
                        elem_type="string",
                        required=True,
                    ),
                }
            ),
        )
        return schema

    def synthesize_data_source_instance(self, resource: SpecResource) -> TypedSchema:
        """Computed properties plus a required 'id' selecting the instance."""
        identifier = resource.schema_definition.identifier_property()
        schema = TypedSchema()
        schema.fields["id"] = SchemaField(
            name="id",
            wire_name=identifier.name,
            type="string",
            required=True,
            description="The identifier of the instance to read.",
        )
        for prop in resource.schema_definition:
            if prop.name == identifier.name:
                continue
            synthesized = self._as_computed(self.synthesize_field(prop), prop)
            schema.fields[prop.terraform_name] = synthesized
        return schema

    def _as_computed(
        self, schema_field: SchemaField, prop: SchemaProperty
    ) -> SchemaField:
        if prop.is_parent:
            return schema_field
        return mark_computed(schema_field)


def mark_computed(schema_field: SchemaField) -> SchemaField:
    """Turns a field and every field nested below it into a computed one."""
    schema_field.required = False
    schema_field.optional = False
    schema_field.computed = True
    schema_field.optional_computed = False
    schema_field.default = None
    if schema_field.nested is not None:
        for child in schema_field.nested.fields.values():
            mark_computed(child)
    return schema_field


def parent_property(name: str) -> SchemaProperty:
    """Builds the required string property holding the id of a parent resource."""
    return SchemaProperty(
        name=name,
        type="string",
        required=True,
        is_parent=True,
        description=f"The identifier of the parent resource ({name}).",
    )


def merge_response_properties(
    definition: SchemaDefinition, response_definition: SchemaDefinition
) -> SchemaDefinition:
    """
    Adds properties that only appear in the response schema to the request
    schema as optional-computed properties; read-only ones stay computed.
    """
    for name, prop in response_definition.properties.items():
        if name in definition.properties:
            continue
        if not prop.read_only and not prop.is_identifier:
            prop.optional_computed = True
        prop.required = False
        definition.properties[name] = prop
    return definition
