"""
Translation between the host's flat field values and API JSON payloads.

Objects are held in state as a list with one record, so nested records are
unwrapped on the way out and wrapped again on the way in.
"""

import logging
from typing import Any, Dict, List, Optional

from .errors import AsyncFailed, InvalidConfiguration, MissingIdentifier
from .models import SchemaDefinition, SchemaProperty, SpecResource

logger = logging.getLogger(__name__)

_TRUE_STRINGS = ("true", "1", "t", "yes")
_FALSE_STRINGS = ("false", "0", "f", "no")


def _parse_primitive(
    prop: SchemaProperty, value: Any, type_name: Optional[str] = None
) -> Any:
    """
    Converts a value to the wire type of a primitive property. Values of
    nested maps reach the provider as strings and are parsed back here.

    Raises:
        InvalidConfiguration: A string can not be parsed as the property type.
    """
    type_name = type_name or prop.type
    try:
        if type_name == "integer":
            if isinstance(value, str):
                return int(value, 0)
            if isinstance(value, float) and value.is_integer():
                return int(value)
        elif type_name == "number" and isinstance(value, str):
            return float(value)
        elif type_name == "boolean" and isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise ValueError(value)
        elif type_name == "string" and not isinstance(value, str):
            return str(value)
    except ValueError as e:
        raise InvalidConfiguration(
            f"value '{value}' of property '{prop.terraform_name}' "
            f"is not a valid {type_name}"
        ) from e
    return value


def _state_primitive(
    prop: SchemaProperty, value: Any, type_name: Optional[str] = None
) -> Any:
    type_name = type_name or prop.type
    if type_name == "integer" and isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class PayloadMapper:
    """Maps the values of one resource between state and API payloads."""

    def __init__(self, resource: SpecResource):
        self.resource = resource
        self.definition = resource.schema_definition

    # --- state -> payload ---

    def to_payload(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Builds the request body from field values. The identifier, parent
        and read-only properties are never sent; unset values are omitted.
        """
        identifier = self.definition.identifier_property()
        payload = {}
        for prop in self.definition:
            if prop.name == identifier.name or prop.read_only or prop.is_parent:
                continue
            value = values.get(prop.terraform_name)
            if value is None:
                continue
            payload[prop.name] = self._property_payload(prop, value)
        logger.debug(
            "[resource='%s'] request payload built for %s",
            self.resource.name,
            sorted(payload),
        )
        return payload

    def _nested_payload(
        self, definition: SchemaDefinition, record: Dict[str, Any]
    ) -> Dict[str, Any]:
        payload = {}
        for prop in definition:
            if prop.read_only:
                continue
            value = record.get(prop.terraform_name)
            if value is None:
                continue
            payload[prop.name] = self._property_payload(prop, value)
        return payload

    def _property_payload(self, prop: SchemaProperty, value: Any) -> Any:
        if prop.is_object:
            if isinstance(value, list):
                if len(value) != 1:
                    raise InvalidConfiguration(
                        f"object property '{prop.terraform_name}' must hold "
                        f"exactly one record, got {len(value)}"
                    )
                value = value[0]
            if not isinstance(value, dict):
                raise InvalidConfiguration(
                    f"object property '{prop.terraform_name}' must hold a record"
                )
            return self._nested_payload(prop.nested, value)
        if prop.is_list_of_objects:
            return [self._nested_payload(prop.nested, item) for item in value]
        if prop.type == "list":
            return [_parse_primitive(prop, item, prop.item_type) for item in value]
        return _parse_primitive(prop, value)

    # --- payload -> state ---

    def to_state(self, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Maps a response body to field values. Properties the schema does not
        know are logged and skipped; the identifier is carried by the
        resource id instead of a field.
        """
        if not payload:
            return {}
        identifier = self.definition.identifier_property()
        state = {}
        for name, remote_value in payload.items():
            prop = self.definition.get_property(name)
            if prop is None:
                logger.warning(
                    "[resource='%s'] The API returned property '%s' "
                    "that is not part of the resource schema",
                    self.resource.name,
                    name,
                )
                continue
            if prop.name == identifier.name:
                continue
            state[prop.terraform_name] = self._property_state(prop, remote_value)
        return state

    def _nested_state(
        self, definition: SchemaDefinition, record: Dict[str, Any]
    ) -> Dict[str, Any]:
        state = {}
        for prop in definition:
            if prop.name in record:
                value = record[prop.name]
                state[prop.terraform_name] = self._property_state(prop, value)
        return state

    def _property_state(self, prop: SchemaProperty, value: Any) -> Any:
        if value is None:
            return None
        if prop.is_object:
            if not isinstance(value, dict):
                raise InvalidConfiguration(
                    f"invalid value '{value}' for property '{prop.name}' "
                    f"of type '{prop.type}'"
                )
            return [self._nested_state(prop.nested, value)]
        if prop.is_list_of_objects:
            return [
                self._nested_state(prop.nested, item)
                for item in value
                if isinstance(item, dict)
            ]
        if prop.type == "list":
            return [_state_primitive(prop, item, prop.item_type) for item in value]
        return _state_primitive(prop, value)

    # --- identifiers and statuses ---

    def identifier_from(self, payload: Optional[Dict[str, Any]]) -> str:
        """
        Returns the identifier of a response body as a string. Numbers are
        rendered without a fractional part.

        Raises:
            MissingIdentifier: The body does not carry the identifier.
        """
        identifier = self.definition.identifier_property()
        value = (payload or {}).get(identifier.name)
        if value is None or isinstance(value, (bool, dict, list)):
            raise MissingIdentifier(
                "response object returned from the API for resource "
                f"'{self.resource.name}' is missing "
                f"mandatory identifier property '{identifier.name}'"
            )
        if isinstance(value, float):
            return str(int(value))
        return str(value)

    def status_path(self) -> List[str]:
        """
        The property names leading to the status value: a top-level property
        marked as status, a status property nested in an object, or a
        top-level property named 'status'.
        """
        for prop in self.definition:
            if prop.is_status:
                return [prop.name]
        for prop in self.definition:
            if prop.is_object and prop.nested is not None:
                for child in prop.nested:
                    if child.is_status:
                        return [prop.name, child.name]
        return ["status"]

    def status_from(self, payload: Optional[Dict[str, Any]]) -> str:
        """
        Raises:
            AsyncFailed: The body has no status value.
        """
        path = self.status_path()
        value: Any = payload or {}
        for name in path:
            if not isinstance(value, dict) or name not in value:
                raise AsyncFailed(
                    "payload does not match resource schema, "
                    f"could not find the status field: {path}"
                )
            value = value[name]
        if not isinstance(value, str):
            raise AsyncFailed(
                f"status property value '{path}' does not have a supported "
                "type [string]"
            )
        return value
