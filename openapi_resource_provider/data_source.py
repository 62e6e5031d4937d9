import logging
from typing import Any, Dict, List, Optional

from .client import OpenAPIClient
from .errors import InvalidConfiguration, UnexpectedStatus
from .models import OP_READ, ResourceData, SpecResource
from .payload import PayloadMapper
from .runner import EXPECTED_STATUS, check_status
from .schema_parser import DATA_SOURCE_FILTER_FIELD, TypedSchema

logger = logging.getLogger(__name__)

DATA_SOURCE_METRIC_PREFIX = "data_"


def format_filter_value(value: Any) -> str:
    """Renders a payload value the way filter values are written by users."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class DataSourceOperator:
    """
    Reads exactly one instance from a collection by filtering the list
    response. Each filter names a primitive field and a single value; an
    instance matches when all of its filtered fields, rendered as strings,
    equal the filter values.
    """

    def __init__(
        self,
        resource: SpecResource,
        client: OpenAPIClient,
        schema: Optional[TypedSchema] = None,
        telemetry=None,
    ):
        self.resource = resource
        self.client = client
        self.schema = schema
        self.telemetry = telemetry
        self.mapper = PayloadMapper(resource)

    @property
    def name(self) -> str:
        return self.resource.name

    def _submit_metric(self):
        if self.telemetry is not None:
            self.telemetry.submit_resource_execution_metrics(
                f"{DATA_SOURCE_METRIC_PREFIX}{self.name}",
                OP_READ,
                self.client.provider_config,
            )

    def _parent_ids(self, data: ResourceData) -> List[str]:
        ids = []
        for name in self.resource.parent_property_names:
            value = data.get(name)
            if not value:
                raise InvalidConfiguration(
                    f"[data source='{self.name}'] parent identifier '{name}' "
                    "is required"
                )
            ids.append(str(value))
        return ids

    def validate_filters(self, filters: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Raises:
            InvalidConfiguration: A filter names an unknown or non-primitive
                field, or does not carry exactly one value.
        """
        definition = self.resource.schema_definition
        validated = []
        for item in filters or []:
            name = item.get("name")
            values = item.get("values") or []
            prop = definition.get_property_by_terraform_name(name) if name else None
            if prop is None:
                raise InvalidConfiguration(
                    f"[data source='{self.name}'] filter name '{name}' "
                    "does not match any property"
                )
            if not prop.is_primitive:
                raise InvalidConfiguration(
                    f"[data source='{self.name}'] property '{name}' is not a "
                    "primitive and can not be used as a filter"
                )
            if len(values) != 1:
                raise InvalidConfiguration(
                    f"[data source='{self.name}'] filter '{name}' must declare "
                    f"exactly one value, got {len(values)}"
                )
            validated.append(
                {"property": prop, "value": format_filter_value(values[0])}
            )
        return validated

    def _matches(self, item: Dict[str, Any], filters: List[Dict[str, Any]]) -> bool:
        for item_filter in filters:
            prop = item_filter["property"]
            if prop.name not in item or item[prop.name] is None:
                return False
            if format_filter_value(item[prop.name]) != item_filter["value"]:
                return False
        return True

    def read(self, data: ResourceData) -> ResourceData:
        """
        Raises:
            InvalidConfiguration: The filters are invalid, or zero or more than
                one instance matched them.
        """
        self._submit_metric()
        filters = self.validate_filters(data.get(DATA_SOURCE_FILTER_FIELD) or [])
        parent_ids = self._parent_ids(data)

        response = self.client.list(self.resource, parent_ids)
        url = self.client.resource_url(self.resource, parent_ids)
        check_status(response, EXPECTED_STATUS[OP_READ], "GET", url)
        items = response.json() or []
        if not isinstance(items, list):
            raise UnexpectedStatus(
                response.status_code,
                method="GET",
                url=url,
                body="expected a list of instances",
                expected=(200,),
            )

        matches = [
            item
            for item in items
            if isinstance(item, dict) and self._matches(item, filters)
        ]
        if not matches:
            raise InvalidConfiguration(
                f"[data source='{self.name}'] your query returned no results, "
                "please change your search criteria and try again"
            )
        if len(matches) > 1:
            raise InvalidConfiguration(
                f"[data source='{self.name}'] your query returned more than one "
                f"result ({len(matches)}), "
                "please try a more specific search criteria"
            )

        match = matches[0]
        data.id = self.mapper.identifier_from(match)
        data.values.update(self.mapper.to_state(match))
        identifier = self.resource.schema_definition.identifier_property()
        data.set(identifier.terraform_name, data.id)
        logger.info("[data source='%s'] matched instance '%s'", self.name, data.id)
        return data


class DataSourceInstanceOperator(DataSourceOperator):
    """Reads a single managed-resource instance by its identifier."""

    def read(self, data: ResourceData) -> ResourceData:
        """
        Raises:
            InvalidConfiguration: No 'id' was given.
            ResourceGone: The instance does not exist.
        """
        self._submit_metric()
        instance_id = data.get("id") or data.id
        if not instance_id:
            raise InvalidConfiguration(f"[data source='{self.name}'] 'id' is required")
        parent_ids = self._parent_ids(data)

        response = self.client.get(self.resource, str(instance_id), parent_ids)
        url = self.client.resource_url(self.resource, parent_ids, str(instance_id))
        check_status(response, EXPECTED_STATUS[OP_READ], "GET", url)
        data.id = str(instance_id)
        data.values.update(self.mapper.to_state(response.json()))
        data.set("id", data.id)
        return data
