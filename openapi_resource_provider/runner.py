import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .client import OpenAPIClient
from .errors import (
    AsyncFailed,
    AsyncTimeout,
    ImmutableViolation,
    InvalidConfiguration,
    OperationCancelled,
    ResourceGone,
    UnexpectedStatus,
    UnsupportedOp,
)
from .http_client import HttpResponse
from .models import (
    OP_CREATE,
    OP_DELETE,
    OP_READ,
    OP_UPDATE,
    ResourceData,
    SchemaDefinition,
    SchemaProperty,
    SpecResource,
)
from .payload import PayloadMapper
from .schema_parser import TypedSchema

logger = logging.getLogger(__name__)

# Accepted response codes per operation. A 404 on delete means the resource is
# already gone and is treated as success.
EXPECTED_STATUS = {
    OP_CREATE: (200, 201, 202),
    OP_READ: (200,),
    OP_UPDATE: (200, 202),
    OP_DELETE: (200, 202, 204),
}

# Synthetic status reported while polling a resource that no longer exists.
STATUS_DESTROYED = "destroyed"

DEFAULT_POLL_DELAY = 1.0
DEFAULT_POLL_MAX_INTERVAL = 30.0
DEFAULT_POLL_JITTER = 0.2

IMPORT_ID_SEPARATOR = "/"

ACTION_NOOP = "noop"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_REPLACE = "replace"
ACTION_DELETE = "delete"


def check_status(
    response: HttpResponse, expected: Sequence[int], method: str, url: str
):
    """
    Raises:
        ResourceGone: The API answered 404.
        UnexpectedStatus: Any other code outside `expected`.
    """
    if response.status_code in expected:
        return
    if response.status_code == 404:
        raise ResourceGone(method=method, url=url, body=response.text)
    raise UnexpectedStatus(
        response.status_code,
        method=method,
        url=url,
        body=response.text,
        expected=expected,
    )


def _comparable(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, list):
        return [_comparable(item) for item in value]
    if isinstance(value, dict):
        return {
            key: _comparable(item) for key, item in value.items() if item is not None
        }
    return value


def _differs(prop: SchemaProperty, desired: Any, prior: Any) -> bool:
    """
    Compares a desired value with the prior state. Nested records ignore the
    children the API computes: read-only ones, and computed ones left unset.
    """
    if (
        prop.nested is None
        or not isinstance(desired, list)
        or not isinstance(prior, list)
    ):
        return _comparable(desired) != _comparable(prior)
    if len(desired) != len(prior):
        return True
    for desired_item, prior_item in zip(desired, prior):
        if not isinstance(desired_item, dict) or not isinstance(prior_item, dict):
            if _comparable(desired_item) != _comparable(prior_item):
                return True
            continue
        for child in prop.nested:
            name = child.terraform_name
            value = desired_item.get(name)
            if child.read_only or (value is None and child.computed):
                continue
            if _differs(child, value, prior_item.get(name)):
                return True
    return False


@dataclass
class Plan:
    """The action needed to move a resource from its prior to its desired state."""

    action: str
    changed_fields: List[str] = field(default_factory=list)


class ResourceOperator:
    """
    Executes the lifecycle of one managed resource against the API.

    Every call works on a `ResourceData`: `id` is the remote identifier and
    `values` the flat field values, parent identifiers included. Waits for
    asynchronous operations honour `cancel`; once it is set the operator
    stops without issuing further requests and raises `OperationCancelled`.
    """

    def __init__(
        self,
        resource: SpecResource,
        client: OpenAPIClient,
        schema: Optional[TypedSchema] = None,
        telemetry=None,
        poll_delay: float = DEFAULT_POLL_DELAY,
        poll_max_interval: float = DEFAULT_POLL_MAX_INTERVAL,
        poll_jitter: float = DEFAULT_POLL_JITTER,
    ):
        self.resource = resource
        self.client = client
        self.schema = schema
        self.telemetry = telemetry
        self.mapper = PayloadMapper(resource)
        self.poll_delay = poll_delay
        self.poll_max_interval = poll_max_interval
        self.poll_jitter = poll_jitter

    @property
    def name(self) -> str:
        return self.resource.name

    # --- Helpers ---

    def _submit_metric(self, operation: str):
        if self.telemetry is not None:
            self.telemetry.submit_resource_execution_metrics(
                self.name, operation, self.client.provider_config
            )

    def _validate(self, values: Dict[str, Any]):
        if self.schema is None:
            return
        problems = self.schema.validate(
            {
                name: value
                for name, value in values.items()
                if not self._is_computed_only(name)
            }
        )
        if problems:
            raise InvalidConfiguration(
                f"[resource='{self.name}'] invalid configuration: "
                + "; ".join(problems)
            )

    def _is_computed_only(self, name: str) -> bool:
        schema_field = self.schema.get(name) if self.schema is not None else None
        return (
            schema_field is not None
            and schema_field.computed
            and not schema_field.optional
        )

    def parent_ids(self, data: ResourceData) -> List[str]:
        """
        Raises:
            InvalidConfiguration: A parent identifier is not set.
        """
        ids = []
        for name in self.resource.parent_property_names:
            value = data.get(name)
            if value is None or value == "":
                raise InvalidConfiguration(
                    f"[resource='{self.name}'] parent identifier '{name}' is required"
                )
            ids.append(str(value))
        return ids

    def _update_state(self, data: ResourceData, payload: Optional[Dict[str, Any]]):
        data.values.update(self.mapper.to_state(payload))

    def _read_remote(
        self, instance_id: str, parent_ids: Sequence[str]
    ) -> Dict[str, Any]:
        response = self.client.get(self.resource, instance_id, parent_ids)
        url = self.client.resource_url(self.resource, parent_ids, instance_id)
        check_status(response, EXPECTED_STATUS[OP_READ], "GET", url)
        return response.json() or {}

    # --- Polling ---

    def poll_interval(self, attempt: int) -> float:
        """Doubles from `poll_delay` up to `poll_max_interval`, then applies jitter."""
        delay = min(self.poll_max_interval, self.poll_delay * 2 ** min(attempt, 32))
        if self.poll_jitter:
            delay *= random.uniform(1 - self.poll_jitter, 1 + self.poll_jitter)
        return delay

    def wait_for_status(
        self,
        kind: str,
        status_code: int,
        instance_id: str,
        parent_ids: Sequence[str],
        cancel: Optional[threading.Event] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Polls the instance until it reaches a completion status, when the
        response to `kind` has polling enabled. Returns the last payload read,
        or None when no polling applies or the resource is gone.

        Raises:
            AsyncFailed: A declared failure status was reached, or a status
                outside the declared pending ones when any are declared.
            AsyncTimeout: The operation timeout elapsed first.
            OperationCancelled: `cancel` was set while waiting.
        """
        operation = self.resource.operation(kind)
        response = operation.get_response(status_code) if operation else None
        if response is None or not response.poll_enabled:
            return None

        targets = response.completed_statuses
        if kind == OP_DELETE:
            if targets:
                logger.warning(
                    "[resource='%s'] completed statuses are ignored on delete; "
                    "waiting for the resource to be gone",
                    self.name,
                )
            targets = (STATUS_DESTROYED,)
        elif not targets:
            raise AsyncFailed(
                f"[resource='{self.name}'] polling is enabled for response "
                f"{status_code} of the {kind} operation but no completed statuses "
                "are declared"
            )
        pending = response.pending_statuses
        failed = response.failed_statuses

        timeout = self.resource.timeout(kind)
        deadline = time.monotonic() + timeout
        cancel = cancel or threading.Event()
        attempt = 0
        last_status = None
        logger.info(
            "[resource='%s'] waiting for %s to reach %s (timeout %ss)",
            self.name,
            kind,
            list(targets),
            timeout,
        )

        while True:
            remaining = deadline - time.monotonic()
            delay = self.poll_interval(attempt)
            if cancel.wait(max(0.0, min(delay, remaining))):
                raise OperationCancelled(
                    f"[resource='{self.name}'] {kind} cancelled while waiting"
                )

            try:
                payload = self._read_remote(instance_id, parent_ids)
                last_status = self.mapper.status_from(payload)
            except ResourceGone:
                payload = None
                last_status = STATUS_DESTROYED
            logger.debug(
                "[resource='%s'] %s status is '%s'", self.name, kind, last_status
            )

            if last_status in targets:
                return payload
            if last_status in failed:
                raise AsyncFailed(
                    f"[resource='{self.name}'] {kind} failed: "
                    f"resource reached status '{last_status}'",
                    last_status=last_status,
                )
            if pending and last_status not in pending:
                raise AsyncFailed(
                    f"[resource='{self.name}'] {kind} failed: unexpected status "
                    f"'{last_status}', expected one of {list(pending) + list(targets)}",
                    last_status=last_status,
                )
            if time.monotonic() >= deadline:
                raise AsyncTimeout(
                    f"[resource='{self.name}'] timeout while waiting for {kind} "
                    f"to complete (last status '{last_status}')",
                    last_status=last_status,
                )
            attempt += 1

    # --- Lifecycle ---

    def create(
        self, data: ResourceData, cancel: Optional[threading.Event] = None
    ) -> ResourceData:
        """
        POSTs the resource, records the returned identifier and state, and
        waits for completion when the response asks for polling.
        """
        self._submit_metric(OP_CREATE)
        if self.resource.create_op is None:
            raise UnsupportedOp(f"[resource='{self.name}'] does not support create")
        self._validate(data.values)

        # 1. Send the request.
        parent_ids = self.parent_ids(data)
        payload = self.mapper.to_payload(data.values)
        response = self.client.post(self.resource, payload, parent_ids)
        url = self.client.resource_url(self.resource, parent_ids)
        check_status(response, EXPECTED_STATUS[OP_CREATE], "POST", url)

        # 2. Record the identifier; the state is written even if waiting fails.
        body = response.json() or {}
        data.id = self.mapper.identifier_from(body)
        self._update_state(data, body)
        logger.info("[resource='%s'] created with id '%s'", self.name, data.id)

        # 3. Wait for asynchronous creation and refresh the state.
        final = self.wait_for_status(
            OP_CREATE, response.status_code, data.id, parent_ids, cancel
        )
        if final is not None:
            self._update_state(data, final)
        return data

    def read(self, data: ResourceData) -> ResourceData:
        """Refreshes `data` from the API; a 404 clears `data.id`."""
        self._submit_metric(OP_READ)
        return self._refresh(data)

    def _refresh(self, data: ResourceData) -> ResourceData:
        parent_ids = self.parent_ids(data)
        try:
            remote = self._read_remote(data.id, parent_ids)
        except ResourceGone:
            logger.info("[resource='%s'] id '%s' no longer exists", self.name, data.id)
            data.mark_gone()
            return data
        self._update_state(data, remote)
        return data

    def check_immutable(self, data: ResourceData, remote: Dict[str, Any]):
        """
        Raises:
            ImmutableViolation: An immutable property differs between the
                remote resource and `data`. The remote values are written
                back into `data` first.
        """
        remote_state = self.mapper.to_state(remote)
        violation = self._find_immutable_change(
            self.resource.schema_definition, remote_state, data.values
        )
        if violation is not None:
            data.values.update(remote_state)
            name, remote_value, local_value = violation
            raise ImmutableViolation(self.name, name, remote_value, local_value)

    def _find_immutable_change(
        self,
        definition: SchemaDefinition,
        remote: Dict[str, Any],
        local: Dict[str, Any],
        prefix: str = "",
    ):
        for prop in definition:
            name = prop.terraform_name
            local_value = local.get(name)
            remote_value = remote.get(name)
            if prop.immutable and local_value is not None:
                if _comparable(local_value) != _comparable(remote_value):
                    return f"{prefix}{name}", remote_value, local_value
            if (
                prop.nested is not None
                and isinstance(local_value, list)
                and isinstance(remote_value, list)
            ):
                items = enumerate(zip(local_value, remote_value))
                for index, (local_item, remote_item) in items:
                    if isinstance(local_item, dict) and isinstance(remote_item, dict):
                        found = self._find_immutable_change(
                            prop.nested,
                            remote_item,
                            local_item,
                            f"{prefix}{name}.{index}.",
                        )
                        if found is not None:
                            return found
        return None

    def update(
        self, data: ResourceData, cancel: Optional[threading.Event] = None
    ) -> ResourceData:
        """
        PUTs the desired values. Immutable properties are compared with the
        remote resource before anything is sent.
        """
        self._submit_metric(OP_UPDATE)
        if self.resource.put_op is None:
            raise UnsupportedOp(f"[resource='{self.name}'] does not support updates")
        self._validate(data.values)
        parent_ids = self.parent_ids(data)

        # 1. Refuse changes to immutable properties.
        remote = self._read_remote(data.id, parent_ids)
        self.check_immutable(data, remote)

        # 2. Send the request.
        payload = self.mapper.to_payload(data.values)
        response = self.client.put(self.resource, data.id, payload, parent_ids)
        url = self.client.resource_url(self.resource, parent_ids, data.id)
        check_status(response, EXPECTED_STATUS[OP_UPDATE], "PUT", url)
        self._update_state(data, response.json())

        # 3. Wait for asynchronous updates.
        final = self.wait_for_status(
            OP_UPDATE, response.status_code, data.id, parent_ids, cancel
        )
        if final is not None:
            self._update_state(data, final)
        return data

    def delete(
        self, data: ResourceData, cancel: Optional[threading.Event] = None
    ) -> ResourceData:
        """DELETEs the resource; a resource that is already gone counts as deleted."""
        self._submit_metric(OP_DELETE)
        if self.resource.delete_op is None:
            raise UnsupportedOp(f"[resource='{self.name}'] does not support delete")
        parent_ids = self.parent_ids(data)
        response = self.client.delete(self.resource, data.id, parent_ids)
        if response.status_code == 404:
            logger.info(
                "[resource='%s'] id '%s' was already deleted", self.name, data.id
            )
            data.mark_gone()
            return data
        url = self.client.resource_url(self.resource, parent_ids, data.id)
        check_status(response, EXPECTED_STATUS[OP_DELETE], "DELETE", url)
        self.wait_for_status(
            OP_DELETE, response.status_code, data.id, parent_ids, cancel
        )
        data.mark_gone()
        return data

    def import_state(self, import_id: str) -> ResourceData:
        """
        Builds state from an import identifier: the resource id for top-level
        resources, or '<parent ids>/<id>' joined with '/' for sub-resources.

        Raises:
            InvalidConfiguration: The number of ids does not match the
                resource's parents.
        """
        self._submit_metric("import")
        parent_names = self.resource.parent_property_names
        ids = import_id.split(IMPORT_ID_SEPARATOR) if parent_names else [import_id]
        if parent_names:
            if len(ids) == 1:
                raise InvalidConfiguration(
                    f"[resource='{self.name}'] can not import a sub-resource "
                    "without providing all the parent IDs, expected "
                    f"{len(parent_names)} parent IDs followed by the resource id: "
                    f"{import_id}"
                )
            if len(ids) != len(parent_names) + 1:
                raise InvalidConfiguration(
                    f"[resource='{self.name}'] the number of parent IDs provided "
                    f"{len(ids) - 1} is not equal to the number of parents "
                    f"{len(parent_names)}: {import_id}"
                )
        data = ResourceData(id=ids[-1])
        for name, value in zip(parent_names, ids[:-1]):
            data.set(name, value)
        return self._refresh(data)

    # --- Planning ---

    def plan(
        self, prior: Optional[ResourceData], desired: Optional[Dict[str, Any]]
    ) -> Plan:
        """
        Compares the prior state with the desired values. A change to a
        force-new field replaces the resource instead of updating it.
        """
        if desired is None:
            if prior is None or prior.id is None:
                return Plan(ACTION_NOOP)
            return Plan(ACTION_DELETE)
        if prior is None or prior.id is None:
            return Plan(
                ACTION_CREATE,
                sorted(name for name, value in desired.items() if value is not None),
            )

        changed = []
        force_new = False
        for prop in self.resource.schema_definition:
            name = prop.terraform_name
            if prop.read_only:
                continue
            value = desired.get(name)
            if value is None:
                continue
            if _differs(prop, value, prior.get(name)):
                changed.append(name)
                force_new = force_new or prop.force_new or prop.is_parent
        if not changed:
            return Plan(ACTION_NOOP)
        return Plan(ACTION_REPLACE if force_new else ACTION_UPDATE, changed)

    def apply(
        self,
        prior: Optional[ResourceData],
        desired: Optional[Dict[str, Any]],
        cancel: Optional[threading.Event] = None,
    ) -> Optional[ResourceData]:
        """
        Moves the resource to its desired values and returns the new state,
        or None once the resource is deleted.
        """
        # Step 1: Work out what needs to change.
        plan = self.plan(prior, desired)
        logger.info(
            "[resource='%s'] plan: %s %s", self.name, plan.action, plan.changed_fields
        )

        # Step 2: Execute it.
        if plan.action == ACTION_NOOP:
            return prior
        if plan.action == ACTION_DELETE:
            self.delete(prior, cancel)
            return None
        if plan.action == ACTION_CREATE:
            return self.create(ResourceData(values=dict(desired)), cancel)
        if plan.action == ACTION_REPLACE:
            self.delete(prior, cancel)
            return self.create(ResourceData(values=dict(desired)), cancel)

        data = ResourceData(id=prior.id, values={**prior.values, **desired})
        return self.update(data, cancel)
