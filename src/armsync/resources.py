"""Lifecycle handler for generic ARM resources.

Every mutating call is sent without SDK-side long-running-operation polling
(``polling=False``). Convergence is awaited through StatusPoller on the
resource's ``properties.provisioningState`` instead, so every operation gets
the same timeout, backoff and cancellation semantics.

The SDK pipeline's RetryPolicy already repeats throttled (429) and transient
5xx requests, so refresh functions here only translate results into
PollOutcome values.

The ARM client is injected; nothing in this module creates one.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    GenericResource,
    Tags,
    TagsPatchOperation,
    TagsPatchResource,
)

from .config import PollSettings, ProviderConfig
from .models import ResourceSpec
from .retry import retry_when_not_found
from .tags import TagApplyError, TagDiff, TagSet, diff_tags, update_tags
from .waiter import (
    PollOutcome,
    Refresh,
    StateChangeConf,
    StateChangeError,
    StatusPoller,
    WaitTimeoutError,
    set_last_error,
)

logger = logging.getLogger(__name__)

PROVISIONING_STATE_SUCCEEDED = "Succeeded"
PENDING_PROVISIONING_STATES = frozenset(
    {"Accepted", "Creating", "Updating", "Provisioning", "Running"}
)
# A resource keeps reporting its last state until the delete is picked up
PENDING_DELETE_STATES = frozenset({"Deleting", "Accepted", "Succeeded"})


class EmptyResultError(Exception):
    """ARM answered a read with an empty body."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"empty result reading {resource_id}")
        self.resource_id = resource_id


class ReadTimeoutError(TimeoutError):
    """A read got no answer within the read timeout."""

    def __init__(self, resource_id: str, timeout: float) -> None:
        super().__init__(f"no response reading {resource_id} within {timeout:g}s")
        self.resource_id = resource_id
        self.timeout = timeout


class ResourceOperationError(Exception):
    """A lifecycle operation failed; the cause is chained."""

    def __init__(self, action: str, resource_id: str, cause: BaseException) -> None:
        super().__init__(f"{action} ARM resource ({resource_id}): {cause}")
        self.action = action
        self.resource_id = resource_id
        self.cause = cause


@dataclass
class ResourceState:
    """Observed state of a resource, as reported back to the caller.

    ``tags_all`` holds every managed remote tag. ``tags`` hides the tags that
    only exist because of the provider default tags.
    """

    resource_id: str
    location: str | None
    provisioning_state: str
    properties: dict[str, Any] = field(default_factory=dict)
    tags: TagSet = field(default_factory=TagSet)
    tags_all: TagSet = field(default_factory=TagSet)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceId": self.resource_id,
            "location": self.location,
            "provisioningState": self.provisioning_state,
            "properties": self.properties,
            "tags": self.tags.to_dict(),
            "tagsAll": self.tags_all.to_dict(),
        }


def find_resource(
    client: ResourceManagementClient,
    resource_id: str,
    api_version: str,
) -> GenericResource:
    """Read a resource.

    Raises:
        ResourceNotFoundError: The resource does not exist.
        EmptyResultError: ARM returned no body.
    """
    resource = client.resources.get_by_id(resource_id, api_version)
    if resource is None:
        raise EmptyResultError(resource_id)
    return resource


def provisioning_state(resource: Any) -> str:
    """Provisioning state of a resource; resources without one are settled."""
    properties = getattr(resource, "properties", None) or {}
    return str(properties.get("provisioningState") or PROVISIONING_STATE_SUCCEEDED)


def status_message(resource: Any) -> str | None:
    """Best-effort human readable reason for the current provisioning state."""
    properties = getattr(resource, "properties", None) or {}
    message = properties.get("statusMessage")
    if message:
        return str(message)
    error = properties.get("error")
    if isinstance(error, Mapping) and error.get("message"):
        return str(error["message"])
    return None


def status_provisioning_state(
    client: ResourceManagementClient,
    resource_id: str,
    api_version: str,
) -> Refresh:
    """Build the refresh function reporting a resource's provisioning state."""

    async def refresh() -> PollOutcome:
        loop = asyncio.get_event_loop()
        try:
            resource = await loop.run_in_executor(
                None, find_resource, client, resource_id, api_version
            )
        except ResourceNotFoundError:
            return PollOutcome.absent()
        except (AzureError, EmptyResultError) as e:
            return PollOutcome.failed(e)
        return PollOutcome(value=resource, status=provisioning_state(resource))

    return refresh


async def _wait(conf: StateChangeConf, poller: StatusPoller, cancel: asyncio.Event | None) -> Any:
    try:
        return await poller.wait(conf, cancel=cancel)
    except StateChangeError as e:
        set_last_error(e, status_message(e.last_value))
        raise


async def wait_resource_succeeded(
    client: ResourceManagementClient,
    resource_id: str,
    api_version: str,
    *,
    timeout: float,
    poll: PollSettings,
    poller: StatusPoller | None = None,
    cancel: asyncio.Event | None = None,
) -> GenericResource:
    """Wait until the resource reports provisioning state Succeeded."""
    conf = StateChangeConf(
        pending=PENDING_PROVISIONING_STATES,
        target={PROVISIONING_STATE_SUCCEEDED},
        refresh=status_provisioning_state(client, resource_id, api_version),
        timeout=timeout,
        min_delay=poll.min_delay_seconds,
        max_delay=poll.max_delay_seconds,
        backoff_factor=poll.backoff_factor,
        not_found_checks=poll.not_found_checks,
        description=resource_id,
    )
    return await _wait(conf, poller or StatusPoller(), cancel)


async def wait_resource_deleted(
    client: ResourceManagementClient,
    resource_id: str,
    api_version: str,
    *,
    timeout: float,
    poll: PollSettings,
    poller: StatusPoller | None = None,
    cancel: asyncio.Event | None = None,
) -> None:
    """Wait until reads of the resource return not found."""
    conf = StateChangeConf(
        pending=PENDING_DELETE_STATES,
        target=frozenset(),
        refresh=status_provisioning_state(client, resource_id, api_version),
        timeout=timeout,
        min_delay=poll.min_delay_seconds,
        max_delay=poll.max_delay_seconds,
        backoff_factor=poll.backoff_factor,
        description=resource_id,
    )
    await _wait(conf, poller or StatusPoller(), cancel)


def _remaining(timeout: float, start: float) -> float:
    """Budget left of ``timeout`` since ``start``; raises once it is spent."""
    remaining = timeout - (time.monotonic() - start)
    if remaining <= 0:
        raise WaitTimeoutError(timeout)
    return remaining


def _properties_drifted(desired: Mapping[str, Any], actual: Mapping[str, Any]) -> bool:
    # Only properties set in the spec are managed; ARM adds read-only ones
    return any(actual.get(key) != value for key, value in desired.items())


class ResourceHandler:
    """Create, read, update and delete one kind of ARM resource.

    Usage:
        handler = ResourceHandler(client, ProviderConfig.from_env())
        state = await handler.create(spec)
        state = await handler.update(spec, state)
        await handler.delete(spec)
    """

    def __init__(
        self,
        client: ResourceManagementClient,
        config: ProviderConfig,
        *,
        poller: StatusPoller | None = None,
    ) -> None:
        self._client = client
        self._config = config
        self._poller = poller or StatusPoller()
        self._default_tags = config.default_tags_config()
        self._ignore_tags = config.ignore_tags_config()

    async def _run(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def desired_tags(self, spec: ResourceSpec) -> TagSet:
        """Tags the resource should carry: default tags, then its own tags."""
        return self._default_tags.merge_tags(spec.tags).ignore_reserved()

    def plan_tags(self, spec: ResourceSpec, state: ResourceState) -> TagDiff:
        """Tag changes an update of ``state`` to ``spec`` would make."""
        return diff_tags(state.tags_all, self.desired_tags(spec), self._ignore_tags.predicates())

    def _to_state(self, resource: GenericResource) -> ResourceState:
        tags_all = TagSet(resource.tags).ignore_reserved().ignore_config(self._ignore_tags)
        return ResourceState(
            resource_id=resource.id,
            location=resource.location,
            provisioning_state=provisioning_state(resource),
            properties=dict(resource.properties or {}),
            tags=self._default_tags.remove_default_config(tags_all),
            tags_all=tags_all,
        )

    async def _get_state(self, spec: ResourceSpec) -> ResourceState:
        """Read the resource within its read timeout."""
        timeout = spec.timeouts.resolve(self._config.timeouts).read
        try:
            resource = await asyncio.wait_for(
                self._run(find_resource, self._client, spec.resource_id, spec.api_version),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise ReadTimeoutError(spec.resource_id, timeout) from e
        return self._to_state(resource)

    async def create(
        self,
        spec: ResourceSpec,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ResourceState:
        """Create the resource and wait for it to be provisioned.

        The create timeout covers the PUT, the provisioning wait and the
        eventually consistent read that follows it.
        """
        timeouts = spec.timeouts.resolve(self._config.timeouts)
        start = time.monotonic()
        body = GenericResource(
            location=spec.location,
            properties=spec.properties,
            tags=self.desired_tags(spec).to_dict(),
        )

        logger.info(
            "Creating ARM resource",
            extra={"resource_id": spec.resource_id, "timeout_seconds": timeouts.create},
        )
        try:
            await self._run(
                self._client.resources.begin_create_or_update_by_id,
                spec.resource_id,
                spec.api_version,
                body,
                polling=False,
            )
            await wait_resource_succeeded(
                self._client,
                spec.resource_id,
                spec.api_version,
                timeout=_remaining(timeouts.create, start),
                poll=self._config.poll,
                poller=self._poller,
                cancel=cancel,
            )
            return await retry_when_not_found(
                lambda: self._get_state(spec),
                timeout=_remaining(timeouts.create, start),
                min_delay=self._config.poll.min_delay_seconds,
                max_delay=self._config.poll.max_delay_seconds,
                cancel=cancel,
                poller=self._poller,
            )
        except (AzureError, EmptyResultError, ReadTimeoutError, StateChangeError) as e:
            raise ResourceOperationError("creating", spec.resource_id, e) from e

    async def read(self, spec: ResourceSpec) -> ResourceState | None:
        """Read the resource; None when it no longer exists."""
        try:
            return await self._get_state(spec)
        except ResourceNotFoundError:
            logger.warning(
                "ARM resource not found, removing from state",
                extra={"resource_id": spec.resource_id},
            )
            return None
        except (AzureError, EmptyResultError, ReadTimeoutError) as e:
            raise ResourceOperationError("reading", spec.resource_id, e) from e

    async def update(
        self,
        spec: ResourceSpec,
        prior: ResourceState | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ResourceState:
        """Converge properties and tags of an existing resource.

        Args:
            spec: Desired state.
            prior: Last observed state; read from ARM when omitted.
            cancel: Set by the caller to abandon the provisioning wait.
        """
        timeouts = spec.timeouts.resolve(self._config.timeouts)
        start = time.monotonic()

        try:
            if prior is None:
                prior = await self._get_state(spec)

            if _properties_drifted(spec.properties, prior.properties):
                logger.info(
                    "Updating ARM resource",
                    extra={"resource_id": spec.resource_id, "timeout_seconds": timeouts.update},
                )
                await self._run(
                    self._client.resources.begin_update_by_id,
                    spec.resource_id,
                    spec.api_version,
                    GenericResource(properties=spec.properties),
                    polling=False,
                )
                await wait_resource_succeeded(
                    self._client,
                    spec.resource_id,
                    spec.api_version,
                    timeout=_remaining(timeouts.update, start),
                    poll=self._config.poll,
                    poller=self._poller,
                    cancel=cancel,
                )

            await self.update_tags(spec.resource_id, prior.tags_all, self.desired_tags(spec))
            return await self._get_state(spec)
        except (
            AzureError,
            EmptyResultError,
            ReadTimeoutError,
            StateChangeError,
            TagApplyError,
        ) as e:
            raise ResourceOperationError("updating", spec.resource_id, e) from e

    async def delete(
        self,
        spec: ResourceSpec,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Delete the resource and wait until it is gone. Missing is success."""
        timeouts = spec.timeouts.resolve(self._config.timeouts)
        start = time.monotonic()

        logger.info("Deleting ARM resource", extra={"resource_id": spec.resource_id})
        try:
            await self._run(
                self._client.resources.begin_delete_by_id,
                spec.resource_id,
                spec.api_version,
                polling=False,
            )
        except ResourceNotFoundError:
            return
        except AzureError as e:
            raise ResourceOperationError("deleting", spec.resource_id, e) from e

        try:
            await wait_resource_deleted(
                self._client,
                spec.resource_id,
                spec.api_version,
                timeout=_remaining(timeouts.delete, start),
                poll=self._config.poll,
                poller=self._poller,
                cancel=cancel,
            )
        except StateChangeError as e:
            raise ResourceOperationError("deleting", spec.resource_id, e) from e

    async def update_tags(
        self,
        scope: str,
        old: Mapping[str, str],
        new: Mapping[str, str],
    ) -> TagDiff:
        """Converge the tags at ``scope`` from ``old`` to ``new``.

        Upserts go out as one Merge patch, removals as one Delete patch.
        """
        old_tags = TagSet(old)

        def upsert(tags: TagSet) -> None:
            self._client.tags.begin_update_at_scope(
                scope,
                TagsPatchResource(
                    operation=TagsPatchOperation.MERGE,
                    properties=Tags(tags=tags.to_dict()),
                ),
            ).result()

        def delete(keys: list[str]) -> None:
            self._client.tags.begin_update_at_scope(
                scope,
                TagsPatchResource(
                    operation=TagsPatchOperation.DELETE,
                    properties=Tags(tags={key: old_tags[key] for key in keys}),
                ),
            ).result()

        return await self._run(
            update_tags,
            old_tags,
            new,
            upsert,
            delete,
            self._ignore_tags.predicates(),
        )
