"""Pydantic models for resource specs and tag policy with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Typed access for resource handlers instead of untyped dictionaries
"""

from __future__ import annotations

import re
from datetime import date
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .config import (
    MAX_OPERATION_TIMEOUT_SECONDS,
    MAX_TAG_KEY_LENGTH,
    MAX_TAG_VALUE_LENGTH,
    MAX_TAGS_PER_RESOURCE,
    ResourceTimeouts,
)

# /subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}
VALID_RESOURCE_ID_PATTERN = (
    r"^/subscriptions/[0-9a-fA-F-]{36}(/resourceGroups/[^/]+)?"
    r"/providers/[A-Za-z0-9.]+/[A-Za-z0-9]+/[^/]+(/[A-Za-z0-9]+/[^/]+)*$"
)
VALID_API_VERSION_PATTERN = r"^\d{4}-\d{2}-\d{2}(-preview)?$"
INVALID_TAG_KEY_CHARACTERS = frozenset("<>%&\\?/")

TimeoutSeconds = Annotated[int, Field(gt=0, le=MAX_OPERATION_TIMEOUT_SECONDS)]


def validate_tags(tags: dict[str, str]) -> dict[str, str]:
    """Apply ARM tag limits to a tag mapping."""
    if len(tags) > MAX_TAGS_PER_RESOURCE:
        raise ValueError(f"at most {MAX_TAGS_PER_RESOURCE} tags are allowed")
    for key, value in tags.items():
        if not key or len(key) > MAX_TAG_KEY_LENGTH:
            raise ValueError(f"tag key length must be 1-{MAX_TAG_KEY_LENGTH}: {key!r}")
        if INVALID_TAG_KEY_CHARACTERS.intersection(key):
            raise ValueError(f"tag key contains a forbidden character: {key!r}")
        if len(value) > MAX_TAG_VALUE_LENGTH:
            raise ValueError(f"tag value for {key!r} exceeds {MAX_TAG_VALUE_LENGTH} characters")
    return tags


class TimeoutsSpec(BaseModel):
    """Per-resource timeout overrides, in seconds."""

    model_config = {"extra": "forbid"}

    create: TimeoutSeconds | None = None
    read: TimeoutSeconds | None = None
    update: TimeoutSeconds | None = None
    delete: TimeoutSeconds | None = None

    def resolve(self, defaults: ResourceTimeouts) -> ResourceTimeouts:
        """Fill unset fields from the provider defaults."""
        return ResourceTimeouts(
            create=self.create or defaults.create,
            read=self.read or defaults.read,
            update=self.update or defaults.update,
            delete=self.delete or defaults.delete,
        )


class ResourceSpec(BaseModel):
    """Desired state of one ARM resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    resource_id: str = Field(alias="resourceId")
    api_version: str = Field(alias="apiVersion")
    location: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    timeouts: TimeoutsSpec = Field(default_factory=TimeoutsSpec)

    @field_validator("resource_id")
    @classmethod
    def validate_resource_id(cls, v: str) -> str:
        if not re.match(VALID_RESOURCE_ID_PATTERN, v):
            raise ValueError(f"resourceId is not a valid ARM resource ID: {v}")
        return v

    @field_validator("api_version", mode="before")
    @classmethod
    def validate_api_version(cls, v: Any) -> str:
        # Unquoted YAML dates such as 2023-01-01 load as datetime.date
        if isinstance(v, date):
            v = v.isoformat()
        if not isinstance(v, str) or not re.match(VALID_API_VERSION_PATTERN, v):
            raise ValueError(f"apiVersion must look like 2023-01-31: {v}")
        return v

    @field_validator("tags")
    @classmethod
    def validate_resource_tags(cls, v: dict[str, str]) -> dict[str, str]:
        return validate_tags(v)

    @property
    def resource_type(self) -> str:
        """Resource type, e.g. "Microsoft.Network/virtualNetworks"."""
        provider_portion = self.resource_id.split("/providers/")[-1]
        segments = provider_portion.split("/")
        # Nested types alternate type/name after the namespace
        return "/".join([segments[0], *segments[1::2]])

    @property
    def name(self) -> str:
        return self.resource_id.rsplit("/", 1)[-1]


class IgnoreTagsSpec(BaseModel):
    """Tag keys and prefixes the provider never manages."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    keys: list[str] = Field(default_factory=list)
    key_prefixes: list[str] = Field(default_factory=list, alias="keyPrefixes")

    @field_validator("keys", "key_prefixes")
    @classmethod
    def validate_not_blank(cls, v: list[str]) -> list[str]:
        if any(not item for item in v):
            raise ValueError("entries cannot be empty")
        return v


class TagPolicySpec(BaseModel):
    """Provider-wide tagging policy."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    default_tags: dict[str, str] = Field(default_factory=dict, alias="defaultTags")
    ignore_tags: IgnoreTagsSpec = Field(default_factory=IgnoreTagsSpec, alias="ignoreTags")

    @field_validator("default_tags")
    @classmethod
    def validate_default_tags(cls, v: dict[str, str]) -> dict[str, str]:
        return validate_tags(v)
