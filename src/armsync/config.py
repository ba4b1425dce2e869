"""Provider configuration with validation.

Timeouts and polling bounds live here, not in the engine: the wait engine
only ever receives them as arguments from a resource handler.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .tags import RESERVED_TAG_KEY_PREFIXES, DefaultTagsConfig, IgnoreTagsConfig, TagSet


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Resource-definition timeouts (seconds)
DEFAULT_CREATE_TIMEOUT_SECONDS = 600
DEFAULT_READ_TIMEOUT_SECONDS = 300
DEFAULT_UPDATE_TIMEOUT_SECONDS = 3600
DEFAULT_DELETE_TIMEOUT_SECONDS = 1200
MAX_OPERATION_TIMEOUT_SECONDS = 24 * 3600

# Poll backoff bounds
DEFAULT_POLL_MIN_DELAY_SECONDS = 1.0
DEFAULT_POLL_MAX_DELAY_SECONDS = 30.0
DEFAULT_POLL_BACKOFF_FACTOR = 2.0
DEFAULT_NOT_FOUND_CHECKS = 20

# Spec file limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file

# ARM limits
MAX_TAGS_PER_RESOURCE = 50
MAX_TAG_KEY_LENGTH = 512
MAX_TAG_VALUE_LENGTH = 256

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class ResourceTimeouts:
    """Per-operation timeouts of a resource definition, in seconds."""

    create: int = DEFAULT_CREATE_TIMEOUT_SECONDS
    read: int = DEFAULT_READ_TIMEOUT_SECONDS
    update: int = DEFAULT_UPDATE_TIMEOUT_SECONDS
    delete: int = DEFAULT_DELETE_TIMEOUT_SECONDS

    def validate(self) -> list[str]:
        errors: list[str] = []
        for name in ("create", "read", "update", "delete"):
            value = getattr(self, name)
            if not 0 < value <= MAX_OPERATION_TIMEOUT_SECONDS:
                errors.append(
                    f"{name.upper()}_TIMEOUT must be between 1 and "
                    f"{MAX_OPERATION_TIMEOUT_SECONDS} seconds: {value}"
                )
        return errors


@dataclass(frozen=True)
class PollSettings:
    """Backoff bounds handed to every wait a handler performs."""

    min_delay_seconds: float = DEFAULT_POLL_MIN_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_POLL_MAX_DELAY_SECONDS
    backoff_factor: float = DEFAULT_POLL_BACKOFF_FACTOR
    not_found_checks: int = DEFAULT_NOT_FOUND_CHECKS

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.min_delay_seconds <= 0:
            errors.append("POLL_MIN_DELAY must be positive")
        if self.max_delay_seconds < self.min_delay_seconds:
            errors.append("POLL_MAX_DELAY must not be lower than POLL_MIN_DELAY")
        if self.backoff_factor < 1:
            errors.append("POLL_BACKOFF_FACTOR must be at least 1")
        if self.not_found_checks < 0:
            errors.append("NOT_FOUND_CHECKS must not be negative")
        return errors


@dataclass(frozen=True)
class ProviderConfig:
    """Provider configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-operation.
    """

    subscription_id: str

    # Tagging
    default_tags: dict[str, str] = field(default_factory=dict)
    ignore_tag_keys: tuple[str, ...] = ()
    ignore_tag_key_prefixes: tuple[str, ...] = ()

    # Timing
    timeouts: ResourceTimeouts = field(default_factory=ResourceTimeouts)
    poll: PollSettings = field(default_factory=PollSettings)

    tag_policy_file: Path | None = None

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        errors.extend(self.timeouts.validate())
        errors.extend(self.poll.validate())

        if len(self.default_tags) > MAX_TAGS_PER_RESOURCE:
            errors.append(f"DEFAULT_TAGS cannot hold more than {MAX_TAGS_PER_RESOURCE} tags")
        for key, value in self.default_tags.items():
            if not key or len(key) > MAX_TAG_KEY_LENGTH:
                errors.append(f"DEFAULT_TAGS key length must be 1-{MAX_TAG_KEY_LENGTH}: {key!r}")
            if len(value) > MAX_TAG_VALUE_LENGTH:
                errors.append(f"DEFAULT_TAGS value for {key!r} exceeds {MAX_TAG_VALUE_LENGTH}")
            if key.startswith(RESERVED_TAG_KEY_PREFIXES):
                errors.append(f"DEFAULT_TAGS key uses a reserved prefix: {key!r}")

        if self.tag_policy_file is not None and not self.tag_policy_file.exists():
            errors.append(f"Tag policy file does not exist: {self.tag_policy_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def default_tags_config(self) -> DefaultTagsConfig:
        return DefaultTagsConfig(TagSet(self.default_tags))

    def ignore_tags_config(self) -> IgnoreTagsConfig:
        return IgnoreTagsConfig(
            keys=frozenset(self.ignore_tag_keys),
            key_prefixes=tuple(self.ignore_tag_key_prefixes),
        )

    @classmethod
    def from_env(cls) -> ProviderConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            DEFAULT_TAGS: Tags applied to every resource ("team=core,env=prod")
            IGNORE_TAG_KEYS: Comma separated tag keys never managed
            IGNORE_TAG_KEY_PREFIXES: Comma separated tag key prefixes never managed
            CREATE_TIMEOUT / READ_TIMEOUT / UPDATE_TIMEOUT / DELETE_TIMEOUT: Seconds
            POLL_MIN_DELAY / POLL_MAX_DELAY: Poll backoff bounds in seconds
            POLL_BACKOFF_FACTOR: Delay multiplier between polls (default: 2)
            NOT_FOUND_CHECKS: Absent observations tolerated while waiting (default: 20)
            TAG_POLICY_FILE: YAML tag policy; its values extend the variables above
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        def get_tags(key: str) -> dict[str, str]:
            tags: dict[str, str] = {}
            for item in get_list(key):
                name, sep, value = item.partition("=")
                if not sep or not name.strip():
                    raise ConfigurationError(f"{key} entries must be key=value: {item}")
                tags[name.strip()] = value.strip()
            return tags

        default_tags = get_tags("DEFAULT_TAGS")
        ignore_keys = get_list("IGNORE_TAG_KEYS")
        ignore_prefixes = get_list("IGNORE_TAG_KEY_PREFIXES")

        policy_path = os.environ.get("TAG_POLICY_FILE")
        tag_policy_file = Path(policy_path) if policy_path else None
        if tag_policy_file is not None and tag_policy_file.exists():
            # Imported here: spec_loader depends on this module's constants
            from .spec_loader import SpecLoadError, load_tag_policy

            try:
                policy = load_tag_policy(tag_policy_file)
            except SpecLoadError as e:
                raise ConfigurationError(f"TAG_POLICY_FILE is invalid: {e}") from e
            default_tags = {**policy.default_tags, **default_tags}
            ignore_keys = tuple(dict.fromkeys((*policy.ignore_tags.keys, *ignore_keys)))
            ignore_prefixes = tuple(
                dict.fromkeys((*policy.ignore_tags.key_prefixes, *ignore_prefixes))
            )

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            default_tags=default_tags,
            ignore_tag_keys=ignore_keys,
            ignore_tag_key_prefixes=ignore_prefixes,
            timeouts=ResourceTimeouts(
                create=get_int("CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
                read=get_int("READ_TIMEOUT", DEFAULT_READ_TIMEOUT_SECONDS),
                update=get_int("UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
                delete=get_int("DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            ),
            poll=PollSettings(
                min_delay_seconds=get_float("POLL_MIN_DELAY", DEFAULT_POLL_MIN_DELAY_SECONDS),
                max_delay_seconds=get_float("POLL_MAX_DELAY", DEFAULT_POLL_MAX_DELAY_SECONDS),
                backoff_factor=get_float("POLL_BACKOFF_FACTOR", DEFAULT_POLL_BACKOFF_FACTOR),
                not_found_checks=get_int("NOT_FOUND_CHECKS", DEFAULT_NOT_FOUND_CHECKS),
            ),
            tag_policy_file=tag_policy_file,
        )
