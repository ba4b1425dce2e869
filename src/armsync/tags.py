"""Tag reconciliation between remote and desired key/value tags.

Computes the minimal set of mutating calls that converges the tags on a
remote resource to the desired tags, and applies them.

FILTERING:
- Platform-reserved keys (RESERVED_TAG_KEY_PREFIXES) never take part in a diff
- Explicitly ignored keys and key prefixes (IgnoreTagsConfig) are left alone
- Provider default tags are merged into desired tags and hidden from the
  user-facing view of remote tags

Key and value comparison is exact: no case folding, trimming or numeric
coercion is applied anywhere in this module.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Keys Azure and its services write on resources themselves
RESERVED_TAG_KEY_PREFIXES: tuple[str, ...] = ("hidden-", "link:", "ms-resource-usage")

TagFilter = Callable[[str], bool]


class TagApplyError(Exception):
    """Raised when one of the mutating tag calls fails.

    Attributes:
        phase: "delete" or "upsert", the sub-call that failed.
        diff: The diff that was being applied. Sub-calls after ``phase`` were
              not attempted; re-running the diff against remote state yields
              the remaining work.
    """

    def __init__(self, phase: str, diff: TagDiff, cause: Exception) -> None:
        super().__init__(f"{phase} tags failed: {cause}")
        self.phase = phase
        self.diff = diff
        self.cause = cause


def prefix_filter(*prefixes: str) -> TagFilter:
    """Build a predicate matching keys that start with any of ``prefixes``."""
    frozen = tuple(prefixes)

    def _matches(key: str) -> bool:
        return bool(frozen) and key.startswith(frozen)

    return _matches


def key_filter(*keys: str) -> TagFilter:
    """Build a predicate matching exactly the listed keys."""
    frozen = frozenset(keys)

    def _matches(key: str) -> bool:
        return key in frozen

    return _matches


is_reserved_key: TagFilter = prefix_filter(*RESERVED_TAG_KEY_PREFIXES)


class TagSet(Mapping[str, str]):
    """Immutable mapping of tag key to tag value.

    ``None`` values coming from SDK models are stored as empty strings, since
    ARM returns tags without a value that way. Any other non-string key or
    value raises TypeError: tags compare as exact strings, so ``1`` and
    ``"1"`` must not be conflated.
    """

    __slots__ = ("_tags",)

    def __init__(self, tags: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None) -> None:
        self._tags: dict[str, str] = {}
        for key, value in dict(tags or {}).items():
            if value is None:
                value = ""
            if not isinstance(key, str) or not isinstance(value, str):
                raise TypeError(f"tag {key!r} must map a string to a string, got {value!r}")
            self._tags[key] = value

    def __getitem__(self, key: str) -> str:
        return self._tags[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tags)

    def __len__(self) -> int:
        return len(self._tags)

    def __repr__(self) -> str:
        return f"TagSet({self._tags!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return self._tags == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._tags.items()))

    def to_dict(self) -> dict[str, str]:
        return dict(self._tags)

    def ignore(self, filters: Iterable[TagFilter]) -> TagSet:
        """Return a copy without keys matching any of ``filters``."""
        predicates = list(filters)
        return TagSet(
            (k, v) for k, v in self._tags.items() if not any(p(k) for p in predicates)
        )

    def ignore_reserved(self) -> TagSet:
        return self.ignore([is_reserved_key])

    def ignore_config(self, config: IgnoreTagsConfig | None) -> TagSet:
        if config is None:
            return self
        return self.ignore(config.predicates())

    def merge(self, other: Mapping[str, str]) -> TagSet:
        """Return a copy updated with ``other``; ``other`` wins on conflict."""
        return TagSet({**self._tags, **dict(other)})

    def removed(self, new: Mapping[str, str]) -> TagSet:
        """Tags present here but absent from ``new``."""
        return TagSet((k, v) for k, v in self._tags.items() if k not in new)

    def updated(self, new: Mapping[str, str]) -> TagSet:
        """Tags of ``new`` that are missing here or carry another value."""
        return TagSet((k, v) for k, v in new.items() if self._tags.get(k) != v)


@dataclass(frozen=True)
class IgnoreTagsConfig:
    """Tag keys the provider never manages, e.g. keys written by policy."""

    keys: frozenset[str] = frozenset()
    key_prefixes: tuple[str, ...] = ()

    def predicates(self) -> list[TagFilter]:
        predicates: list[TagFilter] = []
        if self.keys:
            predicates.append(key_filter(*self.keys))
        if self.key_prefixes:
            predicates.append(prefix_filter(*self.key_prefixes))
        return predicates


@dataclass(frozen=True)
class DefaultTagsConfig:
    """Tags the provider adds to every resource it manages."""

    tags: TagSet = field(default_factory=TagSet)

    def merge_tags(self, resource_tags: Mapping[str, str]) -> TagSet:
        """Merge defaults with resource tags; resource tags win on conflict."""
        return self.tags.merge(resource_tags)

    def remove_default_config(self, tags: Mapping[str, str]) -> TagSet:
        """Drop tags whose key and value both match a default tag.

        A default key overridden with another value at the resource level is
        kept, since it is then managed by the resource.
        """
        return TagSet((k, v) for k, v in tags.items() if self.tags.get(k) != v)


@dataclass(frozen=True)
class TagDiff:
    """Create/update/delete partitions of a tag reconciliation."""

    to_create: TagSet = field(default_factory=TagSet)
    to_update: TagSet = field(default_factory=TagSet)
    to_delete: frozenset[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    @property
    def upserts(self) -> TagSet:
        """Create and update entries in one mapping, for batched calls."""
        return self.to_create.merge(self.to_update)


def diff_tags(
    existing: Mapping[str, str],
    desired: Mapping[str, str],
    ignore_filters: Iterable[TagFilter] = (),
) -> TagDiff:
    """Compute the operations converging ``existing`` tags to ``desired``.

    Keys matching a reserved prefix or any of ``ignore_filters`` are removed
    from both sides first and so appear in no partition.

    Args:
        existing: Tags currently on the remote resource.
        desired: Tags the resource should carry.
        ignore_filters: Predicates over tag keys to leave untouched.

    Returns:
        TagDiff whose partitions are mutually exclusive.
    """
    filters = [is_reserved_key, *ignore_filters]
    current = TagSet(existing).ignore(filters)
    wanted = TagSet(desired).ignore(filters)

    to_create = TagSet((k, v) for k, v in wanted.items() if k not in current)
    to_update = TagSet(
        (k, v) for k, v in wanted.items() if k in current and current[k] != v
    )
    to_delete = frozenset(k for k in current if k not in wanted)

    return TagDiff(to_create=to_create, to_update=to_update, to_delete=to_delete)


def apply_tag_diff(
    diff: TagDiff,
    upsert_fn: Callable[[TagSet], None],
    delete_fn: Callable[[list[str]], None],
) -> None:
    """Apply a tag diff with at most two mutating calls.

    Removed keys are deleted first so the resource never exceeds the ARM tag
    count limit mid-way. Created and updated tags then go out as one batched
    call. Empty sub-calls are skipped.

    Raises:
        TagApplyError: The first failing sub-call; the next one is not made.
    """
    if diff.to_delete:
        keys = sorted(diff.to_delete)
        try:
            delete_fn(keys)
        except Exception as e:
            raise TagApplyError("delete", diff, e) from e
        logger.debug("Deleted tags", extra={"tag_keys": keys})

    upserts = diff.upserts
    if upserts:
        try:
            upsert_fn(upserts)
        except Exception as e:
            raise TagApplyError("upsert", diff, e) from e
        logger.debug("Upserted tags", extra={"tag_keys": sorted(upserts)})


def update_tags(
    existing: Mapping[str, str],
    desired: Mapping[str, str],
    upsert_fn: Callable[[TagSet], None],
    delete_fn: Callable[[list[str]], None],
    ignore_filters: Iterable[TagFilter] = (),
) -> TagDiff:
    """Diff ``existing`` against ``desired`` and apply the result."""
    diff = diff_tags(existing, desired, ignore_filters)
    if diff.is_empty:
        return diff

    logger.info(
        "Reconciling tags",
        extra={
            "create_count": len(diff.to_create),
            "update_count": len(diff.to_update),
            "delete_count": len(diff.to_delete),
        },
    )
    apply_tag_diff(diff, upsert_fn, delete_fn)
    return diff
