"""Tests for tag reconciliation."""

from __future__ import annotations

import logging

import pytest

from armsync.tags import (
    DefaultTagsConfig,
    IgnoreTagsConfig,
    TagApplyError,
    TagDiff,
    TagSet,
    apply_tag_diff,
    diff_tags,
    is_reserved_key,
    key_filter,
    prefix_filter,
    update_tags,
)


class RecordingTarget:
    """Remote tag store recording every mutating call."""

    def __init__(self, tags: dict[str, str], *, fail_on: str | None = None) -> None:
        self.tags = dict(tags)
        self.calls: list[tuple[str, object]] = []
        self._fail_on = fail_on

    def upsert(self, tags: TagSet) -> None:
        self.calls.append(("upsert", tags.to_dict()))
        if self._fail_on == "upsert":
            raise RuntimeError("upsert rejected")
        self.tags.update(tags)

    def delete(self, keys: list[str]) -> None:
        self.calls.append(("delete", keys))
        if self._fail_on == "delete":
            raise RuntimeError("delete rejected")
        for key in keys:
            del self.tags[key]


class TestTagSet:
    def test_none_values_become_empty_strings(self) -> None:
        assert TagSet({"env": None}) == {"env": ""}

    def test_non_string_values_rejected(self) -> None:
        with pytest.raises(TypeError):
            TagSet({"a": 1})
        with pytest.raises(TypeError):
            TagSet({1: "a"})

    def test_numeric_looking_values_compare_as_strings(self) -> None:
        assert TagSet({"a": "1"}) != {"a": 1}
        assert not diff_tags({"a": "1.0"}, {"a": "1"}).is_empty

    def test_equality_with_mappings(self) -> None:
        assert TagSet({"a": "1"}) == {"a": "1"}
        assert TagSet({"a": "1"}) != {"a": "2"}

    def test_merge_other_wins(self) -> None:
        assert TagSet({"a": "1", "b": "2"}).merge({"b": "3"}) == {"a": "1", "b": "3"}

    def test_removed_and_updated(self) -> None:
        old = TagSet({"a": "1", "b": "2"})
        new = {"a": "9", "c": "3"}
        assert old.removed(new) == {"b": "2"}
        assert old.updated(new) == {"a": "9", "c": "3"}

    def test_ignore_reserved(self) -> None:
        tags = TagSet({"hidden-title": "x", "link:rg": "y", "env": "prod"})
        assert tags.ignore_reserved() == {"env": "prod"}


class TestFilters:
    def test_prefix_filter(self) -> None:
        matches = prefix_filter("policy-", "aks-")
        assert matches("policy-owner")
        assert not matches("owner")

    def test_empty_prefix_filter_matches_nothing(self) -> None:
        assert not prefix_filter()("anything")

    def test_key_filter_is_exact(self) -> None:
        matches = key_filter("createdBy")
        assert matches("createdBy")
        assert not matches("createdby")

    def test_reserved_keys(self) -> None:
        assert is_reserved_key("hidden-related:/subscriptions/x")
        assert is_reserved_key("ms-resource-usage")
        assert not is_reserved_key("Hidden-title")


class TestDiffTags:
    """Tests for diff_tags()."""

    def test_partitions(self) -> None:
        diff = diff_tags({"a": "1", "b": "2"}, {"a": "1", "c": "3"})

        assert diff.to_create == {"c": "3"}
        assert diff.to_update == {}
        assert diff.to_delete == frozenset({"b"})

    def test_changed_value_is_update(self) -> None:
        diff = diff_tags({"env": "dev"}, {"env": "prod"})

        assert diff.to_create == {}
        assert diff.to_update == {"env": "prod"}
        assert not diff.to_delete

    def test_identical_tags_give_empty_diff(self) -> None:
        assert diff_tags({"a": "1"}, {"a": "1"}).is_empty

    def test_comparison_is_exact(self) -> None:
        diff = diff_tags({"Env": "Prod"}, {"env": "Prod ", "Env": "prod"})

        assert diff.to_create == {"env": "Prod "}
        assert diff.to_update == {"Env": "prod"}

    def test_empty_value_differs_from_missing(self) -> None:
        diff = diff_tags({}, {"flag": ""})
        assert diff.to_create == {"flag": ""}

    def test_reserved_keys_never_diffed(self) -> None:
        diff = diff_tags({"hidden-title": "x"}, {"link:rg": "y"})
        assert diff.is_empty

    def test_ignored_keys_never_diffed(self) -> None:
        ignore = IgnoreTagsConfig(keys=frozenset({"createdBy"}), key_prefixes=("policy-",))

        diff = diff_tags(
            {"createdBy": "alice", "policy-owner": "x", "env": "dev"},
            {"createdBy": "bob", "env": "dev"},
            ignore.predicates(),
        )

        assert diff.is_empty

    def test_partitions_are_disjoint(self) -> None:
        diff = diff_tags({"a": "1", "b": "2", "c": "3"}, {"a": "9", "c": "3", "d": "4"})

        create, update = set(diff.to_create), set(diff.to_update)
        assert not create & update
        assert not create & diff.to_delete
        assert not update & diff.to_delete


class TestApplyTagDiff:
    """Tests for apply_tag_diff() and update_tags()."""

    def test_converges(self) -> None:
        target = RecordingTarget({"a": "1", "b": "2", "d": "old"})
        desired = {"a": "1", "c": "3", "d": "new"}

        update_tags(target.tags, desired, target.upsert, target.delete)

        assert target.tags == desired
        assert diff_tags(target.tags, desired).is_empty

    def test_delete_first_then_one_batched_upsert(self) -> None:
        target = RecordingTarget({"b": "2", "a": "0", "z": "9"})

        update_tags(target.tags, {"a": "1", "c": "3"}, target.upsert, target.delete)

        assert target.calls == [
            ("delete", ["b", "z"]),
            ("upsert", {"a": "1", "c": "3"}),
        ]

    def test_empty_diff_makes_no_calls(self) -> None:
        target = RecordingTarget({"a": "1"})

        diff = update_tags(target.tags, {"a": "1"}, target.upsert, target.delete)

        assert diff.is_empty
        assert target.calls == []

    def test_only_deletes(self) -> None:
        target = RecordingTarget({"a": "1"})

        update_tags(target.tags, {}, target.upsert, target.delete)

        assert target.calls == [("delete", ["a"])]

    def test_failed_delete_aborts_upsert(self) -> None:
        target = RecordingTarget({"a": "1"}, fail_on="delete")
        diff = diff_tags(target.tags, {"b": "2"})

        with pytest.raises(TagApplyError) as exc_info:
            apply_tag_diff(diff, target.upsert, target.delete)

        assert exc_info.value.phase == "delete"
        assert exc_info.value.diff is diff
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert [name for name, _ in target.calls] == ["delete"]

    def test_failed_upsert(self) -> None:
        target = RecordingTarget({}, fail_on="upsert")

        with pytest.raises(TagApplyError) as exc_info:
            apply_tag_diff(TagDiff(to_create=TagSet({"a": "1"})), target.upsert, target.delete)

        assert exc_info.value.phase == "upsert"
        assert "upsert tags failed: upsert rejected" in str(exc_info.value)

    def test_logs_counts(self, caplog: pytest.LogCaptureFixture) -> None:
        target = RecordingTarget({"a": "1"})

        with caplog.at_level(logging.INFO, logger="armsync.tags"):
            update_tags(target.tags, {"b": "2"}, target.upsert, target.delete)

        record = next(r for r in caplog.records if r.getMessage() == "Reconciling tags")
        assert record.create_count == 1
        assert record.delete_count == 1


class TestDefaultTagsConfig:
    def test_resource_tags_win(self) -> None:
        defaults = DefaultTagsConfig(TagSet({"owner": "platform", "env": "dev"}))

        assert defaults.merge_tags({"env": "prod"}) == {"owner": "platform", "env": "prod"}

    def test_remove_default_config_keeps_overrides(self) -> None:
        defaults = DefaultTagsConfig(TagSet({"owner": "platform", "env": "dev"}))

        visible = defaults.remove_default_config({"owner": "platform", "env": "prod", "app": "x"})

        assert visible == {"env": "prod", "app": "x"}
