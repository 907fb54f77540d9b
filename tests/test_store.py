"""Unit tests for the SQLite rule store."""

from __future__ import annotations

import pytest

from ruleimport.errors import StoreWriteError
from ruleimport.models import BLOCK_TARGET, RecordType, Rule, StagingMarker


def _rule(host: str, source_id: int | None, staging=StagingMarker.STAGED_NEW) -> Rule:
    return Rule(host, RecordType.ANY, BLOCK_TARGET, BLOCK_TARGET, source_id, staging=staging)


def _hosts(store, **filters) -> list[str]:
    return sorted(r.host for r in store.list_rules(**filters))


def test_add_and_update_source(store) -> None:
    source = store.add_source("ads", "https://lists.example.org/ads.txt")
    source.revision_tag = "<qt>v1<qt>"
    source.rule_count = 12

    store.update_source(source)

    loaded = store.get_source(source.id)
    assert loaded == source
    assert not loaded.is_file_source


def test_record_import_state_only_touches_tag_and_count(store) -> None:
    source = store.add_source("ads", "https://lists.example.org/ads.txt")
    renamed = store.get_source(source.id)
    renamed.name = "renamed"
    renamed.enabled = False
    store.update_source(renamed)

    store.record_import_state(source.id, "<qt>v2<qt>", 7)

    loaded = store.get_source(source.id)
    assert (loaded.name, loaded.enabled) == ("renamed", False)
    assert (loaded.revision_tag, loaded.rule_count) == ("<qt>v2<qt>", 7)

def test_list_enabled_sources_skips_disabled(store) -> None:
    enabled = store.add_source("on", "/lists/on.txt")
    store.add_source("off", "/lists/off.txt", enabled=False)

    assert [s.id for s in store.list_enabled_sources()] == [enabled.id]
    assert len(store.list_sources()) == 2


def test_insert_ignores_natural_key_duplicates(store) -> None:
    source = store.add_source("ads", "/lists/ads.txt")

    inserted = store.insert_ignore_conflict(
        [_rule("a.example.com", source.id), _rule("a.example.com", source.id), _rule("b.example.com", source.id)]
    )
    again = store.insert_ignore_conflict([_rule("a.example.com", source.id)])

    assert inserted == 2
    assert again == 0


def test_mark_for_deletion_only_touches_given_sources(store) -> None:
    first = store.add_source("first", "/lists/first.txt")
    second = store.add_source("second", "/lists/second.txt")
    store.insert_ignore_conflict(
        [
            _rule("a.example.com", first.id, StagingMarker.COMMITTED),
            _rule("b.example.com", second.id, StagingMarker.COMMITTED),
        ]
    )
    store.add_user_rule("user.example.com", RecordType.A, "10.0.0.1")

    store.mark_for_deletion([first.id])

    assert _hosts(store, staging=StagingMarker.PENDING_DELETE) == ["a.example.com"]
    assert _hosts(store, staging=StagingMarker.COMMITTED) == ["b.example.com", "user.example.com"]


def test_commit_staged_swaps_rule_sets(store) -> None:
    source = store.add_source("ads", "/lists/ads.txt")
    store.insert_ignore_conflict([_rule("old.example.com", source.id, StagingMarker.COMMITTED)])
    store.mark_for_deletion([source.id])
    store.insert_ignore_conflict([_rule("new.example.com", source.id)])

    store.commit_staged()

    assert _hosts(store) == ["new.example.com"]
    assert not store.has_staged_rows()
    assert store.count_rules_for(source.id) == 1


def test_rollback_staged_restores_previous_rules(store) -> None:
    source = store.add_source("ads", "/lists/ads.txt")
    store.insert_ignore_conflict([_rule("old.example.com", source.id, StagingMarker.COMMITTED)])
    store.mark_for_deletion([source.id])
    store.insert_ignore_conflict([_rule("new.example.com", source.id)])
    assert store.has_staged_rows()

    store.rollback_staged()

    assert _hosts(store) == ["old.example.com"]
    assert not store.has_staged_rows()


def test_same_host_can_be_staged_while_pending_delete(store) -> None:
    source = store.add_source("ads", "/lists/ads.txt")
    store.insert_ignore_conflict([_rule("ads.example.com", source.id, StagingMarker.COMMITTED)])
    store.mark_for_deletion([source.id])

    inserted = store.insert_ignore_conflict([_rule("ads.example.com", source.id)])
    store.commit_staged()

    assert inserted == 1
    assert _hosts(store) == ["ads.example.com"]


def test_unstage_cancels_pending_deletion(store) -> None:
    source = store.add_source("ads", "/lists/ads.txt")
    store.insert_ignore_conflict([_rule("ads.example.com", source.id, StagingMarker.COMMITTED)])
    store.mark_for_deletion([source.id])

    store.unstage(source.id)
    store.commit_staged()

    assert _hosts(store) == ["ads.example.com"]


def test_purge_staged_for_source(store) -> None:
    first = store.add_source("first", "/lists/first.txt")
    second = store.add_source("second", "/lists/second.txt")
    store.insert_ignore_conflict([_rule("a.example.com", first.id), _rule("b.example.com", second.id)])

    store.purge_staged_for(first.id)

    assert _hosts(store) == ["b.example.com"]


def test_delete_all_non_user_rules_keeps_user_rules(store) -> None:
    source = store.add_source("ads", "/lists/ads.txt")
    store.insert_ignore_conflict([_rule("ads.example.com", source.id, StagingMarker.COMMITTED)])
    store.add_user_rule("user.example.com", RecordType.A, "10.0.0.1")

    store.delete_all_non_user_rules()

    assert _hosts(store) == ["user.example.com"]


def test_clear_revision_tags_of_disabled(store) -> None:
    on = store.add_source("on", "https://lists.example.org/on.txt")
    off = store.add_source("off", "https://lists.example.org/off.txt", enabled=False)
    for source in (on, off):
        source.revision_tag = "<qt>v1<qt>"
        store.update_source(source)

    store.clear_revision_tags_of_disabled()

    assert store.get_source(on.id).revision_tag == "<qt>v1<qt>"
    assert store.get_source(off.id).revision_tag is None


def test_rebuild_indices_keeps_rules(store) -> None:
    source = store.add_source("ads", "/lists/ads.txt")
    store.insert_ignore_conflict([_rule("ads.example.com", source.id, StagingMarker.COMMITTED)])

    store.rebuild_indices()

    assert store.count_rules_for(source.id) == 1


def test_write_failure_raises_store_write_error(store) -> None:
    store.close()

    with pytest.raises(StoreWriteError):
        store.purge_pending_delete()
