"""
staging.py - Staged Commit Protocol for Import Runs

An import run replaces the rules of many sources, one source at a time,
over many bulk writes. Readers of the rule table must see either the
complete old rule set or the complete new one, even if the process dies
half way. Instead of holding one transaction open for the whole run, every
row carries a staging marker:

    COMMITTED       live rule
    PENDING_DELETE  live until the run commits, then purged
    STAGED_NEW      invisible until the run commits

Run lifecycle:
    recover()   roll back whatever an interrupted run left behind
    prepare()   mark the previous rules of the run's sources PENDING_DELETE
    stage()     insert parsed rules as STAGED_NEW (natural-key duplicates ignored)
    commit()    purge PENDING_DELETE and flip STAGED_NEW in one transaction,
                then record source state and rebuild indices
    rollback()  drop STAGED_NEW and restore PENDING_DELETE in one transaction
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from ruleimport.downloader import FetchStatus
from ruleimport.errors import StoreWriteError
from ruleimport.models import Rule, Source
from ruleimport.store import RuleStore

logger = logging.getLogger(__name__)


@dataclass
class ProcessedSource:
    """What happened to one source during a run."""
    source: Source
    status: FetchStatus
    revision_tag: str | None = None
    rules_parsed: int = 0


class StagingCommitManager:
    """Drives the staging markers of one import run."""

    def __init__(self, store: RuleStore) -> None:
        self.store = store
        self.committed = False

    def recover(self) -> bool:
        """
        Roll back rows left behind by an interrupted run.

        Returns:
            True if an interrupted run was found and rolled back
        """
        if not self.store.has_staged_rows():
            return False
        logger.warning("Found staged rules of an interrupted import, rolling back")
        self.store.rollback_staged()
        return True

    def prepare(self, source_ids: Sequence[int], all_sources: bool = False) -> None:
        """
        Stage the previous rules of the run's sources for deletion.

        Args:
            source_ids: Sources about to be imported
            all_sources: The run covers every source rather than a chosen subset.
                Without any enabled source, imported rules are then removed outright.
        """
        if source_ids:
            self.store.mark_for_deletion(list(source_ids))
        elif all_sources:
            logger.info("No enabled sources, deleting all imported rules")
            self.store.delete_all_non_user_rules()
        else:
            logger.info("None of the requested sources is enabled, nothing to stage")

    def stage(self, rules: list[Rule]) -> int:
        """Insert a batch of STAGED_NEW rules, returns the number inserted."""
        inserted = self.store.insert_ignore_conflict(rules)
        logger.debug("Staged %d of %d rules", inserted, len(rules))
        return inserted

    def keep_unchanged(self, source: Source) -> None:
        """Cancel the pending deletion of an unchanged source's rules."""
        self.store.unstage(source.id)
        logger.info("Unstaged rules for '%s'", source.name)

    def discard_source(self, source: Source) -> None:
        """Drop the rules staged so far for a source that failed mid-stream."""
        self.store.purge_staged_for(source.id)

    def commit(self, processed: Sequence[ProcessedSource]) -> None:
        """
        Make the run's rules live and record the new source state.

        Unchanged sources keep their revision tag and rule count. Failed
        sources lose their tag so the next run downloads them in full.

        Raises:
            StoreWriteError: If a write failed. Check `committed` to tell a
                failed commit, which can still be rolled back, from a failure
                while recording source state after the new rules went live.
        """
        logger.info("Deleting rules staged for deletion and committing staging")
        self.store.commit_staged()
        self.committed = True

        try:
            logger.info("Updating revision tags for sources")
            for item in processed:
                if item.status is FetchStatus.NOT_MODIFIED:
                    continue
                source = item.source
                source.revision_tag = item.revision_tag if item.status is FetchStatus.CHANGED else None
                source.rule_count = self.store.count_rules_for(source.id)
                self.store.record_import_state(source.id, source.revision_tag, source.rule_count)
            self.store.clear_revision_tags_of_disabled()

            logger.info("Recreating rule indices")
            self.store.rebuild_indices()
        except StoreWriteError as e:
            raise StoreWriteError(f"New rules are live, but finishing the commit failed: {e}") from e

    def rollback(self) -> None:
        """Return the rule table to its pre-run state."""
        logger.info("Rolling back staged rules")
        self.store.rollback_staged()
