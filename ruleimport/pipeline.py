#!/usr/bin/env python3
"""
pipeline.py

Import pipeline turning configured sources into the committed rule table.

Usage:
    python -m ruleimport.pipeline --db rules.db add-source <name> <origin> [--whitelist]
    python -m ruleimport.pipeline --db rules.db sources
    python -m ruleimport.pipeline --db rules.db import [--source ID ...]
    python -m ruleimport.pipeline --db rules.db recover

Pipeline stages:
1. Roll back anything an interrupted run left behind
2. Stage the previous rules of the selected sources for deletion
3. For each source, in (whitelist, name) order:
   fetch (skipped if the revision tag is unchanged), detect the format,
   parse and stage its rules
4. Commit all staged rules at once, store revision tags, rebuild indices

Aborting at any point before the commit restores the previous rule table.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from contextlib import aclosing

import aiohttp

from ruleimport.detector import FormatDetector
from ruleimport.downloader import (
    DEFAULT_TIMEOUT,
    USER_AGENT,
    FetchResult,
    FetchStatus,
    iter_lines,
    open_source,
)
from ruleimport.errors import FetchError, ImportAlreadyRunningError, RuleImportError, StoreWriteError
from ruleimport.models import ImportSummary, Source
from ruleimport.progress import ConsoleProgress, NullProgress, ProgressSink
from ruleimport.staging import ProcessedSource, StagingCommitManager
from ruleimport.store import RuleStore, SQLiteRuleStore

logger = logging.getLogger(__name__)


def enumerate_sources(store: RuleStore, source_ids: Sequence[int] | None = None) -> list[Source]:
    """
    Select the sources of a run.

    Args:
        store: Rule store holding the source configuration
        source_ids: Restrict the run to these sources, None for all

    Returns:
        Enabled sources, blocklists before whitelists, then by name
    """
    sources = store.list_enabled_sources()
    if source_ids is not None:
        wanted = set(source_ids)
        sources = [s for s in sources if s.id in wanted]
    return sorted(sources, key=lambda s: (s.whitelist, s.name))


class RuleImporter:
    """
    Runs imports against a rule store.

    Only one run may be active per importer. abort() may be called at any
    time; the run notices it before the next line or source.
    """

    def __init__(
        self,
        store: RuleStore,
        progress: ProgressSink | None = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        self.store = store
        self.progress = progress or NullProgress()
        self.timeout = timeout
        self._aborted = False
        self._running = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def running(self) -> bool:
        return self._running

    def abort(self) -> None:
        """Ask the running import to stop and roll back."""
        self._aborted = True

    async def start_import(self, source_ids: Sequence[int] | None = None) -> ImportSummary | None:
        """
        Import the enabled sources, or only those in source_ids.

        Returns:
            The run summary, or None if the run was aborted

        Raises:
            ImportAlreadyRunningError: If a run is already active
            StoreWriteError: If the store failed. A failure before the commit
                is rolled back first; after it, the new rules stay live
        """
        if self._running:
            raise ImportAlreadyRunningError("An import is already running")
        self._running = True
        self._aborted = False
        try:
            return await self._run(source_ids)
        finally:
            self._running = False

    async def _run(self, source_ids: Sequence[int] | None) -> ImportSummary | None:
        sources = enumerate_sources(self.store, source_ids)
        staging = StagingCommitManager(self.store)

        staging.recover()
        staging.prepare([s.id for s in sources], all_sources=source_ids is None)

        processed: list[ProcessedSource] = []
        try:
            async with aiohttp.ClientSession(headers={"User-Agent": USER_AGENT}) as session:
                for index, source in enumerate(sources):
                    if self._aborted:
                        break
                    self.progress.on_progress(index, len(sources), source)
                    processed.append(await self._import_source(session, source, staging))
                    logger.info("Import of '%s' finished", source.name)

            if not self._aborted:
                staging.commit(processed)
        except (StoreWriteError, asyncio.CancelledError) as e:
            if staging.committed:
                logger.error("Import committed, but source state is incomplete: %r", e)
                raise
            logger.error("Import failed, rolling back: %r", e)
            staging.rollback()
            self.progress.on_aborted()
            raise

        if not staging.committed:
            logger.info("Aborting import")
            staging.rollback()
            self.progress.on_aborted()
            return None

        summary = self._summarize(processed)
        logger.info("All imports finished")
        self.progress.on_finished(summary)
        return summary

    async def _import_source(
        self,
        session: aiohttp.ClientSession,
        source: Source,
        staging: StagingCommitManager,
    ) -> ProcessedSource:
        logger.info("Importing source '%s' from %s", source.name, source.origin)

        async with open_source(session, source, self.timeout) as fetched:
            if fetched.status is FetchStatus.NOT_MODIFIED:
                logger.info("Source '%s' hasn't changed, not updating", source.name)
                staging.keep_unchanged(source)
                return ProcessedSource(source, FetchStatus.NOT_MODIFIED, source.revision_tag)

            if fetched.status is FetchStatus.FAILED:
                return ProcessedSource(source, FetchStatus.FAILED)

            detector = FormatDetector(source, staging.stage)
            try:
                await self._parse(fetched, detector)
            except FetchError as e:
                logger.warning("%s", e)
                detector.discard()
                staging.discard_source(source)
                return ProcessedSource(source, FetchStatus.FAILED)

        if self._aborted:
            detector.discard()
            return ProcessedSource(source, FetchStatus.FAILED)

        flushed = detector.finish()
        logger.info(
            "Parsed %d rules from %d lines of '%s'",
            flushed, detector.stats.lines_read, source.name,
        )
        return ProcessedSource(source, FetchStatus.CHANGED, fetched.revision_tag, flushed)

    async def _parse(self, fetched: FetchResult, detector: FormatDetector) -> None:
        """Feed the stream to the detector until it ends, stops or the run is aborted."""
        async with aclosing(iter_lines(fetched)) as lines:
            async for line in lines:
                if self._aborted:
                    return
                if not detector.feed(line):
                    return

    def _summarize(self, processed: Sequence[ProcessedSource]) -> ImportSummary:
        summary = ImportSummary(sources_total=len(processed))
        for item in processed:
            if item.status is FetchStatus.CHANGED:
                summary.sources_imported += 1
                summary.rules_parsed += item.rules_parsed
                summary.rules_committed += item.source.rule_count or 0
            elif item.status is FetchStatus.NOT_MODIFIED:
                summary.sources_unchanged += 1
            else:
                summary.sources_failed += 1
            summary.rule_count_total += item.source.rule_count or 0
        return summary


# =============================================================================
# CLI
# =============================================================================

def print_sources(sources: Sequence[Source]) -> None:
    """Print configured sources as a table."""
    if not sources:
        print("No sources configured")
        return
    print(f"{'ID':>4}  {'STATE':<8} {'KIND':<5} {'RULES':>10}  NAME / ORIGIN")
    for s in sources:
        state = "enabled" if s.enabled else "disabled"
        kind = "allow" if s.whitelist else "block"
        count = f"{s.rule_count:,}" if s.rule_count is not None else "-"
        print(f"{s.id:>4}  {state:<8} {kind:<5} {count:>10}  {s.name} <- {s.origin}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import DNS block/allow lists into a rule store")
    parser.add_argument("--db", default="rules.db", help="Path to the SQLite rule store")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help="Request timeout in seconds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")

    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add-source", help="Configure a new source")
    add.add_argument("name", help="Display name")
    add.add_argument("origin", help="Local path, file:// URI or http(s) URL")
    add.add_argument("--whitelist", action="store_true", help="Source lists allowed domains")
    add.add_argument("--disabled", action="store_true", help="Add the source disabled")

    commands.add_parser("sources", help="List configured sources")

    run = commands.add_parser("import", help="Import enabled sources")
    run.add_argument(
        "--source", dest="source_ids", type=int, action="append",
        help="Only import this source id (repeatable)",
    )

    commands.add_parser("recover", help="Roll back an interrupted import")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code or 0)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    try:
        store = SQLiteRuleStore(args.db)
    except RuleImportError as e:
        print(f"❌ ERROR: {e}", file=sys.stderr)
        return 1

    try:
        if args.command == "add-source":
            source = store.add_source(
                args.name, args.origin, whitelist=args.whitelist, enabled=not args.disabled
            )
            print(f"✅ Added source {source.id}: {source.name}")
            return 0

        if args.command == "sources":
            print_sources(store.list_sources())
            return 0

        if args.command == "recover":
            if StagingCommitManager(store).recover():
                print("✅ Interrupted import rolled back")
            else:
                print("Nothing to recover")
            return 0

        importer = RuleImporter(store, ConsoleProgress(), timeout=args.timeout)
        summary = asyncio.run(importer.start_import(args.source_ids))
        return 0 if summary is not None else 1

    except KeyboardInterrupt:
        print("\n⚠️  Interrupted", file=sys.stderr)
        return 1
    except RuleImportError as e:
        print(f"\n❌ ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
