"""
progress.py - Progress reporting for import runs.

The importer reports through a ProgressSink and never reads anything back
from it. ConsoleProgress prints the run the way the command line shows it;
NullProgress is used when nobody is listening.
"""
from __future__ import annotations

import sys
import time
from typing import Protocol

from ruleimport.models import ImportSummary, Source


class ProgressSink(Protocol):
    """Receiver of import progress, fire-and-forget."""

    def on_progress(self, index: int, total: int, source: Source) -> None: ...

    def on_finished(self, summary: ImportSummary) -> None: ...

    def on_aborted(self) -> None: ...


class NullProgress:
    """Ignores every event."""

    def on_progress(self, index: int, total: int, source: Source) -> None:
        pass

    def on_finished(self, summary: ImportSummary) -> None:
        pass

    def on_aborted(self) -> None:
        pass


class ConsoleProgress:
    """Prints progress and a final summary to stdout."""

    def __init__(self) -> None:
        self._started = time.time()

    def on_progress(self, index: int, total: int, source: Source) -> None:
        if index == 0:
            self._started = time.time()
            print(f"🔄 Importing {total} sources...")
            print("-" * 60)
        kind = "allow" if source.whitelist else "block"
        print(f"   [{index + 1}/{total}] {source.name} ({kind}) <- {source.origin}")

    def on_finished(self, summary: ImportSummary) -> None:
        elapsed = time.time() - self._started

        print("\n" + "=" * 60)
        print("📊 IMPORT SUMMARY")
        print("=" * 60)

        print(f"\n📁 Sources:   {summary.sources_total}")
        print(f"   Imported:  {summary.sources_imported:>12,}")
        print(f"   Unchanged: {summary.sources_unchanged:>12,}")
        print(f"   Failed:    {summary.sources_failed:>12,}")

        print(f"\n📈 Rules:")
        print(f"   Parsed this run:  {summary.rules_parsed:>12,}")
        print(f"   Committed:        {summary.rules_committed:>12,}")
        print(f"   Total in sources: {summary.rule_count_total:>12,}")

        print(f"\n⏱️  Total time: {elapsed:.1f}s")
        print("✅ Import completed successfully!")

    def on_aborted(self) -> None:
        print("\n⚠️  Import aborted, previous rules restored", file=sys.stderr)
