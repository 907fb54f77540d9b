#!/usr/bin/env python3
"""
detector.py - Format Detection and Line Parsing for Rule Sources

This module is the core of the import engine. It turns the lines of one
source into staged rules without being told which list format the source
uses.

SUPPORTED GRAMMARS (tested in this order):

    1. EXACT_BLOCK    address=/ads.example.com/            dnsmasq, block exact host
    2. TARGETED       address=/ads.example.com/0.0.0.0     dnsmasq, explicit answer
    3. HOSTS          0.0.0.0 ads.example.com              /etc/hosts
    4. PLAIN_DOMAIN   ads.example.com                      one domain per line
    5. FILTER_LIST    ||ads.example.com^                   AdBlock-style

KEY INSIGHT - ONE SOURCE, ONE GRAMMAR:
    Real lists are written in a single format, so every grammar starts as a
    candidate and has to earn its place:

    - A candidate that fails to match more than FAILURE_LIMIT lines is
      dropped for the rest of the source and never consulted again.
    - A candidate that matches more than LOCK_IN_THRESHOLD lines is locked
      in. From then on only it is tested, and lines it cannot parse are
      skipped instead of being offered to the other grammars.
    - If every candidate is dropped before any matched the current line,
      the source is not in a known format and parsing stops.

MEMORY BOUND:
    Each candidate keeps its own batch of parsed rules. Once more than
    FLUSH_LINE_THRESHOLD lines were read since the last flush, the smallest
    non-empty batch is written to the store. Whatever is left is written
    when the stream ends.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Final

from ruleimport.cleaner import (
    clean_line,
    default_targets,
    expand_host,
    normalize_domain,
    normalize_target,
    record_type_for,
    strip_www,
)
from ruleimport.models import EXACT_MATCH_MARKER, RecordType, Rule, Source, StagingMarker

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

#: A candidate is dropped once its failure counter exceeds this value
FAILURE_LIMIT: Final[int] = 5

#: A candidate is locked in once its match counter exceeds this value
LOCK_IN_THRESHOLD: Final[int] = 35

#: Lines read between two flushes before the smallest batch is written
FLUSH_LINE_THRESHOLD: Final[int] = 10_000


# ============================================================================
# GRAMMARS
# ============================================================================

class Grammar(Enum):
    """The five line shapes a source may be written in, in priority order."""
    EXACT_BLOCK = "exact_block"
    TARGETED = "targeted"
    HOSTS = "hosts"
    PLAIN_DOMAIN = "plain_domain"
    FILTER_LIST = "filter_list"


# Patterns are applied with fullmatch()
GRAMMAR_PATTERNS: Final[dict[Grammar, re.Pattern[str]]] = {
    # address=/xyz.com/
    Grammar.EXACT_BLOCK: re.compile(r"address=/([^/]+)/"),
    # address=/xyz.com/0.0.0.0  or  address=/xyz.com/::1
    Grammar.TARGETED: re.compile(
        r"address=/([^/]+)/"
        r"([0-9.]+|[0-9a-fA-F:]+)"   # IPv4 or IPv6 literal
        r"(?:/?|\s+.*)"              # Optional trailing slash or tail
    ),
    # 0.0.0.0 xyz.com  # optional comment
    Grammar.HOSTS: re.compile(
        r"([0-9A-Fa-f:.]+)\s+"       # Address
        r"([^\s#]+)"                 # Domain
        r"(?:\s+#.*)?"               # Optional trailing comment
    ),
    # xyz.com  or  *.xyz.com
    Grammar.PLAIN_DOMAIN: re.compile(r"([\w*][\w*.\-]+)(?:\s+.*)?"),
    # ||xyz.com^
    Grammar.FILTER_LIST: re.compile(r"\|\|([^\s|^]+)\^(?:\s+.*)?"),
}


def build_rules(
    host: str,
    target: str,
    target_v6: str | None,
    record_type: RecordType,
    source: Source,
) -> list[Rule]:
    """
    Create the staged rules for one extracted host.

    Wildcard hosts are escaped, and on remote sources a leading "*." yields
    both the parent domain and its any-depth form.
    """
    hosts, is_wildcard = expand_host(host, source.is_file_source)
    return [
        Rule(
            host=pattern,
            record_type=record_type,
            target=target,
            target_v6=target_v6,
            source_id=source.id,
            is_wildcard=is_wildcard,
            staging=StagingMarker.STAGED_NEW,
        )
        for pattern in hosts
    ]


def parse_match(grammar: Grammar, match: re.Match[str], source: Source) -> list[Rule]:
    """
    Convert a successful grammar match into rules.

    Example:
        >>> m = GRAMMAR_PATTERNS[Grammar.HOSTS].fullmatch("0.0.0.0 www.tracker.net")
        >>> [r.host for r in parse_match(Grammar.HOSTS, m, blocklist)]
        ['tracker.net']
    """
    default_v4, default_v6 = default_targets(source.whitelist)

    if grammar is Grammar.EXACT_BLOCK:
        # Literal host is kept, www. included, so the exact match stays exact
        host = EXACT_MATCH_MARKER + normalize_domain(match.group(1))
        return build_rules(host, default_v4, default_v6, RecordType.ANY, source)

    if grammar is Grammar.TARGETED:
        host = strip_www(normalize_domain(match.group(1)))
        address = match.group(2)
        return build_rules(
            host, normalize_target(address), None, record_type_for(address), source
        )

    if grammar is Grammar.HOSTS:
        host = strip_www(normalize_domain(match.group(2)))
        if source.whitelist:
            return build_rules(host, default_v4, default_v6, RecordType.ANY, source)
        address = match.group(1)
        return build_rules(
            host, normalize_target(address), None, record_type_for(address), source
        )

    # PLAIN_DOMAIN and FILTER_LIST
    host = strip_www(normalize_domain(match.group(1)))
    return build_rules(host, default_v4, default_v6, RecordType.ANY, source)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Candidate:
    """A grammar competing for a source, with its counters and pending rules."""
    grammar: Grammar
    failures: int = 0
    matches: int = 0
    batch: list[Rule] = field(default_factory=list)

    @property
    def pattern(self) -> re.Pattern[str]:
        return GRAMMAR_PATTERNS[self.grammar]


@dataclass
class DetectorStats:
    """Statistics from parsing one source."""
    lines_read: int = 0
    comments_skipped: int = 0
    empty_skipped: int = 0
    unmatched_skipped: int = 0
    rules_parsed: int = 0
    rules_flushed: int = 0
    flushes: int = 0
    stopped_early: bool = False


# ============================================================================
# DETECTOR
# ============================================================================

class FormatDetector:
    """
    Detects the grammar of one source while parsing it.

    A detector is bound to a single source and must not be reused: its
    counters describe that source only.

    Args:
        source: The source being parsed
        flush: Callback writing a batch of rules, returns the number inserted
    """

    def __init__(self, source: Source, flush: Callable[[list[Rule]], int]) -> None:
        self.source = source
        self._flush = flush
        self.candidates: list[Candidate] = [Candidate(g) for g in Grammar]
        self.eliminated: list[Candidate] = []
        self.locked: Candidate | None = None
        self.stats = DetectorStats()
        self._lines_since_flush = 0

    @property
    def exhausted(self) -> bool:
        """True once no candidate is left and parsing has stopped."""
        return self.stats.stopped_early

    def feed(self, raw_line: str) -> bool:
        """
        Parse one line.

        Returns:
            False once the source should not be read any further
        """
        if self.exhausted:
            return False

        result = clean_line(raw_line)
        if result.discarded:
            if result.reason == "comment":
                self.stats.comments_skipped += 1
            else:
                self.stats.empty_skipped += 1
            return True

        line = result.line
        self.stats.lines_read += 1
        self._lines_since_flush += 1

        if self.locked is not None:
            match = self.locked.pattern.fullmatch(line)
            if match:
                self._accept(self.locked, match)
            else:
                self.stats.unmatched_skipped += 1
        elif not self._match_candidates(line):
            if not self.candidates:
                logger.warning(
                    "No grammar left for source '%s', last line was '%s'. "
                    "Stopping after %d lines.",
                    self.source.name, line, self.stats.lines_read,
                )
                self.stats.stopped_early = True
                return False
            self.stats.unmatched_skipped += 1

        if self._lines_since_flush > FLUSH_LINE_THRESHOLD:
            self._flush_smallest()
        return True

    def _match_candidates(self, line: str) -> bool:
        """Offer the line to the live candidates in order, first match wins."""
        for candidate in list(self.candidates):
            match = candidate.pattern.fullmatch(line)
            if match:
                self._accept(candidate, match)
                if candidate.matches > LOCK_IN_THRESHOLD:
                    logger.debug(
                        "Source '%s' locked to grammar %s after %d matches",
                        self.source.name, candidate.grammar.value, candidate.matches,
                    )
                    self.locked = candidate
                return True

            candidate.failures += 1
            if candidate.failures > FAILURE_LIMIT:
                logger.debug(
                    "Grammar %s failed %d times for source '%s', last for '%s'. Removing.",
                    candidate.grammar.value, candidate.failures, self.source.name, line,
                )
                self.candidates.remove(candidate)
                self.eliminated.append(candidate)
        return False

    def _accept(self, candidate: Candidate, match: re.Match[str]) -> None:
        rules = parse_match(candidate.grammar, match, self.source)
        candidate.matches += 1
        candidate.batch.extend(rules)
        self.stats.rules_parsed += len(rules)

    def _pending(self) -> list[Candidate]:
        return [c for c in self.candidates + self.eliminated if c.batch]

    def _flush_candidate(self, candidate: Candidate) -> int:
        batch = candidate.batch
        candidate.batch = []
        inserted = self._flush(batch)
        self.stats.rules_flushed += len(batch)
        self.stats.flushes += 1
        return inserted

    def _flush_smallest(self) -> None:
        pending = self._pending()
        if pending:
            self._flush_candidate(min(pending, key=lambda c: len(c.batch)))
        self._lines_since_flush = 0

    def finish(self) -> int:
        """
        Write every remaining batch.

        Returns:
            Number of rules flushed for this source over its whole stream
        """
        for candidate in self._pending():
            self._flush_candidate(candidate)
        self._lines_since_flush = 0
        return self.stats.rules_flushed

    def discard(self) -> None:
        """Drop unflushed batches, used when the import is aborted."""
        for candidate in self.candidates + self.eliminated:
            candidate.batch = []
