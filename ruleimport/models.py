"""
models.py - Data structures shared by the rule import engine.

A Source is a configured origin of block/allow rules. A Rule is a single
mapping from a domain pattern to a DNS outcome, owned by the source it was
imported from. Rules carry a staging marker so that a whole import run can be
committed or rolled back at once.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Final


# =============================================================================
# TARGETS AND MARKERS
# =============================================================================

#: Sentinel target: answer the query with a blocked response
BLOCK_TARGET: Final[str] = "0"

#: Sentinel target: let the query pass through to the upstream resolver
ALLOW_TARGET: Final[str] = "1"

#: Prefix marking a host that must match exactly (no subdomains)
EXACT_MATCH_MARKER: Final[str] = "%%"

#: Escaped wildcard covering any number of labels
ANY_DEPTH_WILDCARD: Final[str] = "%%"

#: Escaped wildcard covering a single label
SINGLE_WILDCARD: Final[str] = "%"


class RecordType(str, Enum):
    """DNS record type a rule applies to."""
    A = "A"
    AAAA = "AAAA"
    ANY = "ANY"


class StagingMarker(IntEnum):
    """
    Per-row status used by the staged commit protocol.

    COMMITTED rows are live. PENDING_DELETE rows are live until the run
    commits, then purged. STAGED_NEW rows become live only on commit.
    """
    COMMITTED = 0
    PENDING_DELETE = 1
    STAGED_NEW = 2


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class Source:
    """
    A configured block/allow list.

    Attributes:
        id: Store identifier
        name: Display name
        origin: Local path, file:// URI or http(s) URL
        enabled: Disabled sources are never imported
        whitelist: True if the list holds allowed domains
        revision_tag: Last ETag seen for the origin, quotes escaped as <qt>
        rule_count: Number of rules imported by the last successful run
    """
    id: int
    name: str
    origin: str
    enabled: bool = True
    whitelist: bool = False
    revision_tag: str | None = None
    rule_count: int | None = None

    @property
    def is_file_source(self) -> bool:
        """True unless the origin is an http(s) URL."""
        return not self.origin.lower().startswith(("http://", "https://"))


@dataclass(frozen=True)
class Rule:
    """A single imported DNS rule."""
    host: str
    record_type: RecordType
    target: str
    target_v6: str | None = None
    source_id: int | None = None
    is_wildcard: bool = False
    staging: StagingMarker = StagingMarker.STAGED_NEW

    @property
    def natural_key(self) -> tuple[str, str, int | None, int]:
        return (self.host, self.record_type.value, self.source_id, int(self.staging))


@dataclass
class ImportSummary:
    """Statistics from one completed import run."""
    sources_total: int = 0
    sources_imported: int = 0
    sources_unchanged: int = 0
    sources_failed: int = 0
    rules_parsed: int = 0
    rules_committed: int = 0
    rule_count_total: int = 0
