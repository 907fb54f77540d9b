#!/usr/bin/env python3
"""
cleaner.py - Line Cleaning and Domain Normalization

This module holds the small, stateless helpers the format detector relies on.
It never decides which grammar a line belongs to; it only prepares lines
and normalizes what the grammars extract.

Key Operations:
    1. Skip blank lines and comments (# and ! lines)
    2. Normalize domains (case, trailing dot, leading www.)
    3. Map address literals to block/allow sentinels
    4. Escape wildcards into the store's pattern syntax

Wildcard Escaping:
    The rule store matches hosts with SQL LIKE-style patterns, so list
    wildcards are rewritten before insertion:

        **.example.com   →  %%.example.com   (any depth)
        ads.*.example    →  ads.%.example    (single label)

    Remote lists use "*.example.com" to mean "example.com and everything
    below it", so that shape expands into two rules:

        *.example.com    →  example.com, %%.example.com
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Final, NamedTuple

import tldextract

from ruleimport.models import (
    ALLOW_TARGET,
    ANY_DEPTH_WILDCARD,
    BLOCK_TARGET,
    SINGLE_WILDCARD,
    RecordType,
)

# Bundled public suffix snapshot only, never fetched at runtime
_tld_extract = tldextract.TLDExtract(suffix_list_urls=())


# =============================================================================
# TARGET DEFINITIONS
# =============================================================================

#: Address literals that mean "block this domain"
BLOCKING_ADDRESSES: Final[frozenset[str]] = frozenset({
    "0.0.0.0",
    "::",
    "::0",
})

#: Address literals that mean "let this domain through"
LOOPBACK_ADDRESSES: Final[frozenset[str]] = frozenset({
    "127.0.0.1",
    "::1",
})


# =============================================================================
# REGEX PATTERNS
# =============================================================================

#: Pattern to detect if a line is a comment (starts with # or !)
COMMENT_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\s*[#!]")

#: Leading www. label
WWW_PATTERN: Final[re.Pattern[str]] = re.compile(r"^www\.")

#: Leading single-label wildcard, the "domain and all subdomains" shape
LEADING_WILDCARD_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\*\.")

#: Three or more escaped wildcards in a row collapse to one any-depth marker
WILDCARD_RUN_PATTERN: Final[re.Pattern[str]] = re.compile(r"%{3,}")


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class CleanResult(NamedTuple):
    """
    Result of cleaning a single line.

    Attributes:
        line: Stripped line, or None if discarded
        discarded: True if line was discarded
        reason: "empty" or "comment" when discarded, otherwise None

    Example:
        >>> clean_line("  ||example.com^  ")
        CleanResult(line='||example.com^', discarded=False, reason=None)
    """
    line: str | None
    discarded: bool
    reason: str | None


# =============================================================================
# CLEANING FUNCTIONS
# =============================================================================

def is_comment(line: str) -> bool:
    """
    Check if line is a comment (starts with # or !).

    Example:
        >>> is_comment("# This is a comment")
        True
        >>> is_comment("! Another comment style")
        True
        >>> is_comment("||example.com^")
        False
    """
    return bool(COMMENT_PATTERN.match(line))


def clean_line(line: str) -> CleanResult:
    """Strip a raw line and discard blanks and comments."""
    line = line.strip()
    if not line:
        return CleanResult(None, True, "empty")
    if is_comment(line):
        return CleanResult(None, True, "comment")
    return CleanResult(line, False, None)


# =============================================================================
# DOMAIN NORMALIZATION
# =============================================================================

def normalize_domain(domain: str) -> str:
    """Normalize domain to lowercase, stripped, without trailing dot."""
    return domain.lower().strip().rstrip(".")


@lru_cache(maxsize=65536)
def _is_public_suffix(domain: str) -> bool:
    ext = _tld_extract(domain)
    return bool(ext.suffix) and not ext.domain and not ext.subdomain


def strip_www(domain: str) -> str:
    """
    Remove a leading www. label.

    The label is kept when the remainder is a bare public suffix, since
    "www.co.uk" stripped to "co.uk" would cover a whole registry.

    Example:
        >>> strip_www("www.tracker.net")
        'tracker.net'
        >>> strip_www("www.co.uk")
        'www.co.uk'
    """
    if not WWW_PATTERN.match(domain):
        return domain
    rest = domain[4:]
    if not rest or _is_public_suffix(rest):
        return domain
    return rest


def record_type_for(address: str) -> RecordType:
    """AAAA for IPv6 literals, A for everything else."""
    return RecordType.AAAA if ":" in address else RecordType.A


def normalize_target(address: str) -> str:
    """
    Map an address literal to the target stored with the rule.

    Example:
        >>> normalize_target("0.0.0.0")
        '0'
        >>> normalize_target("::1")
        '1'
        >>> normalize_target("10.0.0.7")
        '10.0.0.7'
    """
    if address in BLOCKING_ADDRESSES:
        return BLOCK_TARGET
    if address in LOOPBACK_ADDRESSES:
        return ALLOW_TARGET
    return address


def default_targets(whitelist: bool) -> tuple[str, str]:
    """Return the (IPv4, IPv6) targets used by rules without a literal."""
    if whitelist:
        return ALLOW_TARGET, ALLOW_TARGET
    return BLOCK_TARGET, BLOCK_TARGET


# =============================================================================
# WILDCARD ESCAPING
# =============================================================================

def escape_wildcards(host: str) -> str:
    """
    Rewrite list wildcards into store wildcards.

    Example:
        >>> escape_wildcards("**.ads.example.com")
        '%%.ads.example.com'
        >>> escape_wildcards("ads.*.example.com")
        'ads.%.example.com'
        >>> escape_wildcards("***.example.com")
        '%%.example.com'
    """
    escaped = host.replace("**", ANY_DEPTH_WILDCARD).replace("*", SINGLE_WILDCARD)
    return WILDCARD_RUN_PATTERN.sub(ANY_DEPTH_WILDCARD, escaped)


def expand_host(host: str, is_file_source: bool) -> tuple[list[str], bool]:
    """
    Expand a host into the patterns stored for it.

    Args:
        host: Normalized host, possibly containing * wildcards
        is_file_source: True if the host came from a local file

    Returns:
        Tuple of (patterns, is_wildcard)

    Example:
        >>> expand_host("*.ads.example.com", is_file_source=False)
        (['ads.example.com', '%%.ads.example.com'], True)
        >>> expand_host("*.ads.example.com", is_file_source=True)
        (['%.ads.example.com'], True)
    """
    if "*" not in host:
        return [host], False

    if not is_file_source and LEADING_WILDCARD_PATTERN.match(host):
        parent = escape_wildcards(host[2:])
        return [parent, f"{ANY_DEPTH_WILDCARD}.{parent}"], True

    return [escape_wildcards(host)], True
