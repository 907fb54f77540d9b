"""Unit tests for line cleaning and domain normalization."""

from __future__ import annotations

import pytest

from ruleimport.cleaner import (
    clean_line,
    default_targets,
    escape_wildcards,
    expand_host,
    is_comment,
    normalize_domain,
    normalize_target,
    record_type_for,
    strip_www,
)
from ruleimport.models import ALLOW_TARGET, BLOCK_TARGET, RecordType


@pytest.mark.parametrize("line", ["# hosts file", "! Title: list", "   # indented"])
def test_comment_lines_are_discarded(line: str) -> None:
    result = clean_line(line)

    assert is_comment(line)
    assert result.discarded
    assert result.reason == "comment"


def test_blank_line_is_discarded() -> None:
    result = clean_line("   \n")

    assert result.discarded
    assert result.reason == "empty"


def test_rule_line_is_stripped() -> None:
    result = clean_line("  ||example.com^ \r\n")

    assert not result.discarded
    assert result.line == "||example.com^"


def test_normalize_domain_lowercases_and_drops_trailing_dot() -> None:
    assert normalize_domain("Ads.Example.COM.") == "ads.example.com"


def test_strip_www_removes_leading_label() -> None:
    assert strip_www("www.tracker.net") == "tracker.net"
    assert strip_www("cdn.www.tracker.net") == "cdn.www.tracker.net"


def test_strip_www_keeps_label_in_front_of_public_suffix() -> None:
    assert strip_www("www.co.uk") == "www.co.uk"
    assert strip_www("www.com") == "www.com"


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("0.0.0.0", BLOCK_TARGET),
        ("::", BLOCK_TARGET),
        ("::0", BLOCK_TARGET),
        ("127.0.0.1", ALLOW_TARGET),
        ("::1", ALLOW_TARGET),
        ("10.0.0.7", "10.0.0.7"),
        ("fe80::7", "fe80::7"),
    ],
)
def test_normalize_target(address: str, expected: str) -> None:
    assert normalize_target(address) == expected


def test_record_type_follows_address_shape() -> None:
    assert record_type_for("0.0.0.0") is RecordType.A
    assert record_type_for("::") is RecordType.AAAA


def test_default_targets_depend_on_list_kind() -> None:
    assert default_targets(whitelist=False) == (BLOCK_TARGET, BLOCK_TARGET)
    assert default_targets(whitelist=True) == (ALLOW_TARGET, ALLOW_TARGET)


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("**.ads.example.com", "%%.ads.example.com"),
        ("ads.*.example.com", "ads.%.example.com"),
        ("***.example.com", "%%.example.com"),
        ("*.example.com", "%.example.com"),
    ],
)
def test_escape_wildcards(host: str, expected: str) -> None:
    assert escape_wildcards(host) == expected


def test_expand_host_without_wildcard() -> None:
    assert expand_host("ads.example.com", is_file_source=False) == (["ads.example.com"], False)


def test_expand_host_remote_leading_wildcard_covers_parent() -> None:
    hosts, is_wildcard = expand_host("*.ads.example.com", is_file_source=False)

    assert hosts == ["ads.example.com", "%%.ads.example.com"]
    assert is_wildcard


def test_expand_host_local_leading_wildcard_is_single_label() -> None:
    hosts, is_wildcard = expand_host("*.ads.example.com", is_file_source=True)

    assert hosts == ["%.ads.example.com"]
    assert is_wildcard


def test_expand_host_remote_inner_wildcard_collapses_like_local() -> None:
    remote, _ = expand_host("ads.*.example.com", is_file_source=False)
    local, _ = expand_host("ads.*.example.com", is_file_source=True)

    assert remote == local == ["ads.%.example.com"]
