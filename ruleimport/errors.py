"""Rule import exception hierarchy.

Per-source failures (fetch, format) are logged and skipped by the importer.
Store failures end the run and trigger a rollback.
"""

from __future__ import annotations


class RuleImportError(Exception):
    """Base exception for all rule import failures."""


class FetchError(RuleImportError):
    """Raised when a source's content cannot be retrieved."""


class StoreWriteError(RuleImportError):
    """Raised when the rule store fails to apply a write."""


class ImportAlreadyRunningError(RuleImportError):
    """Raised when an import is started while another one is active."""
