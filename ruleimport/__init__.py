"""
ruleimport package - DNS Rule Import Engine

Modules:
    models: Sources, rules and staging markers
    cleaner: Line cleaning and domain/wildcard normalization
    detector: Per-source grammar detection and line parsing
    downloader: Local and conditional remote fetching with ETag caching
    store: SQLite rule store with staging markers
    staging: Staged commit, rollback and crash recovery
    progress: Progress sinks for import runs
    pipeline: Source enumeration, import runs and CLI
"""

__version__ = "1.0.0"
