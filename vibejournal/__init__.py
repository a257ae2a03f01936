# -*- coding: utf-8 -*-
"""vibejournal package.

Modules:
    models:         Entry/session types and their JSON record codecs.
    db:             SQLite schema + async key-value collections.
    crypto:         Password-derived key manager (PBKDF2 + AES-GCM).
    logic:          JournalService, composing db + crypto + analysis.
    analysis:       Sentiment, pattern and trend analysis with caching.
    remote:         HTTP client for the remote sentiment collaborator.
    config:         JSON config and the on-disk key store.
    errors:         Exception taxonomy.
    logging_config: Handlers for the CLI entrypoint.
"""

__all__ = [
    "analysis",
    "config",
    "crypto",
    "db",
    "errors",
    "logging_config",
    "logic",
    "models",
    "remote",
]
