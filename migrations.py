"""
migrations.py – Schema migration of the decrypted storage document.

Every step ``vN -> vN+1`` is a pure function: it receives a deep copy of
the document, never raises on malformed legacy data (bad records get
best-effort defaults instead), and returns the document with
``_version`` set to N+1.  migrate_document() applies the steps in order
until CURRENT_DATA_VERSION is reached.
"""

import copy
import logging
from typing import Callable, Dict, Tuple

from config import APP_NAME, CURRENT_DATA_VERSION, PROVIDER_IDS

logger = logging.getLogger(APP_NAME)

VERSION_KEY = "_version"

# Per-provider fallback chain for the display name added in v2.
_DISPLAY_NAME_SOURCES = {
    "antigravity": ("name", "email"),
    "githubCopilot": ("name", "login"),
    "zaiCoding": ("name",),
}


def document_version(doc: dict) -> int:
    """
    Return the schema version of *doc*.  Documents without one, or with a
    value that is not a positive integer, are treated as v1.
    """
    try:
        version = int(doc.get(VERSION_KEY) or 1)
    except (TypeError, ValueError, OverflowError):
        return 1
    return max(version, 1)


def _accounts(doc: dict, provider: str) -> list:
    items = doc.get(provider)
    if not isinstance(items, list):
        if items is not None:
            logger.warning("Replacing malformed %s collection during migration", provider)
        return []
    return [acc for acc in items if isinstance(acc, dict)]


def migrate_v1_to_v2(doc: dict) -> dict:
    """Add ``displayName`` to every account, leaving existing values alone."""
    doc = copy.deepcopy(doc)
    for provider in PROVIDER_IDS:
        migrated = []
        for acc in _accounts(doc, provider):
            if acc.get("displayName") is None:
                name = ""
                for key in _DISPLAY_NAME_SOURCES[provider]:
                    if acc.get(key):
                        name = str(acc[key])
                        break
                acc = dict(acc, displayName=name)
            migrated.append(acc)
        doc[provider] = migrated
    doc[VERSION_KEY] = 2
    return doc


# from-version -> step producing from-version + 1
MIGRATIONS: Dict[int, Callable[[dict], dict]] = {
    1: migrate_v1_to_v2,
}


def migrate_document(doc: dict) -> Tuple[dict, bool]:
    """
    Bring *doc* up to CURRENT_DATA_VERSION.

    Returns ``(document, changed)``.  The input is never mutated; a
    document already at the current version comes back unchanged with
    ``changed=False``.
    """
    if not isinstance(doc, dict):
        logger.warning("Storage document is not a mapping; starting from empty")
        doc = {}

    version = document_version(doc)
    if version >= CURRENT_DATA_VERSION:
        return doc, False

    while version < CURRENT_DATA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            logger.warning("No migration from v%d; restarting from v1", version)
            version = 1
            step = MIGRATIONS[version]
        doc = step(doc)
        new_version = document_version(doc)
        logger.info("Migrated storage document v%d -> v%d", version, new_version)
        version = new_version

    return doc, True
