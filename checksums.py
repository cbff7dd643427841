"""
Code Checksum Registry
Resolves transaction code hashes to transaction names, for the code currently
deployed on chain and for code retired by past protocol upgrades
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

WASM_SUFFIX = ".wasm"

DEFAULT_FALLBACK_PATH = Path(__file__).resolve().parent / "checksums_fallback.json"


# ==================== HISTORICAL FALLBACK ====================


def load_fallback(path: Optional[Path] = None) -> Dict[str, str]:
    """
    Load the bundled hash -> name table of retired code

    Args:
        path: JSON asset location, the bundled file when omitted

    Returns:
        Mapping of lower-case code hash to code name
    """
    path = Path(path) if path else DEFAULT_FALLBACK_PATH
    with open(path, "r", encoding="utf-8") as handle:
        asset = json.load(handle)

    fallback: Dict[str, str] = {}
    for entry in asset.get("entries", []):
        code_hash = entry["hash"].lower()
        name = entry["name"]
        known = fallback.get(code_hash)
        if known is not None and known != name:
            raise ValueError(
                f"Conflicting fallback entries for {code_hash}: {known} != {name}"
            )
        fallback[code_hash] = name

    logger.debug(
        f"Loaded {len(fallback)} historical checksums "
        f"(asset version {asset.get('version')})"
    )
    return fallback


# ==================== REGISTRY ====================


class ChecksumRegistry:
    """
    Bijective name <-> hash table of deployed code, backed by a read-only
    table of historical hashes
    """

    def __init__(self, fallback: Optional[Mapping[str, str]] = None):
        self._hash_by_name: Dict[str, str] = {}
        self._name_by_hash: Dict[str, str] = {}
        self._fallback: Dict[str, str] = {
            code_hash.lower(): name for code_hash, name in (fallback or {}).items()
        }

    @classmethod
    def with_bundled_fallback(cls, path: Optional[Path] = None) -> "ChecksumRegistry":
        """Create a registry whose fallback is the bundled historical asset"""
        return cls(load_fallback(path))

    def __len__(self) -> int:
        return len(self._name_by_hash)

    def resolve(self, code_hash: str) -> Optional[str]:
        """Resolve a code hash, current code first, then retired code"""
        code_hash = code_hash.lower()
        name = self._name_by_hash.get(code_hash)
        if name is None:
            name = self._fallback.get(code_hash)
        return name

    def register(self, name_with_suffix: str, code_hash: str) -> None:
        """
        Register a published code file, e.g. ``tx_transfer.wasm``

        Raises:
            ValueError: if the name does not end in ``.wasm``
        """
        if not name_with_suffix.endswith(WASM_SUFFIX):
            raise ValueError(
                f"Code name {name_with_suffix!r} is missing the {WASM_SUFFIX} suffix"
            )
        self.register_with_ext(name_with_suffix[: -len(WASM_SUFFIX)], code_hash)

    def register_with_ext(self, name: str, code_hash: str) -> None:
        """Register a name exactly as given"""
        code_hash = code_hash.lower()

        # Drop any pair sharing either side so both directions stay in sync
        previous_hash = self._hash_by_name.pop(name, None)
        if previous_hash is not None:
            self._name_by_hash.pop(previous_hash, None)
        previous_name = self._name_by_hash.pop(code_hash, None)
        if previous_name is not None:
            self._hash_by_name.pop(previous_name, None)

        self._hash_by_name[name] = code_hash
        self._name_by_hash[code_hash] = name

    def load(self, published: Mapping[str, str]) -> None:
        """
        Replace the current table with a published ``{filename: hash}`` list

        The new table is built aside and swapped in, so a bad entry leaves the
        previous table untouched.
        """
        staged = ChecksumRegistry()
        for filename, code_hash in published.items():
            staged.register(filename, code_hash)

        self._hash_by_name = staged._hash_by_name
        self._name_by_hash = staged._name_by_hash
        logger.info(f"Loaded {len(self)} current checksums")
