"""YARA rule set integrity.

:class:`YaraRuleManager` computes a combined SHA-256 over every rule file
(``.yar``, ``.yara``, ``.yarac``) under the configured path, in sorted order,
and compares it with the expected hash taken from a hash file (first token)
or, failing that, from configuration.  A missing expected hash is treated the
same as a mismatch: scanning with an unverified rule set is refused.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os

from uploadguard.config import settings
from uploadguard.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

RULE_EXTENSIONS = (".yar", ".yara", ".yarac")
_VERSION_FILE = "VERSION"


class YaraRuleManager:
    """Verifies the YARA rule set before it is handed to the engine.

    Args:
        rules_path: Rule file or directory.  Defaults to
            ``settings.yara_rules_path``.
        hash_file: File whose first token is the expected hex digest.
        expected_hash: Fallback expected digest when *hash_file* is absent.
    """

    def __init__(
        self,
        rules_path: str | None = None,
        hash_file: str | None = None,
        expected_hash: str | None = None,
    ) -> None:
        self._rules_path = rules_path or settings.yara_rules_path
        self._hash_file = hash_file if hash_file is not None else settings.yara_rules_hash_file
        self._expected_hash = expected_hash if expected_hash is not None else settings.yara_expected_hash

    def rule_files(self) -> list[str]:
        """Return the sorted list of rule files."""
        if os.path.isfile(self._rules_path):
            return [os.path.realpath(self._rules_path)]
        collected: list[str] = []
        for directory, _dirs, files in os.walk(self._rules_path):
            for name in files:
                if name.lower().endswith(RULE_EXTENSIONS):
                    collected.append(os.path.realpath(os.path.join(directory, name)))
        return sorted(collected)

    def current_hash(self) -> str:
        files = self.rule_files()
        if not files:
            raise ConfigurationError("No YARA rule files found.", reason="ruleset")
        hasher = hashlib.sha256()
        for path in files:
            with open(path, "rb") as fh:
                for chunk in iter(lambda: fh.read(65536), b""):
                    hasher.update(chunk)
        return hasher.hexdigest()

    def expected_hash(self) -> str | None:
        if self._hash_file and os.path.isfile(self._hash_file):
            with open(self._hash_file, "r", encoding="utf-8") as fh:
                tokens = fh.read().split()
            if tokens:
                return tokens[0].strip().lower()
        if self._expected_hash:
            return self._expected_hash.strip().lower()
        return None

    def verify(self) -> str:
        """Check the rule set and return its hash.

        Raises:
            ConfigurationError: ``reason="ruleset"`` if the rules are missing,
                no expected hash is configured, or the hashes differ.
        """
        expected = self.expected_hash()
        if not expected:
            logger.critical(json.dumps({"event": "yara_rules_hash_missing"}))
            raise ConfigurationError("YARA rules expected hash is not configured.", reason="ruleset")
        actual = self.current_hash()
        if actual != expected:
            logger.critical(
                json.dumps({"event": "yara_rules_integrity_failed", "expected": expected, "actual": actual})
            )
            raise ConfigurationError("YARA rules integrity check failed.", reason="ruleset")
        return actual

    def version(self) -> str:
        """Return the rules version: a ``VERSION`` file beside the rules, else the hash prefix."""
        base = self._rules_path if os.path.isdir(self._rules_path) else os.path.dirname(self._rules_path)
        version_file = os.path.join(base, _VERSION_FILE)
        if os.path.isfile(version_file):
            with open(version_file, "r", encoding="utf-8") as fh:
                value = fh.read().strip()
            if value:
                return value
        return self.current_hash()[:12]
