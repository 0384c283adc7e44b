"""YARA command-line scanner.

The rule file is copied into an exclusively created temporary file (mode
``0600``) for the duration of one scan so the engine never reads a rules file
that could change under it; the copy is removed in ``finally``.  The rule set
integrity check runs before every scan.

Accepted arguments: ``--fail-on-warnings``, ``--nothreads``,
``--print-tags``, ``--fast-scan`` and ``--timeout`` clamped to ``[1, 30]``.

``yara`` exits with 0 whether or not a rule matched and prints one line per
match, so a successful run with output is an infection.
"""
from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
import tempfile
from typing import Iterator

from uploadguard.config import settings
from uploadguard.core import paths
from uploadguard.core.exceptions import ConfigurationError
from uploadguard.engines.base import ScanVerdict
from uploadguard.engines.process import ProcessResult, ProcessScanner
from uploadguard.engines.yara_rules import RULE_EXTENSIONS, YaraRuleManager

logger = logging.getLogger(__name__)


class YaraScanner(ProcessScanner):
    """Rule-based scanner backed by the ``yara`` binary.

    Args:
        rules_path: Rule file to execute.  Must live under *rules_base*.
        rules_base: Directory rule files are allowed to come from.
        rule_manager: Integrity checker run before each scan; defaults to a
            :class:`~uploadguard.engines.yara_rules.YaraRuleManager` over
            *rules_path*.
        binary, allowed_binaries, arguments: See
            :class:`~uploadguard.engines.process.ProcessScanner`.
    """

    key = "yara"
    allowed_flags = frozenset({"--fail-on-warnings", "--nothreads", "--print-tags", "--fast-scan"})
    integer_arguments = {"--timeout": (1, 30)}

    def __init__(
        self,
        rules_path: str | None = None,
        rules_base: str | None = None,
        rule_manager: YaraRuleManager | None = None,
        binary: str | None = None,
        allowed_binaries: list[str] | None = None,
        arguments: list[str] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            binary=binary or settings.yara_binary,
            allowed_binaries=(
                allowed_binaries if allowed_binaries is not None else settings.yara_allowed_binaries
            ),
            arguments=arguments if arguments is not None else settings.yara_arguments,
            **kwargs,
        )
        self._rules_path = rules_path or settings.yara_rules_path
        self._rules_base = paths.canonical_root(rules_base or settings.yara_rules_base)
        self._rule_manager = rule_manager or YaraRuleManager(rules_path=self._rules_path)

    @contextlib.contextmanager
    def command(self, binary: str, arguments: list[str]) -> Iterator[list[str]]:
        source = self._resolve_rules()
        self._rule_manager.verify()

        suffix = os.path.splitext(source)[1].lower()
        fd, temporary = tempfile.mkstemp(prefix="uploadguard-yara-", suffix=suffix)
        try:
            os.chmod(temporary, 0o600)
            with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
                shutil.copyfileobj(src, out)
            yield [binary, *arguments, temporary, "-"]
        finally:
            try:
                os.unlink(temporary)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.error(json.dumps({"event": "yara_rules_cleanup_failed", "error": str(exc)}))

    def interpret(self, result: ProcessResult) -> ScanVerdict:
        if result.returncode == 0 and result.stdout.strip():
            return ScanVerdict.INFECTED
        return super().interpret(result)

    def _resolve_rules(self) -> str:
        if not self._rules_path:
            raise ConfigurationError("YARA rules path is not configured.", reason="ruleset")
        resolved = os.path.realpath(self._rules_path)
        if not resolved.lower().endswith(RULE_EXTENSIONS):
            raise ConfigurationError("YARA rules file has an unsupported extension.", reason="ruleset")
        if not paths.is_within(resolved, self._rules_base):
            raise ConfigurationError("YARA rules file is outside the rules base.", reason="ruleset")
        if not os.path.isfile(resolved):
            raise ConfigurationError("YARA rules file is missing.", reason="ruleset")
        return resolved
