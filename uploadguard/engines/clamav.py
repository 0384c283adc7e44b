"""ClamAV command-line scanner.

Runs ``clamdscan`` (or ``clamscan``) with the artifact on stdin.  The binary
must be allowlisted; only a small set of arguments survives sanitization:

* flags: ``--no-summary``, ``--fdpass``, ``--stream``, ``--disable-cache``
* ``--max-filesize`` / ``--max-scansize`` clamped to ``[1, max_file_bytes]``
* ``--max-recursion`` clamped to ``[1, 32]``
* ``--timeout`` clamped to ``[1, 30]``

ClamAV exits with 0 when the input is clean and 1 when a signature matched,
which is exactly the :class:`~uploadguard.engines.process.ProcessScanner`
default interpretation.
"""
from __future__ import annotations

from uploadguard.config import settings
from uploadguard.engines.process import ProcessScanner


class ClamAVScanner(ProcessScanner):
    """Antivirus scanner backed by the ClamAV command-line client.

    Args:
        binary: Defaults to ``settings.clamav_binary``.
        allowed_binaries: Defaults to ``settings.clamav_allowed_binaries``.
        arguments: Defaults to ``settings.clamav_arguments``.
        **kwargs: Forwarded to :class:`~uploadguard.engines.process.ProcessScanner`.

    Example::

        scanner = ClamAVScanner(binary="/usr/bin/clamdscan")
        if scanner.scan(path, ScanContext()) is ScanVerdict.INFECTED:
            ...
    """

    key = "clamav"
    allowed_flags = frozenset({"--no-summary", "--fdpass", "--stream", "--disable-cache"})
    integer_arguments = {
        "--max-filesize": (1, None),
        "--max-scansize": (1, None),
        "--max-recursion": (1, 32),
        "--timeout": (1, 30),
    }

    def __init__(
        self,
        binary: str | None = None,
        allowed_binaries: list[str] | None = None,
        arguments: list[str] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            binary=binary or settings.clamav_binary,
            allowed_binaries=(
                allowed_binaries if allowed_binaries is not None else settings.clamav_allowed_binaries
            ),
            arguments=arguments if arguments is not None else settings.clamav_arguments,
            **kwargs,
        )
