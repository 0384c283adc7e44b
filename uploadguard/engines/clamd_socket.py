"""ClamAV daemon scanner over TCP or a unix socket (INSTREAM).

Streams the artifact bytes to a running ``clamd`` so the daemon does not need
filesystem access to the quarantine volume.  The same target checks as the
subprocess scanners apply before any byte leaves the process.

clamd answers with ``{"stream": (result_code, detail)}``:

* ``("OK", None)``      clean
* ``("FOUND", name)``   infected
* ``("ERROR", msg)``    treated as an infrastructure failure
"""
from __future__ import annotations

import json
import logging

import clamd

from uploadguard.config import settings
from uploadguard.core import paths
from uploadguard.core.exceptions import InfrastructureError
from uploadguard.engines.base import ScanContext, Scanner, ScanVerdict
from uploadguard.engines.process import validate_target

logger = logging.getLogger(__name__)

_STATUS_FOUND = "FOUND"
_STATUS_OK = "OK"


class ClamdSocketScanner(Scanner):
    """Scanner that talks to ``clamd`` over a network or unix socket.

    A new client is created per scan because ``clamd`` does not multiplex
    requests on one connection.

    Args:
        host: clamd host.  Defaults to ``settings.clamd_host``.
        port: clamd port.  Defaults to ``settings.clamd_port``.
        socket_path: Unix socket of a local clamd.  When set (or
            ``settings.clamd_socket_path`` is) it replaces host and port.
        timeout_seconds: Socket timeout.  Defaults to
            ``settings.scan_timeout_seconds``.
        allowed_base_path: Directory scanned targets must live in.
        max_file_bytes: Largest target accepted.
    """

    key = "clamd"

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        socket_path: str | None = None,
        timeout_seconds: float | None = None,
        allowed_base_path: str | None = None,
        max_file_bytes: int | None = None,
    ) -> None:
        self._host = host or settings.clamd_host
        self._port = port or settings.clamd_port
        self._socket_path = socket_path or settings.clamd_socket_path
        self._timeout = timeout_seconds or settings.scan_timeout_seconds
        self._base_path = paths.canonical_root(allowed_base_path or settings.quarantine_root)
        self._max_file_bytes = max_file_bytes or settings.scan_max_file_bytes

    def scan(self, path: str, context: ScanContext) -> ScanVerdict:
        target = validate_target(path, self._base_path, self._max_file_bytes)
        try:
            with open(target, "rb") as handle:
                response = self._get_client().instream(handle)
        except clamd.ConnectionError as exc:
            raise InfrastructureError(
                "ClamAV daemon unreachable.", reason="unreachable", retryable=True
            ) from exc
        except (OSError, clamd.ResponseError) as exc:
            raise InfrastructureError(
                "ClamAV daemon scan failed.", reason="process_failed", retryable=True
            ) from exc

        result_code, detail = (response or {}).get("stream", (None, None))
        if result_code == _STATUS_FOUND:
            logger.warning(
                json.dumps(
                    {
                        "event": "scan_result",
                        "scanner": self.key,
                        "result": "infected",
                        "signature": detail,
                        "correlation_id": context.correlation_id,
                    }
                )
            )
            return ScanVerdict.INFECTED
        if result_code == _STATUS_OK:
            logger.info(
                json.dumps(
                    {
                        "event": "scan_result",
                        "scanner": self.key,
                        "result": "clean",
                        "correlation_id": context.correlation_id,
                    }
                )
            )
            return ScanVerdict.CLEAN
        raise InfrastructureError(
            "ClamAV daemon returned an unexpected response.",
            reason="process_failed",
            retryable=True,
        )

    def ping(self) -> bool:
        try:
            return self._get_client().ping() == "PONG"
        except Exception as exc:  # noqa: BLE001
            logger.warning("clamd ping failed: %r", exc)
            return False

    def _get_client(self) -> clamd.ClamdNetworkSocket:
        if self._socket_path:
            return clamd.ClamdUnixSocket(path=self._socket_path, timeout=self._timeout)
        return clamd.ClamdNetworkSocket(host=self._host, port=self._port, timeout=self._timeout)
