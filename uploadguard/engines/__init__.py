"""Malware scanning engines for UploadGuard.

Public re-exports for the engines package. Import scanners via this
module to avoid coupling to internal module layout::

    from uploadguard.engines import ClamAVScanner, ScanContext, ScanVerdict
"""

from uploadguard.engines.base import ScanContext, ScanPolicy, Scanner, ScanVerdict
from uploadguard.engines.clamav import ClamAVScanner
from uploadguard.engines.clamd_socket import ClamdSocketScanner
from uploadguard.engines.process import ProcessScanner
from uploadguard.engines.yara import YaraScanner
from uploadguard.engines.yara_rules import YaraRuleManager

__all__ = [
    "ClamAVScanner",
    "ClamdSocketScanner",
    "ProcessScanner",
    "ScanContext",
    "ScanPolicy",
    "ScanVerdict",
    "Scanner",
    "YaraRuleManager",
    "YaraScanner",
]
