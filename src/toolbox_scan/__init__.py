"""toolbox-scan: run Echidna, Slither and Manticore over a Solidity project as one pipeline."""

from .exceptions import ConfigurationError, ReportParseError, ScanError, ToolNotFound
from .models import ScanReport, ScanRequest, ScanResult, ScanStatus, ToolName, ToolSpec
from .orchestrator import ScanOrchestrator, make_request

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ReportParseError",
    "ScanError",
    "ScanOrchestrator",
    "ScanReport",
    "ScanRequest",
    "ScanResult",
    "ScanStatus",
    "ToolName",
    "ToolNotFound",
    "ToolSpec",
    "make_request",
]
