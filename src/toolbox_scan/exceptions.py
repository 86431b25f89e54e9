"""Exception hierarchy for toolbox-scan."""


class ScanError(Exception):
    """Base exception for all toolbox-scan errors."""
    pass


class ConfigurationError(ScanError):
    """Raised for bad flags, unknown tools, a missing target or a bad config file."""
    pass


class ToolNotFound(ConfigurationError):
    """Raised when a tool's executable cannot be located."""

    def __init__(self, tool: str, binary: str):
        self.tool = tool
        self.binary = binary
        super().__init__(
            f"{tool}: executable '{binary}' not found. Install it, put it on PATH, "
            f"or run inside the eth-security-toolbox image (--image)."
        )


class ReportParseError(ScanError):
    """Raised when a tool's report file is missing or malformed."""
    pass
