"""Exception types for Nebulus Sentinel."""

from __future__ import annotations

from typing import Sequence


class SentinelError(Exception):
    """Base class for all sentinel errors."""


class ConfigError(SentinelError, ValueError):
    """Raised when sentinel configuration is invalid."""


class ToolNotInstalledError(SentinelError):
    """An external tool is not available on PATH.

    Probes treat this as a silent, expected condition rather than a fault.
    """

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} is not installed")


class ToolError(SentinelError):
    """An external tool ran but failed (exit code, timeout, bad output)."""

    def __init__(
        self,
        tool: str,
        args: Sequence[str] = (),
        stderr: str = "",
        message: str = "",
    ):
        self.tool = tool
        self.args_list = list(args)
        self.stderr = stderr
        detail = message or stderr.strip() or "command failed"
        super().__init__(f"{tool} {' '.join(self.args_list)}: {detail}".strip())


class PaneCaptureError(ToolError):
    """Pane output could not be captured."""


class SendKeysError(ToolError):
    """Keystrokes could not be delivered to a pane."""
