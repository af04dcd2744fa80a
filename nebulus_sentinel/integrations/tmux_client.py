"""tmux pane I/O: the provider protocol and a subprocess adapter.

The sentinel core only talks to ``PaneProvider``. ``TmuxClient`` shells out to
the ``tmux`` binary; tests substitute in-memory fakes.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from nebulus_sentinel.errors import (
    PaneCaptureError,
    SendKeysError,
    ToolError,
    ToolNotInstalledError,
)

logger = logging.getLogger(__name__)

FIELD_SEP = "|===|"
SEND_CHUNK_SIZE = 4096
DEFAULT_TIMEOUT = 10

# session__type_index, session__type_index_variant, optional [tag,tag] suffix
PANE_TITLE_RE = re.compile(
    r"^.+__(\w+)_\d+(?:_([A-Za-z0-9._/@:+-]+))?(?:\[([^\]]*)\])?$"
)
TITLED_AGENT_TYPES = frozenset({"cc", "cod", "gmi"})

# tmux reports "no sessions" in several ways depending on version and socket
_NO_SERVER_MARKERS = (
    "no server running",
    "no sessions",
    "No such file or directory",
    "error connecting to",
)


@dataclass
class Session:
    name: str
    windows: int = 0
    attached: bool = False
    created: str = ""


@dataclass
class Pane:
    """One tmux pane and the agent type parsed from its title."""

    id: str
    index: int
    title: str = ""
    type: str = "user"
    variant: str = ""
    tags: list[str] = field(default_factory=list)
    command: str = ""
    active: bool = False


@runtime_checkable
class PaneProvider(Protocol):
    """Everything the sentinel needs from the terminal multiplexer."""

    def list_sessions(self) -> list[Session]: ...

    def get_panes(self, session: str) -> list[Pane]: ...

    def capture_pane_output(self, pane_id: str, max_lines: int) -> str: ...

    def get_pane_activity(self, pane_id: str) -> Optional[datetime]: ...

    def send_keys(self, target: str, text: str, submit: bool = True) -> None: ...


def parse_pane_title(title: str) -> tuple[str, str, list[str]]:
    """Extract (agent_type, variant, tags) from a pane title.

    Titles outside the naming convention, or with an agent code we do not
    manage, are user shells.
    """
    m = PANE_TITLE_RE.match(title)
    if not m:
        return "user", "", []
    agent_type, variant, tag_str = m.group(1), m.group(2) or "", m.group(3) or ""
    if agent_type not in TITLED_AGENT_TYPES:
        return "user", "", []
    tags = [t.strip() for t in tag_str.split(",") if t.strip()]
    return agent_type, variant, tags


class TmuxClient:
    """``PaneProvider`` backed by the local ``tmux`` binary.

    Args:
        binary: tmux executable name or path.
        timeout: Seconds before a tmux call is abandoned.
    """

    def __init__(self, binary: str = "tmux", timeout: int = DEFAULT_TIMEOUT) -> None:
        self.binary = binary
        self.timeout = timeout

    @property
    def installed(self) -> bool:
        return shutil.which(self.binary) is not None

    def _run(self, args: list[str]) -> str:
        """Run tmux and return stripped stdout.

        Raises:
            ToolNotInstalledError: If the tmux binary is not on PATH.
            ToolError: On non-zero exit or timeout.
        """
        binary = shutil.which(self.binary)
        if binary is None:
            raise ToolNotInstalledError("tmux")
        try:
            result = subprocess.run(
                [binary] + args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ToolError(
                "tmux", args, message=f"timed out after {self.timeout}s"
            ) from e
        except OSError as e:
            raise ToolError("tmux", args, message=str(e)) from e
        if result.returncode != 0:
            raise ToolError("tmux", args, stderr=result.stderr)
        return result.stdout.rstrip("\n")

    def list_sessions(self) -> list[Session]:
        fmt = FIELD_SEP.join(
            [
                "#{session_name}",
                "#{session_windows}",
                "#{session_attached}",
                "#{session_created_string}",
            ]
        )
        try:
            output = self._run(["list-sessions", "-F", fmt])
        except ToolError as e:
            if any(marker in e.stderr for marker in _NO_SERVER_MARKERS):
                return []
            raise

        sessions = []
        for line in output.splitlines():
            parts = line.split(FIELD_SEP)
            if len(parts) < 4:
                continue
            sessions.append(
                Session(
                    name=parts[0],
                    windows=_to_int(parts[1]),
                    attached=parts[2] == "1",
                    created=parts[3],
                )
            )
        return sessions

    def get_panes(self, session: str) -> list[Pane]:
        fmt = FIELD_SEP.join(
            [
                "#{pane_id}",
                "#{pane_index}",
                "#{pane_title}",
                "#{pane_current_command}",
                "#{pane_active}",
            ]
        )
        output = self._run(["list-panes", "-s", "-t", session, "-F", fmt])

        panes = []
        for line in output.splitlines():
            parts = line.split(FIELD_SEP)
            if len(parts) < 5:
                continue
            agent_type, variant, tags = parse_pane_title(parts[2])
            panes.append(
                Pane(
                    id=parts[0],
                    index=_to_int(parts[1]),
                    title=parts[2],
                    type=agent_type,
                    variant=variant,
                    tags=tags,
                    command=parts[3],
                    active=parts[4] == "1",
                )
            )
        return panes

    def capture_pane_output(self, pane_id: str, max_lines: int) -> str:
        """Capture the last ``max_lines`` lines of a pane.

        Raises:
            PaneCaptureError: If tmux cannot capture the pane.
            ToolNotInstalledError: If tmux is missing.
        """
        args = ["capture-pane", "-t", pane_id, "-p", "-S", f"-{max_lines}"]
        try:
            return self._run(args)
        except ToolNotInstalledError:
            raise
        except ToolError as e:
            raise PaneCaptureError(
                "tmux", e.args_list, stderr=e.stderr, message=f"cannot capture {pane_id}"
            ) from e

    def get_pane_activity(self, pane_id: str) -> Optional[datetime]:
        """Last output time of a pane, or None when tmux does not report one."""
        output = self._run(
            ["display-message", "-p", "-t", pane_id, "#{pane_last_activity}"]
        ).strip()
        if not output.isdigit():
            return None
        return datetime.fromtimestamp(int(output), tz=timezone.utc)

    def send_keys(self, target: str, text: str, submit: bool = True) -> None:
        """Type ``text`` literally into ``target``, then press Enter.

        Long payloads go in chunks to stay under argument size limits.

        Raises:
            SendKeysError: If any tmux call fails.
            ToolNotInstalledError: If tmux is missing.
        """
        try:
            for start in range(0, max(len(text), 1), SEND_CHUNK_SIZE):
                chunk = text[start : start + SEND_CHUNK_SIZE]
                self._run(["send-keys", "-t", target, "-l", "--", chunk])
            if submit:
                self._run(["send-keys", "-t", target, "C-m"])
        except ToolNotInstalledError:
            raise
        except ToolError as e:
            raise SendKeysError(
                "tmux", e.args_list, stderr=e.stderr, message=f"cannot send keys to {target}"
            ) from e
        logger.debug(f"Sent {len(text)} chars to {target}")


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0
