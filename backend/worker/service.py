"""OS service integration for the daemon.

Writes a systemd user unit on Linux or a launchd agent on macOS that
runs ``automate daemon start``. Loading the service is left to the
operator; ``install`` returns the command to run.
"""

import asyncio
import logging
import shutil
import sys
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from app.config import Settings, get_settings
from core.exceptions import AutomateError, NotFoundError

logger = logging.getLogger(__name__)

SERVICE_NAME = "automate-daemon"
LAUNCHD_LABEL = "dev.automate.daemon"

SYSTEMD_UNIT = """[Unit]
Description=automate scheduler daemon
After=network-online.target

[Service]
Type=simple
ExecStart={command} daemon start
Restart=on-failure
RestartSec=10
Environment=AUTOMATE_DATA_DIR={data_dir}

[Install]
WantedBy=default.target
"""

LAUNCHD_PLIST = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{label}</string>
    <key>ProgramArguments</key>
    <array>
        <string>{command}</string>
        <string>daemon</string>
        <string>start</string>
    </array>
    <key>EnvironmentVariables</key>
    <dict>
        <key>AUTOMATE_DATA_DIR</key>
        <string>{data_dir}</string>
    </dict>
    <key>RunAtLoad</key>
    <true/>
    <key>KeepAlive</key>
    <true/>
    <key>StandardErrorPath</key>
    <string>{log_file}</string>
</dict>
</plist>
"""


def _platform() -> str:
    if sys.platform == "darwin":
        return "launchd"
    if sys.platform.startswith("linux"):
        return "systemd"
    raise AutomateError(f"Service install is not supported on {sys.platform}")


def service_path(platform: Optional[str] = None, home: Optional[Path] = None) -> Path:
    platform = platform or _platform()
    home = home or Path.home()
    if platform == "launchd":
        return home / "Library" / "LaunchAgents" / f"{LAUNCHD_LABEL}.plist"
    return home / ".config" / "systemd" / "user" / f"{SERVICE_NAME}.service"


def render_service(settings: Settings, platform: Optional[str] = None, command: Optional[str] = None) -> str:
    platform = platform or _platform()
    command = command or shutil.which("automate") or f"{sys.executable} -m cli.main"
    if platform == "launchd":
        return LAUNCHD_PLIST.format(
            label=LAUNCHD_LABEL,
            command=command,
            data_dir=settings.data_path,
            log_file=settings.log_path,
        )
    return SYSTEMD_UNIT.format(command=command, data_dir=settings.data_path)


def install_service(
    settings: Optional[Settings] = None,
    platform: Optional[str] = None,
    home: Optional[Path] = None,
    command: Optional[str] = None,
) -> tuple[Path, str]:
    """Write the service file.

    Returns:
        (path written, command that loads the service)
    """
    settings = settings or get_settings()
    platform = platform or _platform()
    path = service_path(platform, home)
    path.parent.mkdir(parents=True, exist_ok=True)
    settings.log_path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_service(settings, platform, command))
    logger.info(f"[service] Wrote {path}")

    if platform == "launchd":
        return path, f"launchctl load -w {path}"
    return path, f"systemctl --user daemon-reload && systemctl --user enable --now {SERVICE_NAME}"


def uninstall_service(platform: Optional[str] = None, home: Optional[Path] = None) -> Path:
    """Remove the service file.

    Raises:
        NotFoundError: Nothing is installed
    """
    path = service_path(platform, home)
    if not path.exists():
        raise NotFoundError(f"No service installed at {path}")
    path.unlink()
    logger.info(f"[service] Removed {path}")
    return path


# ── Log tail ────────────────────────────────────────────────────

def tail_lines(path: Path, lines: int = 50) -> list[str]:
    """Last ``lines`` lines of a log file.

    Raises:
        NotFoundError: The log file does not exist yet
    """
    if not path.exists():
        raise NotFoundError(f"No daemon log at {path}")
    with path.open("r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]


async def follow(path: Path, emit: Callable[[str], None], poll: float = 0.5) -> None:
    """Emit lines appended to ``path`` until cancelled; restarts on truncation."""
    with path.open("r", encoding="utf-8", errors="replace") as f:
        f.seek(0, 2)
        while True:
            line = f.readline()
            if line:
                emit(line.rstrip("\n"))
                continue
            if path.exists() and path.stat().st_size < f.tell():
                f.seek(0)
                continue
            await asyncio.sleep(poll)
