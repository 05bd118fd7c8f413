"""Notification handlers.

``notify`` picks a channel from params (``url`` -> webhook, otherwise
desktop when a notifier binary exists, else log). ``notify.log``,
``notify.webhook`` and ``notify.desktop`` force a channel.
"""

import asyncio
import shutil
import sys
from datetime import datetime, timezone
from typing import Any, Dict

import httpx
import structlog

from tasks.base_task import BaseTask, TaskOptions, TaskResult

logger = structlog.get_logger(__name__)

CHANNELS = ("log", "webhook", "desktop")


def _desktop_command(title: str, message: str):
    """Command line for the platform notifier, or None when unavailable."""
    if sys.platform == "darwin" and shutil.which("osascript"):
        script = f"display notification {_applescript_quote(message)} with title {_applescript_quote(title)}"
        return ["osascript", "-e", script]
    if shutil.which("notify-send"):
        return ["notify-send", title, message]
    return None


def _applescript_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class NotifyTask(BaseTask):
    """Send a notification.

    Params:
        title: Notification title (default: "automate")
        message: Notification body (required)
        url: Webhook URL (webhook channel)
        headers: Extra webhook headers
        channel: log | webhook | desktop (overridden by the action suffix)
    """

    task_type = "notify"
    display_name = "Notification"
    description = "Send a desktop, webhook or log notification"

    async def execute(self, action: str, params: Dict[str, Any], opts: TaskOptions) -> TaskResult:
        message = params.get("message")
        if message is None:
            return TaskResult.fail("Missing required param: message")
        title = str(params.get("title") or "automate")
        message = message if isinstance(message, str) else str(message)

        channel = action.split(".", 1)[1] if "." in action else params.get("channel")
        if channel is None:
            if params.get("url"):
                channel = "webhook"
            elif _desktop_command(title, message):
                channel = "desktop"
            else:
                channel = "log"
        if channel not in CHANNELS:
            return TaskResult.fail(f"Unknown notification channel: {channel}")

        if channel == "webhook":
            return await self._send_webhook(title, message, params, opts)
        if channel == "desktop":
            return await self._send_desktop(title, message)

        logger.info("Notification", title=title, message=message)
        return TaskResult.ok({"channel": "log", "title": title, "message": message})

    async def _send_webhook(self, title: str, message: str, params: Dict[str, Any], opts: TaskOptions) -> TaskResult:
        url = params.get("url")
        if not url:
            return TaskResult.fail("No webhook URL")

        headers = {
            "Content-Type": "application/json",
            **{str(k): str(v) for k, v in (params.get("headers") or {}).items()},
        }
        payload = {
            "title": title,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=15, transport=opts.http_transport) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Webhook send failed", url=url, error=str(e))
            return TaskResult.fail(f"Webhook send failed: {e}")

        return TaskResult.ok({"channel": "webhook", "url": url, "status": response.status_code})

    async def _send_desktop(self, title: str, message: str) -> TaskResult:
        command = _desktop_command(title, message)
        if command is None:
            return TaskResult.fail("No desktop notifier available (notify-send or osascript)")

        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=10)
        except asyncio.TimeoutError:
            process.kill()
            return TaskResult.fail("Desktop notification timed out")

        if process.returncode != 0:
            return TaskResult.fail(
                stderr.decode("utf-8", errors="replace").strip() or f"Exit code: {process.returncode}",
                exit_code=process.returncode,
            )
        return TaskResult.ok({"channel": "desktop", "title": title, "message": message})

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["message"],
            "properties": {
                "title": {"type": "string"},
                "message": {"type": "string"},
                "url": {"type": "string"},
                "headers": {"type": "object"},
                "channel": {"type": "string", "enum": list(CHANNELS)},
            },
        }


# Registry mapping
NOTIFY_TASK_TYPES = {
    "notify": NotifyTask,
}
