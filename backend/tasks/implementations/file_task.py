"""File system handlers: ``file.*``.

Paths are expanded (``~``) and made absolute against the daemon's or
CLI's working directory. Writes create missing parent directories.
"""

import glob
import shutil
from pathlib import Path
from typing import Any, Dict

import structlog

from tasks.base_task import BaseTask, TaskOptions, TaskResult
from workflow.expressions import resolve

logger = structlog.get_logger(__name__)

OPERATIONS = ("read", "write", "copy", "move", "delete", "glob", "template")


def _path(value: Any) -> Path:
    return Path(str(value)).expanduser().resolve()


class FileTask(BaseTask):
    """Read, write and move files.

    Actions:
        file.read: path -> {path, content, size}
        file.write: path, content -> {path, size}
        file.copy / file.move: source, destination -> {source, destination}
        file.delete: path -> {path, existed}
        file.glob: pattern, cwd -> {pattern, cwd, files, count}
        file.template: templatePath or content, variables, path (optional output file)
    """

    task_type = "file"
    display_name = "File"
    description = "Read, write, copy, move, delete, glob and render files"

    async def execute(self, action: str, params: Dict[str, Any], opts: TaskOptions) -> TaskResult:
        operation = action.split(".", 1)[1] if "." in action else params.get("operation")
        if operation not in OPERATIONS:
            return TaskResult.fail(f"Unknown file action: {action}")

        missing = [name for name in _REQUIRED[operation] if not params.get(name)]
        if missing:
            return TaskResult.fail(f"{action} requires param: {', '.join(missing)}")

        try:
            return getattr(self, f"_{operation}")(params)
        except OSError as e:
            logger.warning("File operation failed", action=action, error=str(e))
            return TaskResult.fail(f"{action} failed: {e}")

    # ─── Operations ────────────────────────────────────────

    def _read(self, params: Dict[str, Any]) -> TaskResult:
        path = _path(params["path"])
        if not path.is_file():
            return TaskResult.fail(f"File not found: {path}")
        content = path.read_text(encoding="utf-8")
        return TaskResult.ok({"path": str(path), "content": content, "size": len(content)})

    def _write(self, params: Dict[str, Any]) -> TaskResult:
        path = _path(params["path"])
        content = params.get("content")
        content = "" if content is None else content if isinstance(content, str) else str(content)
        _write_text(path, content)
        return TaskResult.ok({"path": str(path), "size": len(content)})

    def _copy(self, params: Dict[str, Any]) -> TaskResult:
        return self._transfer(params, shutil.copy2)

    def _move(self, params: Dict[str, Any]) -> TaskResult:
        return self._transfer(params, shutil.move)

    def _transfer(self, params: Dict[str, Any], operation) -> TaskResult:
        source = _path(params["source"])
        destination = _path(params["destination"])
        if not source.exists():
            return TaskResult.fail(f"Source not found: {source}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        operation(str(source), str(destination))
        return TaskResult.ok({"source": str(source), "destination": str(destination)})

    def _delete(self, params: Dict[str, Any]) -> TaskResult:
        path = _path(params["path"])
        existed = path.exists()
        if existed:
            path.unlink()
        return TaskResult.ok({"path": str(path), "existed": existed})

    def _glob(self, params: Dict[str, Any]) -> TaskResult:
        pattern = str(params["pattern"])
        cwd = _path(params["cwd"]) if params.get("cwd") else Path.cwd()
        files = sorted(
            str(cwd / match)
            for match in glob.glob(pattern, root_dir=cwd, recursive=True)
            if (cwd / match).is_file()
        )
        return TaskResult.ok({"pattern": pattern, "cwd": str(cwd), "files": files, "count": len(files)})

    def _template(self, params: Dict[str, Any]) -> TaskResult:
        if params.get("templatePath"):
            template_path = _path(params["templatePath"])
            if not template_path.is_file():
                return TaskResult.fail(f"Template not found: {template_path}")
            template = template_path.read_text(encoding="utf-8")
        else:
            template = params.get("content") or ""

        # Inline content was already interpolated; template files see only ``variables``
        variables = params.get("variables") or {}
        rendered = resolve(template, variables)
        rendered = rendered if isinstance(rendered, str) else str(rendered)

        if params.get("path"):
            path = _path(params["path"])
            _write_text(path, rendered)
            return TaskResult.ok({"path": str(path), "content": rendered})
        return TaskResult.ok({"content": rendered})

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "content": {"type": "string"},
                "source": {"type": "string"},
                "destination": {"type": "string"},
                "pattern": {"type": "string", "description": "Glob pattern, ** matches directories"},
                "cwd": {"type": "string"},
                "templatePath": {"type": "string"},
                "variables": {"type": "object"},
            },
        }


_REQUIRED = {
    "read": ("path",),
    "write": ("path",),
    "copy": ("source", "destination"),
    "move": ("source", "destination"),
    "delete": ("path",),
    "glob": ("pattern",),
    "template": (),
}


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


# Registry mapping
FILE_TASK_TYPES = {
    "file": FileTask,
}
