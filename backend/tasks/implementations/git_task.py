"""Git handlers: ``git.*``.

Every action shells out to the ``git`` binary in ``cwd`` (default: the
process working directory). A non-zero git exit fails the step with
git's stderr and exit code.
"""

import asyncio
import shutil
from typing import Any, Dict, List, Optional, Tuple

import structlog

from tasks.base_task import BaseTask, TaskOptions, TaskResult

logger = structlog.get_logger(__name__)

OPERATIONS = ("status", "commit", "branch", "diff", "log")
DEFAULT_TIMEOUT = 60


class GitCommandError(Exception):
    def __init__(self, args: List[str], returncode: int, stderr: str):
        self.returncode = returncode
        super().__init__(stderr or f"git {' '.join(args)} exited with {returncode}")


class GitTask(BaseTask):
    """Inspect and update a git working tree.

    Actions:
        git.status: -> {branch, hasChanges, files: [{status, path}]}
        git.commit: message (default "Automated commit"), files (default: all)
        git.branch: branch (required), from
        git.diff: from (default HEAD~1), to (default HEAD)
        git.log: limit (default 10), from, to (default HEAD)

    Common params: cwd, timeout (seconds).
    """

    task_type = "git"
    display_name = "Git"
    description = "Status, commit, branch, diff and log for a repository"

    async def execute(self, action: str, params: Dict[str, Any], opts: TaskOptions) -> TaskResult:
        operation = action.split(".", 1)[1] if "." in action else params.get("operation")
        if operation not in OPERATIONS:
            return TaskResult.fail(f"Unknown git action: {action}")
        if shutil.which("git") is None:
            return TaskResult.fail("git executable not found on PATH")

        self._cwd = str(params["cwd"]) if params.get("cwd") else None
        self._timeout = float(params.get("timeout") or DEFAULT_TIMEOUT)
        try:
            return await getattr(self, f"_{operation}")(params)
        except GitCommandError as e:
            logger.warning("git command failed", action=action, cwd=self._cwd, exit_code=e.returncode)
            return TaskResult.fail(str(e), exit_code=e.returncode)
        except asyncio.TimeoutError:
            return TaskResult.fail(f"{action} timed out after {self._timeout:g}s")

    async def _git(self, *args: str, check: bool = True) -> Tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=self._cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace").strip()
        if check and process.returncode != 0:
            raise GitCommandError(list(args), process.returncode, err)
        return process.returncode, out, err

    # ─── Operations ────────────────────────────────────────

    async def _status(self, params: Dict[str, Any]) -> TaskResult:
        _, branch, _ = await self._git("rev-parse", "--abbrev-ref", "HEAD", check=False)
        _, porcelain, _ = await self._git("status", "--porcelain")
        files = [
            {"status": line[:2].strip(), "path": line[3:]}
            for line in porcelain.splitlines()
            if line
        ]
        return TaskResult.ok({"branch": branch.strip() or None, "hasChanges": bool(files), "files": files})

    async def _commit(self, params: Dict[str, Any]) -> TaskResult:
        message = str(params.get("message") or "Automated commit")
        files = [str(f) for f in params.get("files") or []]
        await self._git("add", *(files or ["-A"]))

        code, out, err = await self._git("commit", "-m", message, check=False)
        if code != 0:
            if "nothing to commit" in out or "nothing added to commit" in out:
                return TaskResult.ok({"committed": False, "message": "Nothing to commit"})
            return TaskResult.fail(err or out.strip(), exit_code=code)

        _, sha, _ = await self._git("rev-parse", "--short", "HEAD")
        return TaskResult.ok({"committed": True, "sha": sha.strip(), "message": message})

    async def _branch(self, params: Dict[str, Any]) -> TaskResult:
        if not params.get("branch"):
            return TaskResult.fail("git.branch requires a 'branch' param")
        branch = str(params["branch"])
        base: Optional[str] = str(params["from"]) if params.get("from") else None
        await self._git("checkout", "-b", branch, *([base] if base else []))
        return TaskResult.ok({"branch": branch})

    async def _diff(self, params: Dict[str, Any]) -> TaskResult:
        ref_from = str(params.get("from") or "HEAD~1")
        ref_to = str(params.get("to") or "HEAD")
        _, diff, _ = await self._git("diff", f"{ref_from}..{ref_to}")
        return TaskResult.ok({"from": ref_from, "to": ref_to, "diff": diff})

    async def _log(self, params: Dict[str, Any]) -> TaskResult:
        limit = int(params.get("limit") or 10)
        args = ["log", "--oneline", f"-{limit}"]
        if params.get("from"):
            args.append(f"{params['from']}..{params.get('to') or 'HEAD'}")
        _, out, _ = await self._git(*args)

        commits = []
        for line in out.splitlines():
            if not line:
                continue
            sha, _, subject = line.partition(" ")
            commits.append({"sha": sha, "message": subject})
        return TaskResult.ok({"commits": commits, "count": len(commits)})

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "cwd": {"type": "string", "description": "Repository path"},
                "message": {"type": "string"},
                "files": {"type": "array", "items": {"type": "string"}},
                "branch": {"type": "string"},
                "from": {"type": "string"},
                "to": {"type": "string"},
                "limit": {"type": "integer"},
                "timeout": {"type": "number"},
            },
        }


# Registry mapping
GIT_TASK_TYPES = {
    "git": GitTask,
}
