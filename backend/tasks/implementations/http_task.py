"""HTTP request handler.

Serves ``http.get``, ``http.post``, ``http.put``, ``http.patch`` and
``http.delete``. Named credentials contribute headers through the
credential resolver.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from app.config import get_settings
from core.exceptions import AutomateError
from tasks.base_task import BaseTask, TaskOptions, TaskResult
from workflow.expressions import evaluate

logger = structlog.get_logger(__name__)

METHODS = ("get", "post", "put", "patch", "delete")


class HttpRequestTask(BaseTask):
    """Execute HTTP requests.

    Params:
        url: Target URL (required)
        query: URL query parameters
        headers: Extra headers (applied after credential headers)
        body: Request body; dicts and lists are sent as JSON
        credential: Name of a credential to apply
        timeout: Request timeout in seconds (default: settings.HTTP_TIMEOUT)
        validateStatus: Expression over ``status`` deciding success
            (default: 2xx)
    """

    task_type = "http"
    display_name = "HTTP Request"
    description = "Make HTTP requests to APIs and web services"

    async def execute(self, action: str, params: Dict[str, Any], opts: TaskOptions) -> TaskResult:
        method = action.split(".", 1)[1].upper() if "." in action else str(params.get("method", "GET")).upper()
        if method.lower() not in METHODS:
            return TaskResult.fail(f"Unsupported HTTP method: {method}")

        url = params.get("url")
        if not url:
            return TaskResult.fail("Missing required param: url")

        timeout = float(params.get("timeout") or get_settings().HTTP_TIMEOUT)
        headers = {"Content-Type": "application/json", "Accept": "application/json"}

        credential = params.get("credential")
        if credential:
            if opts.credentials is None:
                return TaskResult.fail(f"Credential '{credential}' requested but no credential store is configured")
            try:
                headers.update(opts.credentials.resolve(credential)["headerContributions"])
            except AutomateError as e:
                return TaskResult.fail(e.message)

        headers.update({str(k): str(v) for k, v in (params.get("headers") or {}).items()})

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": headers,
            "params": params.get("query") or None,
        }
        body = params.get("body")
        if body is not None and method in ("POST", "PUT", "PATCH", "DELETE"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=opts.http_transport) as client:
                response = await client.request(**kwargs)
        except httpx.TimeoutException:
            return TaskResult.fail(f"Request timed out after {timeout}s")
        except httpx.HTTPError as e:
            return TaskResult.fail(f"HTTP request failed: {e}")

        output = {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "body": self._parse_body(response),
        }

        ok = self._is_ok(response.status_code, params.get("validateStatus"))
        logger.info("HTTP request finished", method=method, url=str(response.url), status=response.status_code)
        if not ok:
            return TaskResult.fail(f"HTTP {response.status_code} {response.reason_phrase}".strip(), output=output)
        return TaskResult.ok(output)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except ValueError:
                return response.text
        return response.text

    @staticmethod
    def _is_ok(status: int, validate: Optional[Any]) -> bool:
        if validate is None:
            return 200 <= status < 300
        if isinstance(validate, bool):
            return validate
        if isinstance(validate, list):
            return status in validate
        return bool(evaluate(str(validate), {"status": status}))

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "description": "Target URL"},
                "query": {"type": "object"},
                "headers": {"type": "object"},
                "body": {},
                "credential": {"type": "string"},
                "timeout": {"type": "number"},
                "validateStatus": {"type": "string", "description": "Expression over status"},
            },
        }


# Registry mapping
HTTP_TASK_TYPES = {
    "http": HttpRequestTask,
}
