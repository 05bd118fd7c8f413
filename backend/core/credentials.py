"""Named credentials turned into HTTP header contributions.

The credentials file is a JSON object keyed by credential name::

    {
        "github": {"type": "bearer", "token": "{{ env.GITHUB_TOKEN }}"},
        "jira": {"type": "basic", "username": "me", "password": "{{ env.JIRA_PASS }}"},
        "stats": {"type": "apikey", "headerName": "X-Api-Key", "key": "abc"},
        "legacy": {"type": "custom", "headers": {"X-Token": "abc"}}
    }

String values may reference ``env`` so secrets stay out of the file.
"""

import base64
import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog

from app.config import get_settings
from core.constants import CredentialType
from core.exceptions import ExpressionError, NotFoundError, ValidationError
from workflow.expressions import resolve_params

logger = structlog.get_logger(__name__)


class CredentialResolver:
    """Looks up credentials by name from a JSON file."""

    def __init__(self, path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None):
        self.path = path or get_settings().credentials_path
        self._env = env
        self._cache: Optional[dict[str, Any]] = None

    def _load(self) -> dict[str, Any]:
        if self._cache is not None:
            return self._cache
        if not self.path.is_file():
            self._cache = {}
            return self._cache
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid credentials file {self.path}", [str(e)]) from e
        if not isinstance(data, dict):
            raise ValidationError(f"Invalid credentials file {self.path}", ["top level must be an object"])
        self._cache = data
        return data

    def names(self) -> list[str]:
        return sorted(self._load())

    def resolve(self, name: str) -> dict[str, dict[str, str]]:
        """Return ``{"headerContributions": {...}}`` for a named credential.

        Raises:
            NotFoundError: Unknown credential name
            ValidationError: Malformed entry or unresolvable env reference
        """
        entry = self._load().get(name)
        if entry is None:
            raise NotFoundError(f"Credential '{name}' not found in {self.path}")
        if not isinstance(entry, dict):
            raise ValidationError(f"Credential '{name}' must be an object")

        env = dict(self._env if self._env is not None else os.environ)
        try:
            values = resolve_params(entry, {"env": env})
        except ExpressionError as e:
            raise ValidationError(f"Credential '{name}' could not be resolved", [e.message]) from e

        try:
            cred_type = CredentialType(values.get("type"))
        except ValueError:
            raise ValidationError(f"Credential '{name}' has unknown type '{values.get('type')}'")

        if cred_type == CredentialType.BEARER:
            headers = {"Authorization": f"Bearer {values.get('token') or ''}"}
        elif cred_type == CredentialType.BASIC:
            raw = f"{values.get('username') or ''}:{values.get('password') or ''}".encode()
            headers = {"Authorization": f"Basic {base64.b64encode(raw).decode()}"}
        elif cred_type == CredentialType.API_KEY:
            headers = {values.get("headerName") or "X-API-Key": str(values.get("key") or "")}
        else:
            custom = values.get("headers") or {}
            if not isinstance(custom, dict):
                raise ValidationError(f"Credential '{name}': headers must be an object")
            headers = {str(k): str(v) for k, v in custom.items()}

        logger.debug("Credential resolved", credential=name, type=cred_type.value, headers=sorted(headers))
        return {"headerContributions": headers}
