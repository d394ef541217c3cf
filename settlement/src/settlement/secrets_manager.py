"""
secrets_manager
================

Loading of credentials for the external adapters (payment backends, the
accounting API, the custodian and the identity resolver).  Values are read
from the environment, from a file named by the ``{NAME}_FILE`` variable
(the file wins when both are set, which suits Docker/Kubernetes secret
mounts), or from AWS Secrets Manager when ``SECRETS_BACKEND=aws``.

Example usage::

    from settlement.secrets_manager import get_default_secrets_manager

    secrets = get_default_secrets_manager()
    api_key = secrets.get_secret("CUSTODIAN_API_KEY")
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import boto3  # type: ignore
except ImportError:
    boto3 = None  # type: ignore

logger = logging.getLogger(__name__)


class BaseSecretsManager:
    """Abstract base class for secrets managers."""

    def get_secret(self, name: str) -> Optional[str]:  # pragma: no cover - override
        """Return the secret value for ``name`` or ``None`` if unavailable."""
        raise NotImplementedError


class EnvFileSecretsManager(BaseSecretsManager):
    """Read ``NAME`` from the environment, or the file pointed to by ``NAME_FILE``."""

    def __init__(self, base_path: Optional[Path] = None) -> None:
        self.base_path = base_path
        self._cache: Dict[str, Optional[str]] = {}

    def get_secret(self, name: str) -> Optional[str]:
        if name in self._cache:
            return self._cache[name]
        file_path = os.getenv(f"{name}_FILE")
        if file_path:
            path = Path(file_path)
            if not path.is_absolute() and self.base_path is not None:
                path = self.base_path / path
            try:
                value: Optional[str] = path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                logger.warning("Failed to read secret file for %s: %s", name, exc)
                value = None
        else:
            value = os.getenv(name)
        self._cache[name] = value
        return value


class AwsSecretsManager(BaseSecretsManager):
    """
    Secrets stored in AWS Secrets Manager under ``{prefix}/{name}``.

    JSON secrets are flattened into the cache as ``name.key`` so that a
    single secret can hold, for instance, both the custodian key and secret.
    Lookups that fail fall back to the environment.
    """

    def __init__(self, *, prefix: Optional[str] = None, region_name: Optional[str] = None) -> None:
        if boto3 is None:
            raise RuntimeError(
                "boto3 is required for AwsSecretsManager; install the 'aws' extra"
            )
        self.prefix = prefix or os.getenv("AWS_SECRETS_PREFIX", "")
        self.region_name = region_name or os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION")
        self._cache: Dict[str, Optional[str]] = {}
        self._client: Any | None = None
        self.fallback = EnvFileSecretsManager()

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("secretsmanager", region_name=self.region_name)
        return self._client

    def get_secret(self, name: str) -> Optional[str]:
        if name in self._cache:
            return self._cache[name]
        secret_id = f"{self.prefix}/{name}" if self.prefix else name
        try:
            response = self.client.get_secret_value(SecretId=secret_id)
            value = response.get("SecretString")
        except Exception as exc:  # botocore raises a family of client errors
            logger.debug("Secret %s not found in AWS (%s); using environment", secret_id, exc)
            value = None
        if value and value.strip().startswith("{"):
            try:
                for key, item in json.loads(value).items():
                    self._cache[f"{name}.{key}"] = str(item)
            except ValueError:
                logger.warning("Secret %s looks like JSON but does not parse", secret_id)
        if value is None:
            value = self.fallback.get_secret(name)
        self._cache[name] = value
        return value


def get_default_secrets_manager() -> BaseSecretsManager:
    """Pick the backend named by ``SECRETS_BACKEND`` (``env`` by default, or ``aws``)."""
    base_path = Path(os.getenv("SECRETS_BASE_PATH", "/"))
    backend = os.getenv("SECRETS_BACKEND", "env").lower()
    if backend == "aws":
        try:
            return AwsSecretsManager()
        except RuntimeError as exc:
            logger.warning("AWS secrets backend unavailable (%s); using environment", exc)
    return EnvFileSecretsManager(base_path=base_path)


__all__ = [
    "BaseSecretsManager",
    "EnvFileSecretsManager",
    "AwsSecretsManager",
    "get_default_secrets_manager",
]
