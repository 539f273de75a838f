"""
Cached reader for SSM SecureString parameters.

The first call for a parameter name fetches it from AWS SSM with decryption;
later calls within ``ttl_seconds`` are served from memory. Seqera access tokens
are stored per laboratory, so one reader instance caches many names.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError

from .aws_clients import error_code


class ParameterStoreError(RuntimeError):
    """Raised when a parameter cannot be read or is empty."""

    def __init__(self, name: str, reason: str, *, transient: bool) -> None:
        self.name = name
        self.reason = reason
        self.transient = transient
        super().__init__(f"{reason}:{name}")


class SsmParameterReader:
    def __init__(
        self,
        client: Any,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> str:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None and (now - cached[1]) < self._ttl_seconds:
                return cached[0]
        try:
            response = self._client.get_parameter(Name=name, WithDecryption=True)
        except (BotoCoreError, ClientError) as exc:
            transient = error_code(exc) != "ParameterNotFound"
            raise ParameterStoreError(name, f"ssm_get_parameter_failed:{error_code(exc)}", transient=transient) from exc
        value = (response.get("Parameter") or {}).get("Value") if isinstance(response, dict) else None
        if not value:
            raise ParameterStoreError(name, "ssm_parameter_empty", transient=False)
        with self._lock:
            self._cache[name] = (str(value), now)
        return str(value)

    def invalidate(self, name: str) -> None:
        with self._lock:
            self._cache.pop(name, None)
