"""Thin JSON-RPC 2.0 client over ``httpx``."""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Hashable, Sequence, TypeVar

import httpx

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

K = TypeVar("K", bound=Hashable)
R = TypeVar("R")


class RpcError(RuntimeError):
    """Raised for transport failures, non-2xx responses and JSON-RPC error objects."""

    def __init__(self, method: str, message: str, *, code: int | None = None) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method
        self.code = code


class JsonRpcClient:
    """POST JSON-RPC envelopes to a single endpoint.

    The underlying ``httpx.Client`` is thread-safe, so one instance can serve
    concurrent block or signature fetches.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        if not url:
            raise ValueError("JSON-RPC endpoint URL is required")
        self.url = url
        self._client = client or httpx.Client(timeout=timeout, headers={"Content-Type": "application/json"})
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def call(self, method: str, params: Sequence[Any] | None = None) -> Any:
        """Invoke ``method`` and return its ``result`` member."""

        envelope = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": list(params or [])}
        try:
            response = self._client.post(self.url, json=envelope)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise RpcError(method, f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise RpcError(method, f"transport error: {exc}") from exc
        except ValueError as exc:
            raise RpcError(method, "response was not valid JSON") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise RpcError(method, message, code=code)
        if not isinstance(body, dict) or "result" not in body:
            raise RpcError(method, "response missing result")
        return body["result"]

    def close(self) -> None:
        self._client.close()


def fetch_all(fetch: Callable[[K], R], keys: Sequence[K], *, max_workers: int = 1) -> Dict[K, R | None]:
    """Run ``fetch`` for every key with bounded concurrency.

    Keys whose fetch raised :class:`RpcError` map to ``None``; the failure is
    logged and the remaining keys are still fetched.
    """

    def _safe(key: K) -> tuple[K, R | None]:
        try:
            return key, fetch(key)
        except RpcError as exc:
            LOGGER.warning("Fetch failed for %s: %s", key, exc)
            return key, None

    if not keys:
        return {}
    if max_workers <= 1 or len(keys) == 1:
        return dict(_safe(key) for key in keys)
    with ThreadPoolExecutor(max_workers=min(max_workers, len(keys))) as pool:
        return dict(pool.map(_safe, keys))


__all__ = ["DEFAULT_TIMEOUT_SECONDS", "JsonRpcClient", "RpcError", "fetch_all"]
