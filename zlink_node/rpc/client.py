"""
JSON-RPC client for the full-node daemon

Stateless request/response transport: one HTTP POST per call, basic auth,
a fixed per-call timeout and classified errors. Retries are left to callers.
"""

import asyncio
import itertools
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from zlink_node.core.exceptions import (
    RPCApplicationError,
    RPCAuthError,
    RPCConnectionError,
    RPCProtocolError,
    RPCTimeoutError,
)
from zlink_node.core.types import NodeEndpoint

logger = logging.getLogger("zlink_node.rpc")

AUTH_FAILED_MESSAGE = (
    "Authentication failed. The username / password you specified was not "
    "accepted by the daemon."
)


class DaemonRPCClient:
    """RPC client bound to one immutable endpoint"""

    def __init__(self, endpoint: NodeEndpoint, timeout: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

        self.performance_metrics = {
            'requests_made': 0,
            'failures': 0,
            'average_response_time': 0.0
        }

    async def __aenter__(self) -> 'DaemonRPCClient':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            auth = None
            if self.endpoint.rpc_user:
                auth = aiohttp.BasicAuth(self.endpoint.rpc_user, self.endpoint.rpc_password)
            self._session = aiohttp.ClientSession(
                auth=auth,
                headers={'User-Agent': 'zlink/1.0', 'Accept': 'application/json'}
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def call(self, method: str, params: Optional[List[Any]] = None,
                   timeout: Optional[float] = None) -> Any:
        """
        Perform one JSON-RPC call and return its `result`

        Raises:
            RPCAuthError: credentials rejected
            RPCConnectionError: endpoint unreachable
            RPCTimeoutError: no response within the timeout
            RPCProtocolError: malformed response
            RPCApplicationError: daemon reported a failure
        """
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": params or []
        }
        call_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        start_time = time.monotonic()

        try:
            async with self._get_session().post(self.endpoint.url, json=payload,
                                                timeout=call_timeout) as response:
                body = await response.read()
                status = response.status
        except asyncio.TimeoutError:
            self._record(start_time, failed=True)
            raise RPCTimeoutError(
                f"No response from {self.endpoint} within {timeout or self.timeout}s",
                method)
        except aiohttp.ClientError as e:
            self._record(start_time, failed=True)
            raise RPCConnectionError(f"Cannot connect to daemon at {self.endpoint}",
                                     method, detail=str(e))

        self._record(start_time, failed=status != 200)
        return self._decode(method, status, body)

    def _decode(self, method: str, status: int, body: bytes) -> Any:
        if status in (401, 403):
            raise RPCAuthError(AUTH_FAILED_MESSAGE, method, detail=f"HTTP {status}")

        try:
            decoded = json.loads(body, parse_float=Decimal)
        except (ValueError, UnicodeDecodeError):
            raise RPCProtocolError(
                f"Malformed response to {method}", method,
                detail=f"HTTP {status}: {body[:200]!r}")

        if not isinstance(decoded, dict):
            raise RPCProtocolError(f"Unexpected response to {method}", method,
                                   detail=f"HTTP {status}")

        error = decoded.get('error')
        if error:
            if isinstance(error, dict):
                raise RPCApplicationError(int(error.get('code', 0)),
                                          str(error.get('message', 'Unknown RPC error')),
                                          method)
            raise RPCApplicationError(0, str(error), method)

        if status != 200:
            raise RPCProtocolError(f"Unexpected HTTP status {status} for {method}", method)

        if 'result' not in decoded:
            raise RPCProtocolError(f"Response to {method} has no result", method)

        return decoded['result']

    def _record(self, start_time: float, failed: bool):
        elapsed = time.monotonic() - start_time
        metrics = self.performance_metrics
        metrics['requests_made'] += 1
        if failed:
            metrics['failures'] += 1
        metrics['average_response_time'] = (
            metrics['average_response_time'] * (metrics['requests_made'] - 1) + elapsed
        ) / metrics['requests_made']

    def get_performance_metrics(self) -> Dict[str, Any]:
        return dict(self.performance_metrics)
