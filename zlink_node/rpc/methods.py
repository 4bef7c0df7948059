# zlink_node/rpc/methods.py - Daemon RPC surface used by the client
from decimal import Decimal
from typing import Any, Dict, List, Optional

from zlink_node.rpc.client import DaemonRPCClient


class DaemonAPI:
    """Typed wrappers over the daemon's versioned RPC contract"""

    def __init__(self, client: DaemonRPCClient):
        self.client = client

    @property
    def endpoint(self):
        return self.client.endpoint

    async def close(self):
        await self.client.close()

    async def call(self, method: str, params: Optional[List[Any]] = None,
                   timeout: Optional[float] = None) -> Any:
        return await self.client.call(method, params, timeout=timeout)

    async def get_info(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self.call("getinfo", timeout=timeout)

    async def get_blockchain_info(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self.call("getblockchaininfo", timeout=timeout)

    async def get_total_balance(self, minconf: int = 1,
                                timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self.call("z_gettotalbalance", [minconf], timeout=timeout)

    async def validate_address(self, address: str) -> Dict[str, Any]:
        return await self.call("z_validateaddress", [address])

    async def send_many(self, from_address: str, amounts: List[Dict[str, Any]],
                        minconf: int = 1, fee: Optional[Decimal] = None) -> str:
        """Submit an asynchronous send; returns the operation id"""
        params: List[Any] = [from_address, amounts, minconf]
        if fee is not None:
            params.append(float(fee))
        return await self.call("z_sendmany", params)

    async def get_operation_status(self, operation_ids: List[str],
                                   timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        return await self.call("z_getoperationstatus", [operation_ids], timeout=timeout)

    async def get_operation_result(self, operation_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch and clear finished operations from the daemon's list"""
        return await self.call("z_getoperationresult", [operation_ids])

    async def stop(self) -> Any:
        return await self.call("stop")
