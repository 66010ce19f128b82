"""
algod access: blocks, chain status, TEAL disassembly and application state.

All calls go through one aiohttp session owned by the caller. Transport
problems surface as NetworkError, unparseable bodies as DecodeError.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp
from pydantic import ValidationError

from .errors import DecodeError, NetworkError
from .helpers import b64_bytes, decode_state_value, state_key, to_addr
from .models import Block, BlockEnvelope, SignedTxnInBlock, StateValue, Transaction, TxnKind

logger = logging.getLogger(__name__)


class NodeClient:
    """Thin async client for the algod REST API."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str,
                 token: str = "", timeout: float = 15.0):
        self._session = session
        self.base_url = base_url.rstrip("/")
        self._headers = {"X-Algo-API-Token": token} if token else {}
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(self, method: str, path: str, **kw) -> bytes:
        url = f"{self.base_url}{path}"
        headers = {**self._headers, **kw.pop("headers", {})}
        try:
            async with self._session.request(method, url, headers=headers,
                                             timeout=self._timeout, **kw) as resp:
                body = await resp.read()
                if resp.status < 200 or resp.status >= 300:
                    raise NetworkError(f"{method} {path} -> HTTP {resp.status}", status=resp.status)
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"{method} {path} failed: {e!r}") from e

    async def get_json(self, path: str, **kw) -> Any:
        body = await self._request("GET", path, **kw)
        return _loads(body, path)

    async def last_round(self) -> int:
        data = await self.get_json("/v2/status")
        try:
            return int(data["last-round"])
        except (KeyError, TypeError, ValueError):
            raise DecodeError("status response has no last-round") from None

    async def disassemble(self, program: bytes) -> str:
        body = await self._request("POST", "/v2/teal/disassemble", data=program,
                                   headers={"Content-Type": "application/x-binary"})
        data = _loads(body, "/v2/teal/disassemble")
        if not isinstance(data, dict) or not isinstance(data.get("result"), str):
            raise DecodeError("disassemble response has no result text")
        return data["result"]

    async def application(self, app_id: int) -> Dict[str, Any]:
        return await self.get_json(f"/v2/applications/{app_id}")


def _loads(body: bytes, what: str) -> Any:
    try:
        return json.loads(body)
    except (UnicodeDecodeError, ValueError):
        raise DecodeError(f"{what}: response is not JSON") from None


# ---------- blocks ----------
def decode_txn(stxn: SignedTxnInBlock) -> Transaction:
    t = stxn.txn
    inner = ()
    if stxn.dt is not None and stxn.dt.itx:
        inner = tuple(decode_txn(i) for i in stxn.dt.itx)
    kind = TxnKind.APPLICATION_CALL if t.type == TxnKind.APPLICATION_CALL.value else TxnKind.OTHER
    return Transaction(
        kind=kind,
        sender=to_addr(t.snd),
        application_id=t.apid or None,
        created_application_id=stxn.apid or None,
        program=b64_bytes(t.apap) or None,
        arguments=tuple(b64_bytes(a) for a in (t.apaa or [])),
        inner=inner,
    )


def decode_block(payload: Any, round_: int) -> Block:
    try:
        env = BlockEnvelope.model_validate(payload)
    except ValidationError as e:
        raise DecodeError(f"round {round_}: not a block envelope ({e.error_count()} errors)") from None
    body = env.block
    txns = tuple(decode_txn(s) for s in (body.txns or []))
    return Block(round=body.rnd if body.rnd is not None else round_, transactions=txns)


class BlockFetcher:
    def __init__(self, node: NodeClient):
        self.node = node

    async def fetch_block(self, round_: int) -> Block:
        payload = await self.node.get_json(f"/v2/blocks/{round_}", params={"format": "json"})
        block = decode_block(payload, round_)
        logger.debug(f"[fetch] round {round_}: {len(block.transactions)} txns")
        return block


# ---------- application state ----------
class AppStateReader:
    def __init__(self, node: NodeClient):
        self.node = node

    async def fetch_global_state(self, app_id: int) -> Dict[str, StateValue]:
        data = await self.node.application(app_id)
        params = (data or {}).get("params") or {}
        out: Dict[str, StateValue] = {}
        for kv in params.get("global-state") or []:
            out[state_key(kv.get("key", ""))] = decode_state_value(kv.get("value") or {})
        return out


def state_to_json(state: Optional[Dict[str, StateValue]]) -> Optional[str]:
    if state is None:
        return None
    return json.dumps({k: v.to_dict() for k, v in sorted(state.items())})
