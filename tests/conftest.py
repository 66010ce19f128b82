import base64
import json
from urllib.parse import urlsplit

import pytest
from algosdk import encoding

from arc72_scanner.config import ScannerConfig
from arc72_scanner.indexer import TRANSFER_SELECTOR

ALGOD = "http://algod.test"
VERIFY = "http://verify.test/arc72/verify"

SENDER_PK = bytes(range(32))
OWNER_PK = bytes(range(100, 132))
SENDER = encoding.encode_address(SENDER_PK)
OWNER = encoding.encode_address(OWNER_PK)


def b64(b: bytes) -> str:
    return base64.b64encode(b).decode()


def token_bytes(n: int, width: int = 32) -> bytes:
    return n.to_bytes(width, "big")


def appl(apid=None, args=(), apap=None, snd=SENDER_PK, inner=(), created=None) -> dict:
    """Block txn entry as algod's JSON block encoding renders it."""
    txn = {"type": "appl", "snd": b64(snd)}
    if apid is not None:
        txn["apid"] = apid
    if apap is not None:
        txn["apap"] = b64(apap)
    if args:
        txn["apaa"] = [b64(a) for a in args]
    entry = {"txn": txn, "hgi": True}
    if created is not None:
        entry["apid"] = created
    if inner:
        entry["dt"] = {"itx": list(inner)}
    return entry


def pay(snd=SENDER_PK) -> dict:
    return {"txn": {"type": "pay", "snd": b64(snd), "amt": 1000}, "hgi": True}


def transfer_args(token: int, owner_pk: bytes = OWNER_PK, selector: bytes = TRANSFER_SELECTOR):
    return (selector, SENDER_PK, owner_pk, token_bytes(token))


def block_json(rnd: int, txns=None) -> dict:
    block = {"rnd": rnd, "ts": 1700000000}
    if txns:
        block["txns"] = list(txns)
    return {"block": block}


# ---------- fake aiohttp ----------
class FakeResponse:
    def __init__(self, status=200, body=b""):
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode()
        elif isinstance(body, str):
            body = body.encode()
        self.status = status
        self._body = body

    async def read(self):
        return self._body

    async def text(self, encoding="utf-8", errors="strict"):
        return self._body.decode(encoding, errors)


class _Ctx:
    def __init__(self, result):
        self._result = result

    async def __aenter__(self):
        if isinstance(self._result, BaseException):
            raise self._result
        return self._result

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Routes (METHOD, path) to a response, an exception, or a callable(kw) returning either."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def route(self, method, path, result):
        self.routes[(method, path)] = result

    def request(self, method, url, **kw):
        path = urlsplit(url).path
        self.calls.append((method, path, kw))
        result = self.routes.get((method, path), FakeResponse(404, {"message": "not found"}))
        if callable(result):
            result = result(kw)
        return _Ctx(result)

    def calls_to(self, method, path):
        return [c for c in self.calls if c[0] == method and c[1] == path]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def cfg(tmp_path):
    return ScannerConfig(
        algod_url=ALGOD,
        verify_url=VERIFY,
        start_round=100,
        state_path=str(tmp_path / "state" / "round.txt"),
        output_dir=str(tmp_path / "rounds"),
        db_path=str(tmp_path / "index.sqlite"),
        verify_concurrency=4,
        poll_interval=0.0,
    )
