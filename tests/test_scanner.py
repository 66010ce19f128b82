"""
End-to-end round scans against a fake node and verification service.

Tests:
- single transfer accepted -> one event in the round file
- empty round -> empty array, cursor still moves
- creation without the ARC-72 literal -> nothing
- rejected candidates never reach the output
- idempotent re-scan
- failed fetch is retried, then skipped: no output, cursor kept, round noted
- run() continues past skipped rounds, stops at the tip / follows max_rounds
"""
import json
from pathlib import Path

import pytest

from arc72_scanner.db import ContractRegistry, RoundCursor
from arc72_scanner.indexer import RoundScanner

from conftest import (
    OWNER, SENDER, FakeResponse, appl, b64, block_json, pay, transfer_args,
)

VERIFY_PATH = "/arc72/verify"
ARC72_TEAL = "#pragma version 9\npushbytes 0x53f02a40\n"


@pytest.fixture
def registry(cfg):
    reg = ContractRegistry.open(cfg.db_path)
    yield reg
    reg.close()


@pytest.fixture
def scanner(cfg, session, registry):
    session.route("POST", VERIFY_PATH, FakeResponse(200))
    session.route("POST", "/v2/teal/disassemble", FakeResponse(200, {"result": "#pragma version 9\nint 1\n"}))
    return RoundScanner.from_config(cfg, session, registry)


def output(cfg, rnd):
    return json.loads((Path(cfg.output_dir) / f"{rnd}.json").read_text())


class TestIndexRound:

    @pytest.mark.asyncio
    async def test_single_transfer_accepted(self, cfg, session, scanner):
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100, [
            appl(apid=42, args=transfer_args(7)),
        ])))
        res = await scanner.index_round(100)

        assert res.fetched and res.candidates == 1
        assert output(cfg, 100) == [{"round": 100, "contractId": 42, "tokenId": 7, "owner": OWNER}]
        assert scanner.cursor.next_round() == 101
        assert scanner.registry.owner_of(42, 7) == OWNER

    @pytest.mark.asyncio
    async def test_empty_round(self, cfg, session, scanner):
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100)))
        res = await scanner.index_round(100)

        assert res.fetched and res.txn_count == 0
        assert output(cfg, 100) == []
        assert RoundCursor(cfg.state_path, 1).next_round() == 101
        assert session.calls_to("POST", VERIFY_PATH) == []

    @pytest.mark.asyncio
    async def test_creation_without_literal(self, cfg, session, scanner):
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100, [
            appl(apap=b"\x09\x81\x01", created=900),
        ])))
        res = await scanner.index_round(100)

        assert res.candidates == 0 and res.creations == []
        assert output(cfg, 100) == []
        assert scanner.registry.contract(900) is None

    @pytest.mark.asyncio
    async def test_new_arc72_contract_recorded_with_state(self, cfg, session, scanner):
        session.route("POST", "/v2/teal/disassemble", FakeResponse(200, {"result": ARC72_TEAL}))
        session.route("GET", "/v2/applications/900", FakeResponse(200, {"id": 900, "params": {
            "global-state": [{"key": b64(b"name"), "value": {"type": 1, "bytes": b64(b"Cats"), "uint": 0}}],
        }}))
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100, [
            appl(apap=b"\x09\x81\x01", created=900),
        ])))
        res = await scanner.index_round(100)

        assert [c.app_id for c in res.creations] == [900]
        assert output(cfg, 100) == []
        c = scanner.registry.contract(900)
        assert c["creator"] == SENDER
        assert c["global_state"] == {"name": {"kind": "text", "value": "Cats"}}

    @pytest.mark.asyncio
    async def test_state_lookup_failure_still_records_contract(self, cfg, session, scanner):
        session.route("POST", "/v2/teal/disassemble", FakeResponse(200, {"result": ARC72_TEAL}))
        session.route("GET", "/v2/applications/900", FakeResponse(503))
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100, [
            appl(apap=b"\x09", created=900),
        ])))
        await scanner.index_round(100)
        assert scanner.registry.contract(900)["global_state"] is None

    @pytest.mark.asyncio
    async def test_rejected_candidate_not_persisted(self, cfg, session, scanner):
        session.route("POST", VERIFY_PATH,
                      lambda kw: FakeResponse(200 if kw["json"]["tokenId"] == 1 else 422))
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100, [
            appl(apid=42, args=transfer_args(1)),
            pay(),
            appl(apid=42, args=transfer_args(2)),
        ])))
        res = await scanner.index_round(100)

        assert res.candidates == 2
        assert [e["tokenId"] for e in output(cfg, 100)] == [1]
        assert len(session.calls_to("POST", VERIFY_PATH)) == 2

    @pytest.mark.asyncio
    async def test_verifier_down_gives_empty_round(self, cfg, session, scanner):
        session.route("POST", VERIFY_PATH, FakeResponse(502))
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100, [
            appl(apid=42, args=transfer_args(1)),
        ])))
        res = await scanner.index_round(100)
        assert res.fetched and res.events == []
        assert output(cfg, 100) == []

    @pytest.mark.asyncio
    async def test_rescan_is_byte_identical(self, cfg, session, scanner):
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100, [
            appl(apid=42, args=transfer_args(7)),
            appl(apid=43, args=transfer_args(2 ** 255)),
        ])))
        path = Path(cfg.output_dir) / "100.json"
        await scanner.index_round(100)
        first = path.read_bytes()
        await scanner.index_round(100)
        assert path.read_bytes() == first
        assert len(scanner.registry.transfers(100)) == 2

    @pytest.mark.asyncio
    async def test_failed_fetch_writes_nothing(self, cfg, session, scanner):
        session.route("GET", "/v2/blocks/100", FakeResponse(500))
        res = await scanner.index_round(100)

        assert not res.fetched and res.events == []
        assert res.error
        assert not (Path(cfg.output_dir) / "100.json").exists()
        assert scanner.cursor.next_round() == cfg.start_round
        assert len(session.calls_to("GET", "/v2/blocks/100")) == cfg.fetch_retries + 1
        assert scanner.registry.skipped_rounds() == [100]

    @pytest.mark.asyncio
    async def test_fetch_retry_recovers(self, cfg, session, scanner):
        replies = iter([FakeResponse(502), FakeResponse(200, block_json(100))])
        session.route("GET", "/v2/blocks/100", lambda kw: next(replies))
        res = await scanner.index_round(100)

        assert res.fetched
        assert output(cfg, 100) == []
        assert len(session.calls_to("GET", "/v2/blocks/100")) == 2
        assert scanner.registry.skipped_rounds() == []

    @pytest.mark.asyncio
    async def test_rescan_clears_skipped_round(self, cfg, session, scanner):
        session.route("GET", "/v2/blocks/100", FakeResponse(500))
        await scanner.index_round(100)
        assert scanner.registry.skipped_rounds() == [100]

        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100)))
        await scanner.index_round(100)
        assert scanner.registry.skipped_rounds() == []

    @pytest.mark.asyncio
    async def test_single_round_without_cursor_advance(self, cfg, session, scanner):
        scanner.cursor.advance(500)
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100, [
            appl(apid=42, args=transfer_args(7)),
        ])))
        res = await scanner.index_round(100, advance_cursor=False)

        assert res.fetched
        assert output(cfg, 100)[0]["tokenId"] == 7
        assert scanner.cursor.next_round() == 501

    @pytest.mark.asyncio
    async def test_malformed_block_writes_nothing(self, cfg, session, scanner):
        session.route("GET", "/v2/blocks/100", FakeResponse(200, "not json"))
        res = await scanner.index_round(100)
        assert not res.fetched
        assert not Path(cfg.output_dir).exists()


class TestRun:

    @pytest.mark.asyncio
    async def test_scans_from_cursor_to_tip(self, cfg, session, scanner):
        session.route("GET", "/v2/status", FakeResponse(200, {"last-round": 102}))
        for r in (100, 101, 102):
            session.route("GET", f"/v2/blocks/{r}", FakeResponse(200, block_json(r)))

        assert await scanner.run() == 3
        assert scanner.cursor.next_round() == 103
        assert sorted(p.name for p in Path(cfg.output_dir).iterdir()) == ["100.json", "101.json", "102.json"]

    @pytest.mark.asyncio
    async def test_resumes_from_saved_round(self, cfg, session, scanner):
        scanner.cursor.advance(101)
        session.route("GET", "/v2/status", FakeResponse(200, {"last-round": 102}))
        session.route("GET", "/v2/blocks/102", FakeResponse(200, block_json(102)))

        assert await scanner.run() == 1
        assert session.calls_to("GET", "/v2/blocks/100") == []

    @pytest.mark.asyncio
    async def test_max_rounds(self, cfg, session, scanner):
        session.route("GET", "/v2/status", FakeResponse(200, {"last-round": 1000}))
        for r in range(100, 110):
            session.route("GET", f"/v2/blocks/{r}", FakeResponse(200, block_json(r)))

        assert await scanner.run(max_rounds=2) == 2
        assert scanner.cursor.next_round() == 102

    @pytest.mark.asyncio
    async def test_continues_past_failed_fetch(self, cfg, session, scanner):
        session.route("GET", "/v2/status", FakeResponse(200, {"last-round": 103}))
        for r in (100, 102, 103):
            session.route("GET", f"/v2/blocks/{r}", FakeResponse(200, block_json(r)))
        session.route("GET", "/v2/blocks/101", FakeResponse(500))

        assert await scanner.run() == 3
        assert scanner.cursor.next_round() == 104
        assert sorted(p.name for p in Path(cfg.output_dir).iterdir()) == ["100.json", "102.json", "103.json"]
        assert scanner.registry.skipped_rounds() == [101]

    @pytest.mark.asyncio
    async def test_max_rounds_counts_skipped_rounds(self, cfg, session, scanner):
        session.route("GET", "/v2/status", FakeResponse(200, {"last-round": 1000}))
        session.route("GET", "/v2/blocks/100", FakeResponse(500))
        session.route("GET", "/v2/blocks/101", FakeResponse(200, block_json(101)))

        assert await scanner.run(max_rounds=2) == 1
        assert session.calls_to("GET", "/v2/blocks/102") == []
        assert scanner.registry.skipped_rounds() == [100]

    @pytest.mark.asyncio
    async def test_node_status_unavailable(self, cfg, session, scanner):
        session.route("GET", "/v2/status", FakeResponse(503))
        assert await scanner.run() == 0

    @pytest.mark.asyncio
    async def test_explicit_start(self, cfg, session, scanner):
        session.route("GET", "/v2/status", FakeResponse(200, {"last-round": 500}))
        session.route("GET", "/v2/blocks/500", FakeResponse(200, block_json(500)))
        assert await scanner.run(start=500) == 1
        assert scanner.cursor.next_round() == 501

    @pytest.mark.asyncio
    async def test_index_range_inclusive(self, cfg, session, scanner):
        for r in (100, 101):
            session.route("GET", f"/v2/blocks/{r}", FakeResponse(200, block_json(r)))
        results = await scanner.index_range(100, 101)
        assert [r.round for r in results] == [100, 101]

    @pytest.mark.asyncio
    async def test_index_range_skips_unfetchable_round(self, cfg, session, scanner):
        session.route("GET", "/v2/blocks/100", FakeResponse(200, block_json(100)))
        session.route("GET", "/v2/blocks/101", FakeResponse(200, "not json"))
        session.route("GET", "/v2/blocks/102", FakeResponse(200, block_json(102)))
        results = await scanner.index_range(100, 102)

        assert [(r.round, r.fetched) for r in results] == [(100, True), (101, False), (102, True)]
        assert not (Path(cfg.output_dir) / "101.json").exists()
        assert scanner.registry.skipped_rounds() == [101]
