import asyncio
import logging
from typing import List, Optional

import aiohttp

from .classifier import ContractClassifier, TealLiteralClassifier
from .config import ARC72_TRANSFER_SIGNATURE, ScannerConfig
from .db import ContractRegistry, RoundCursor, RoundPersister
from .errors import DecodeError, NetworkError
from .helpers import args_to_u256, encode_addr, method_selector
from .models import (
    Block, ContractCreation, Extraction, RoundResult, Transaction, TransferCandidate,
)
from .node import AppStateReader, BlockFetcher, NodeClient, state_to_json
from .verifier import IndexerVerifier

logger = logging.getLogger(__name__)

TRANSFER_SELECTOR = method_selector(ARC72_TRANSFER_SIGNATURE)
TRANSFER_ARG_COUNT = 4


# ---------- extraction ----------
class TransferExtractor:
    """
    Walks a block in transaction order and applies two exclusive rules:

    - creation call carrying a program: classify it, note new ARC-72 contracts
    - call to an existing app with 4 args led by the arc72_transferFrom
      selector: emit a TransferCandidate (token = args[3], new owner = args[2])

    Inner transactions get the same treatment when `scan_inner` is set and are
    emitted right after their parent.
    """

    def __init__(self, classifier: ContractClassifier, scan_inner: bool = True,
                 selector: bytes = TRANSFER_SELECTOR):
        self.classifier = classifier
        self.scan_inner = scan_inner
        self.selector = selector

    async def extract(self, block: Block) -> Extraction:
        out = Extraction()
        for txn in block.transactions:
            await self._visit(block.round, txn, out)
        return out

    async def extract_candidates(self, block: Block) -> List[TransferCandidate]:
        return (await self.extract(block)).candidates

    async def _visit(self, round_: int, txn: Transaction, out: Extraction):
        if txn.is_creation:
            if await self.classifier.is_target_standard(txn.program):
                created = ContractCreation(round_, txn.created_application_id, txn.sender)
                out.creations.append(created)
                logger.info(f"[classify] new ARC-72 contract app={created.app_id} "
                            f"by {created.creator} @ round {round_}")
        elif txn.is_app_call and txn.application_id is not None:
            cand = self.match_transfer(round_, txn)
            if cand is not None:
                out.candidates.append(cand)

        if self.scan_inner:
            for itx in txn.inner:
                await self._visit(round_, itx, out)

    def match_transfer(self, round_: int, txn: Transaction) -> Optional[TransferCandidate]:
        args = txn.arguments
        if len(args) != TRANSFER_ARG_COUNT or args[0] != self.selector:
            return None
        owner = encode_addr(args[2])
        if owner is None:
            logger.warning(f"[extract] round {round_} app={txn.application_id}: "
                           f"recipient arg is {len(args[2])} bytes, not an address; skipped")
            return None
        return TransferCandidate(
            round=round_,
            contract_id=txn.application_id,
            token_id=args_to_u256(args[3:]),
            owner=owner,
        )


# ---------- round loop ----------
class RoundScanner:
    def __init__(self, cfg: ScannerConfig, node: NodeClient, fetcher: BlockFetcher,
                 extractor: TransferExtractor, verifier: IndexerVerifier,
                 persister: RoundPersister, cursor: RoundCursor,
                 registry: Optional[ContractRegistry] = None,
                 state_reader: Optional[AppStateReader] = None):
        self.cfg = cfg
        self.node = node
        self.fetcher = fetcher
        self.extractor = extractor
        self.verifier = verifier
        self.persister = persister
        self.cursor = cursor
        self.registry = registry
        self.state_reader = state_reader

    @classmethod
    def from_config(cls, cfg: ScannerConfig, session: aiohttp.ClientSession,
                    registry: Optional[ContractRegistry] = None) -> "RoundScanner":
        node = NodeClient(session, cfg.algod_url, cfg.algod_token, cfg.http_timeout)
        return cls(
            cfg,
            node=node,
            fetcher=BlockFetcher(node),
            extractor=TransferExtractor(TealLiteralClassifier(node, cfg.arc72_magic),
                                        scan_inner=cfg.scan_inner_txns),
            verifier=IndexerVerifier(session, cfg.verify_url, cfg.verify_token,
                                     cfg.http_timeout, cfg.verify_concurrency),
            persister=RoundPersister(cfg.output_dir),
            cursor=RoundCursor(cfg.state_path, cfg.start_round),
            registry=registry,
            state_reader=AppStateReader(node) if cfg.inspect_new_contracts else None,
        )

    async def _record(self, round_: int, found: Extraction, events) -> None:
        for created in found.creations:
            state_json = None
            if self.state_reader is not None and created.app_id is not None:
                try:
                    state = await self.state_reader.fetch_global_state(created.app_id)
                    state_json = state_to_json(state)
                except (NetworkError, DecodeError) as e:
                    logger.warning(f"[registry] global state of app={created.app_id} unavailable: {e}")
            self.registry.record_contract(created, state_json)
        self.registry.record_transfers(round_, events)
        self.registry.clear_skipped(round_)

    async def _fetch(self, n: int):
        attempts = self.cfg.fetch_retries + 1
        err = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.fetcher.fetch_block(n), None
            except (NetworkError, DecodeError) as e:
                err = e
                logger.warning(f"[round] {n} fetch attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.cfg.poll_interval)
        return None, err

    async def index_round(self, n: int, advance_cursor: bool = True) -> RoundResult:
        """
        Scan one round. A round that cannot be fetched after the configured
        retries yields no candidates: nothing is written, the cursor is left
        alone and the round is noted in the registry's skipped list.
        """
        block, err = await self._fetch(n)
        if block is None:
            logger.error(f"[round] {n} skipped, no block after {self.cfg.fetch_retries + 1} attempt(s): {err}")
            if self.registry is not None:
                self.registry.record_skipped(n, str(err), self.cfg.fetch_retries + 1)
            return RoundResult(round=n, fetched=False, error=str(err))

        found = await self.extractor.extract(block)
        events = await self.verifier.verify_all(found.candidates)

        self.persister.write_round(n, events)
        if self.registry is not None:
            await self._record(n, found, events)
        if advance_cursor:
            self.cursor.advance(n)

        logger.info(f"Indexed round {n} (txns {len(block.transactions)}, "
                    f"candidates {len(found.candidates)}, accepted {len(events)})")
        return RoundResult(
            round=n, fetched=True, txn_count=len(block.transactions),
            candidates=len(found.candidates), events=events, creations=found.creations,
        )

    async def index_range(self, start: int, end: int) -> List[RoundResult]:
        """Scan rounds [start, end] inclusive; rounds that cannot be fetched are skipped."""
        return [await self.index_round(n) for n in range(start, end + 1)]

    async def _tip(self) -> Optional[int]:
        try:
            return await self.node.last_round()
        except (NetworkError, DecodeError) as e:
            logger.error(f"[round] cannot read node status: {e}")
            return None

    async def run(self, start: Optional[int] = None, max_rounds: int = 0,
                  follow: bool = False) -> int:
        """
        Scan from `start` (or the cursor) towards the node tip. Without `follow`
        it returns once caught up or after `max_rounds` rounds; with `follow` it
        keeps polling the tip. Unfetchable rounds are skipped, not fatal.
        Returns the number of rounds scanned successfully.
        """
        n = start if start is not None else self.cursor.next_round()
        logger.info(f"[round] starting at {n} ({self.cfg.network})")
        attempted = scanned = 0
        tip = None
        while not max_rounds or attempted < max_rounds:
            if tip is None or n > tip:
                tip = await self._tip()
                if tip is None or n > tip:
                    if not follow:
                        break
                    await asyncio.sleep(self.cfg.poll_interval)
                    continue

            res = await self.index_round(n)
            attempted += 1
            if res.fetched:
                scanned += 1
            n += 1
        return scanned
