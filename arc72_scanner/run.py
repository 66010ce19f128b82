import argparse
import logging
import sys

import aiohttp
import uvloop

from .config import ScannerConfig, load_config
from .db import ContractRegistry
from .errors import ConfigError
from .indexer import RoundScanner

logger = logging.getLogger("arc72_scanner")


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="arc72-scanner", description="Scan rounds for verified ARC-72 transfers")
    p.add_argument("--round", type=int, help="scan this single round and exit")
    p.add_argument("--start", type=int, help="start here instead of the saved round")
    p.add_argument("--max-rounds", type=int, default=None, help="stop after N rounds (0 = until tip)")
    p.add_argument("--follow", action="store_true", help="keep polling for new rounds")
    p.add_argument("--env", default=".env", help="dotenv file to load")
    return p.parse_args(argv)


async def scan(cfg: ScannerConfig, args) -> int:
    registry = ContractRegistry.open(cfg.db_path)
    try:
        async with aiohttp.ClientSession() as session:
            scanner = RoundScanner.from_config(cfg, session, registry)
            if args.round is not None:
                # one-off rescans leave the resume point alone
                res = await scanner.index_round(args.round, advance_cursor=False)
                return 0 if res.fetched else 1
            max_rounds = cfg.max_rounds if args.max_rounds is None else max(0, args.max_rounds)
            n = await scanner.run(start=args.start, max_rounds=max_rounds, follow=args.follow)
            logger.info(f"[round] done, {n} round(s) scanned")
            return 0
    finally:
        registry.close()


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config(dotenv_path=args.env)
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    if not cfg.scan_enabled:
        logger.info("[round] SCAN_ENABLED is off; nothing to do")
        return 0
    return uvloop.run(scan(cfg, args))


if __name__ == "__main__":
    sys.exit(main())
