import json
import logging
import os
import sqlite3
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Sequence

from .models import ContractCreation, TransferEvent

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    k TEXT PRIMARY KEY,
    v TEXT
);

-- ARC-72 applications seen being created
CREATE TABLE IF NOT EXISTS contracts (
    app_id            INTEGER PRIMARY KEY,
    created_round     INTEGER NOT NULL,
    creator           TEXT,
    global_state_json TEXT,
    updated_at        INTEGER
);

-- verified transfers, replaced per round
CREATE TABLE IF NOT EXISTS nft_transfers (
    round       INTEGER NOT NULL,
    seq         INTEGER NOT NULL,
    contract_id INTEGER NOT NULL,
    token_id    TEXT NOT NULL,      -- uint256 as decimal string
    owner       TEXT NOT NULL,
    PRIMARY KEY (round, seq)
);
CREATE INDEX IF NOT EXISTS idx_nft_token ON nft_transfers(contract_id, token_id);

-- current owner map
CREATE TABLE IF NOT EXISTS nft_owners (
    contract_id INTEGER,
    token_id    TEXT,
    owner       TEXT,
    PRIMARY KEY (contract_id, token_id)
);
CREATE INDEX IF NOT EXISTS idx_nft_owner ON nft_owners(owner);

-- rounds that could not be fetched; cleared once a rescan succeeds
CREATE TABLE IF NOT EXISTS skipped_rounds (
    round      INTEGER PRIMARY KEY,
    reason     TEXT,
    attempts   INTEGER,
    updated_at INTEGER
);
"""


def _atomic_write(path: Path, text: str) -> None:
    # temp file in the target dir + rename, so readers never see half a file
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        # mkstemp creates 0600; output files are meant to be world-readable
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


# ---------- scan state ----------
class RoundCursor:
    """Last scanned round, kept as a single integer in a text file."""

    def __init__(self, path: str, default_round: int):
        self.path = Path(path)
        self.default_round = default_round

    def last_round(self) -> Optional[int]:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"[cursor] cannot read {self.path}: {e}")
            return None
        try:
            n = int(raw)
        except ValueError:
            logger.warning(f"[cursor] ignoring corrupt state {raw!r} in {self.path}")
            return None
        return n if n > 0 else None

    def next_round(self) -> int:
        last = self.last_round()
        return self.default_round if last is None else last + 1

    def advance(self, confirmed_round: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.path, f"{int(confirmed_round)}\n")


# ---------- per-round output ----------
class RoundPersister:
    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir)

    def path_for(self, round_: int) -> Path:
        return self.output_dir / f"{int(round_)}.json"

    def write_round(self, round_: int, events: Sequence[TransferEvent]) -> Path:
        if not self.output_dir.exists():
            self.output_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"[persist] created output folder {self.output_dir}")
        path = self.path_for(round_)
        doc = json.dumps([e.to_payload() for e in events], indent=2)
        _atomic_write(path, doc + "\n")
        return path

    def read_round(self, round_: int) -> List[TransferEvent]:
        data = json.loads(self.path_for(round_).read_text(encoding="utf-8"))
        return [TransferEvent.from_payload(d) for d in data]


# ---------- sqlite registry ----------
def db(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn


def ensure_schema(conn: sqlite3.Connection):
    conn.executescript(SCHEMA)
    conn.execute("INSERT OR IGNORE INTO meta(k, v) VALUES('last_recorded_round','-1');")


def get_meta(conn, key, default):
    row = conn.execute("SELECT v FROM meta WHERE k=?", (key,)).fetchone()
    return row[0] if row else default


def set_meta(conn, key, value):
    conn.execute("INSERT INTO meta(k,v) VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v;", (key, value))


class ContractRegistry:
    """Known ARC-72 contracts, verified transfers and the current owner of each token."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        ensure_schema(conn)

    @classmethod
    def open(cls, path: str) -> "ContractRegistry":
        return cls(db(path))

    def close(self):
        self.conn.close()

    def record_contract(self, created: ContractCreation, global_state_json: Optional[str] = None):
        if created.app_id is None:
            return
        self.conn.execute("""
            INSERT INTO contracts(app_id, created_round, creator, global_state_json, updated_at)
            VALUES(?,?,?,?,?)
            ON CONFLICT(app_id) DO UPDATE SET
                created_round=excluded.created_round,
                creator=excluded.creator,
                global_state_json=COALESCE(excluded.global_state_json, contracts.global_state_json),
                updated_at=excluded.updated_at
        """, (created.app_id, created.round, created.creator, global_state_json, int(time.time())))

    def record_transfers(self, round_: int, events: Sequence[TransferEvent]):
        c = self.conn
        c.execute("BEGIN")
        try:
            c.execute("DELETE FROM nft_transfers WHERE round=?", (round_,))
            for seq, e in enumerate(events):
                token = str(e.token_id)
                c.execute("""
                    INSERT INTO nft_transfers(round, seq, contract_id, token_id, owner)
                    VALUES (?,?,?,?,?)
                """, (round_, seq, e.contract_id, token, e.owner))
                c.execute("""
                    INSERT INTO nft_owners(contract_id, token_id, owner)
                    VALUES(?,?,?)
                    ON CONFLICT(contract_id, token_id) DO UPDATE SET owner=excluded.owner
                """, (e.contract_id, token, e.owner))
            set_meta(c, "last_recorded_round", str(round_))
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise

    def record_skipped(self, round_: int, reason: str, attempts: int):
        self.conn.execute("""
            INSERT INTO skipped_rounds(round, reason, attempts, updated_at)
            VALUES(?,?,?,?)
            ON CONFLICT(round) DO UPDATE SET
                reason=excluded.reason,
                attempts=skipped_rounds.attempts + excluded.attempts,
                updated_at=excluded.updated_at
        """, (round_, reason, attempts, int(time.time())))

    def clear_skipped(self, round_: int):
        self.conn.execute("DELETE FROM skipped_rounds WHERE round=?", (round_,))

    def skipped_rounds(self) -> List[int]:
        return [r[0] for r in self.conn.execute("SELECT round FROM skipped_rounds ORDER BY round ASC")]

    def owner_of(self, contract_id: int, token_id: int) -> Optional[str]:
        row = self.conn.execute(
            "SELECT owner FROM nft_owners WHERE contract_id=? AND token_id=?",
            (contract_id, str(token_id)),
        ).fetchone()
        return row[0] if row else None

    def transfers(self, round_: int) -> List[TransferEvent]:
        rows = self.conn.execute("""
            SELECT round, contract_id, token_id, owner FROM nft_transfers
            WHERE round=? ORDER BY seq ASC
        """, (round_,)).fetchall()
        return [TransferEvent(round=r[0], contract_id=r[1], token_id=int(r[2]), owner=r[3]) for r in rows]

    def contract(self, app_id: int) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT app_id, created_round, creator, global_state_json FROM contracts WHERE app_id=?",
            (app_id,),
        ).fetchone()
        if not row:
            return None
        return {
            "app_id": row[0],
            "created_round": row[1],
            "creator": row[2],
            "global_state": json.loads(row[3]) if row[3] else None,
        }

    def last_recorded_round(self) -> int:
        return int(get_meta(self.conn, "last_recorded_round", "-1"))
