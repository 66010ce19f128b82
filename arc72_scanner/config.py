import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError

# -------- network defaults --------
NETWORKS = ("mainnet", "testnet")
ALGOD_MAINNET_DEFAULT = "https://mainnet-api.algonode.cloud"
ALGOD_TESTNET_DEFAULT = "https://testnet-api.algonode.cloud"

# ARC-72 core interface id, as it shows up in disassembled TEAL
ARC72_MAGIC_DEFAULT = "0x53f02a40"
ARC72_TRANSFER_SIGNATURE = "arc72_transferFrom(address,address,uint256)void"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ScannerConfig:
    algod_url: str
    verify_url: Optional[str]
    network: str = "mainnet"
    algod_token: str = ""
    verify_token: str = ""
    start_round: int = 1
    state_path: str = "arc72_round.txt"
    output_dir: str = "rounds"
    db_path: str = "arc72_index.sqlite"
    arc72_magic: str = ARC72_MAGIC_DEFAULT
    scan_enabled: bool = True
    scan_inner_txns: bool = True
    inspect_new_contracts: bool = True
    fetch_retries: int = 2
    verify_concurrency: int = 8
    http_timeout: float = 15.0
    poll_interval: float = 2.0
    max_rounds: int = 0
    log_level: str = "INFO"


# -------- env parsing --------
def _env_int(env, key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _env_float(env, key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


def _env_bool(env, key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _with_port(url: str, port: str) -> str:
    url = url.rstrip("/")
    return f"{url}:{port}" if port else url


def load_config(env=None, dotenv_path: str = ".env") -> ScannerConfig:
    """Build the scanner config from the environment (after loading `.env`)."""
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    network = (env.get("NETWORK") or "mainnet").strip().lower()
    if network not in NETWORKS:
        raise ConfigError(f"NETWORK must be one of {NETWORKS}, got {network!r}")
    testnet = network == "testnet"

    if testnet:
        algod = env.get("ALGOD_TESTNET_SERVER") or ALGOD_TESTNET_DEFAULT
        verify = env.get("VERIFY_TESTNET_URL") or None
    else:
        algod = env.get("ALGOD_SERVER") or ALGOD_MAINNET_DEFAULT
        verify = env.get("VERIFY_URL") or None

    cfg = ScannerConfig(
        network=network,
        algod_url=_with_port(algod, (env.get("ALGOD_PORT") or "").strip()),
        algod_token=env.get("ALGOD_TOKEN") or "",
        verify_url=verify,
        verify_token=env.get("VERIFY_TOKEN") or "",
        start_round=_env_int(env, "START_ROUND", 1),
        state_path=env.get("STATE_PATH") or "arc72_round.txt",
        output_dir=env.get("OUTPUT_DIR") or "rounds",
        db_path=env.get("DB_PATH") or "arc72_index.sqlite",
        arc72_magic=(env.get("ARC72_MAGIC") or ARC72_MAGIC_DEFAULT).lower(),
        scan_enabled=_env_bool(env, "SCAN_ENABLED", True),
        scan_inner_txns=_env_bool(env, "SCAN_INNER_TXNS", True),
        inspect_new_contracts=_env_bool(env, "INSPECT_NEW_CONTRACTS", True),
        fetch_retries=max(0, _env_int(env, "FETCH_RETRIES", 2)),
        verify_concurrency=max(1, _env_int(env, "VERIFY_CONCURRENCY", 8)),
        http_timeout=_env_float(env, "HTTP_TIMEOUT", 15.0),
        poll_interval=_env_float(env, "POLL_INTERVAL", 2.0),
        max_rounds=max(0, _env_int(env, "MAX_ROUNDS", 0)),
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )

    if cfg.scan_enabled and not cfg.verify_url:
        var = "VERIFY_TESTNET_URL" if testnet else "VERIFY_URL"
        raise SystemExit(f"Missing {var} in .env")
    return cfg
