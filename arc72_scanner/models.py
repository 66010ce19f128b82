from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict


# ---------- domain ----------
class TxnKind(Enum):
    APPLICATION_CALL = "appl"
    OTHER = "other"


@dataclass(frozen=True)
class Transaction:
    kind: TxnKind
    sender: Optional[str] = None
    application_id: Optional[int] = None
    created_application_id: Optional[int] = None
    program: Optional[bytes] = None
    arguments: Tuple[bytes, ...] = ()
    inner: Tuple["Transaction", ...] = ()

    @property
    def is_app_call(self) -> bool:
        return self.kind is TxnKind.APPLICATION_CALL

    @property
    def is_creation(self) -> bool:
        return self.is_app_call and self.application_id is None and bool(self.program)


@dataclass(frozen=True)
class Block:
    round: int
    transactions: Tuple[Transaction, ...] = ()


@dataclass(frozen=True)
class TransferCandidate:
    round: int
    contract_id: int
    token_id: int
    owner: str

    def to_payload(self) -> dict:
        return {
            "round": self.round,
            "contractId": self.contract_id,
            "tokenId": self.token_id,
            "owner": self.owner,
        }


@dataclass(frozen=True)
class TransferEvent(TransferCandidate):
    """A candidate the verification service accepted."""

    @classmethod
    def from_candidate(cls, c: TransferCandidate) -> "TransferEvent":
        return cls(round=c.round, contract_id=c.contract_id, token_id=c.token_id, owner=c.owner)

    @classmethod
    def from_payload(cls, d: dict) -> "TransferEvent":
        return cls(round=int(d["round"]), contract_id=int(d["contractId"]),
                   token_id=int(d["tokenId"]), owner=str(d["owner"]))


@dataclass(frozen=True)
class ContractCreation:
    round: int
    app_id: Optional[int]
    creator: Optional[str]


@dataclass
class Extraction:
    candidates: List[TransferCandidate] = field(default_factory=list)
    creations: List[ContractCreation] = field(default_factory=list)


@dataclass(frozen=True)
class StateValue:
    """Decoded application global-state value: address, text or uint."""
    kind: str
    value: Union[str, int]

    def to_dict(self) -> dict:
        return {"kind": self.kind, "value": self.value}


@dataclass
class RoundResult:
    round: int
    fetched: bool
    txn_count: int = 0
    candidates: int = 0
    events: List[TransferEvent] = field(default_factory=list)
    creations: List[ContractCreation] = field(default_factory=list)
    error: Optional[str] = None


# ---------- algod block envelope (GET /v2/blocks/{round}) ----------
class TxnFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = ""
    snd: Optional[str] = None
    apid: Optional[int] = None
    apap: Optional[str] = None
    apaa: Optional[List[str]] = None


class ApplyData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    itx: Optional[List["SignedTxnInBlock"]] = None


class SignedTxnInBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    txn: TxnFields
    apid: Optional[int] = None     # app id created by this txn (apply data)
    dt: Optional[ApplyData] = None


class BlockBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rnd: Optional[int] = None
    txns: Optional[List[SignedTxnInBlock]] = None


class BlockEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    block: BlockBody


for _m in (ApplyData, SignedTxnInBlock, BlockBody, BlockEnvelope):
    _m.model_rebuild()
