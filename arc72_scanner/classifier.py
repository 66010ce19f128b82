import abc
import logging
from typing import Dict, Protocol

from .config import ARC72_MAGIC_DEFAULT
from .errors import ScannerError
from .helpers import checksum

logger = logging.getLogger(__name__)


class Disassembler(Protocol):
    async def disassemble(self, program: bytes) -> str: ...


class ContractClassifier(abc.ABC):
    """Decides whether a compiled approval program implements ARC-72."""

    @abc.abstractmethod
    async def is_target_standard(self, program: bytes) -> bool: ...


class TealLiteralClassifier(ContractClassifier):
    """
    Heuristic: disassemble the program and look for the ARC-72 magic literal
    anywhere in the TEAL text. A substring test, so unrelated occurrences
    match too and obfuscated programs slip through.

    Verdicts are cached per program digest for the lifetime of the instance;
    failed disassemblies count as "no" and are not cached.
    """

    def __init__(self, disassembler: Disassembler, magic: str = ARC72_MAGIC_DEFAULT):
        self.disassembler = disassembler
        self.magic = magic.lower()
        self._seen: Dict[bytes, bool] = {}

    async def is_target_standard(self, program: bytes) -> bool:
        if not program:
            return False
        key = checksum(program)
        if key in self._seen:
            return self._seen[key]
        try:
            teal = await self.disassembler.disassemble(program)
        except (ScannerError, ValueError) as e:
            logger.debug(f"[classify] disassembly failed ({len(program)} bytes): {e}")
            return False
        verdict = self.magic in teal.lower()
        self._seen[key] = verdict
        return verdict
