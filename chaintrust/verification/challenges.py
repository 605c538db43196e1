"""
ChainTrust — Challenge Store

Outstanding challenges, domain and cross-chain alike. A challenge is stored
under a key derived from (entity, target kind, target) plus its creation
time; a lookup index keeps at most one logically active challenge per
(entity, target kind, target), so re-issuing replaces the previous one.

Expiry is absolute and enforced lazily by the verifier on use. Nothing
here evicts.
"""
import secrets
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, List, Optional, Tuple

import structlog

from chaintrust.errors import ValidationError

logger = structlog.get_logger()

DOMAIN = "domain"


class MethodKind(str, Enum):
    DNS_TXT = "dns_txt"
    SIGN_MESSAGE = "sign_message"
    DEPLOY_SPECIAL_CONTRACT = "deploy_special_contract"
    SET_PUBLIC_VARIABLE = "set_public_variable"
    SPECIAL_TRANSACTION = "special_transaction"


@dataclass
class ChallengeMethod:
    """How the owner will expose the expected message."""
    kind: MethodKind = MethodKind.SIGN_MESSAGE
    message: Optional[str] = None
    verification_code: Optional[str] = None
    variable_name: Optional[str] = None
    value: Optional[str] = None
    transaction_data: Optional[str] = None

    def expected_message(self, entity_id: str) -> str:
        if self.kind == MethodKind.SIGN_MESSAGE:
            # Caller-supplied text, or a fresh random one
            return self.message or f"chaintrust-verify:{entity_id}:{generate_token()}"
        if self.kind == MethodKind.DEPLOY_SPECIAL_CONTRACT:
            _require(self.verification_code, "verification_code")
            return f"Deploy contract with code: {self.verification_code} for company: {entity_id}"
        if self.kind == MethodKind.SET_PUBLIC_VARIABLE:
            _require(self.variable_name, "variable_name")
            _require(self.value, "value")
            return f"Set {self.variable_name} = {self.value} for company: {entity_id}"
        if self.kind == MethodKind.SPECIAL_TRANSACTION:
            _require(self.transaction_data, "transaction_data")
            return f"Execute transaction: {self.transaction_data} for company: {entity_id}"
        raise ValidationError(f"Method {self.kind.value} does not apply to chain targets")


def _require(value, name):
    if not value:
        raise ValidationError(f"{name} is required for this verification method")


def generate_token() -> str:
    return secrets.token_hex(16)


@dataclass
class Challenge:
    entity_id: str
    target_kind: str          # "domain" or a ChainType value
    target: str               # domain name or address
    expected: str             # token or message that must appear in evidence
    created_at: float
    expires_at: float
    method: MethodKind = MethodKind.SIGN_MESSAGE
    key: str = ""

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    @property
    def lookup(self) -> Tuple[str, str, str]:
        return (self.entity_id, self.target_kind, self.target)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["method"] = self.method.value
        return d


class ChallengeStore:
    def __init__(self):
        self._challenges: Dict[str, Challenge] = {}
        self._index: Dict[Tuple[str, str, str], str] = {}

    @staticmethod
    def make_key(entity_id: str, target_kind: str, target: str, created_at: float) -> str:
        return f"{entity_id}_{target_kind}_{target}_{int(created_at * 1000)}"

    def put(self, challenge: Challenge) -> Challenge:
        challenge.key = self.make_key(
            challenge.entity_id, challenge.target_kind, challenge.target, challenge.created_at
        )
        previous = self._index.get(challenge.lookup)
        if previous is not None and previous != challenge.key:
            self._challenges.pop(previous, None)
            logger.info("challenge_replaced", key=previous)
        self._challenges[challenge.key] = challenge
        self._index[challenge.lookup] = challenge.key
        return challenge

    def find(self, entity_id: str, target_kind: str, target: str) -> Optional[Challenge]:
        key = self._index.get((entity_id, target_kind, target))
        return self._challenges.get(key) if key else None

    def get(self, key: str) -> Optional[Challenge]:
        return self._challenges.get(key)

    def delete(self, challenge: Challenge) -> bool:
        removed = self._challenges.pop(challenge.key, None)
        if self._index.get(challenge.lookup) == challenge.key:
            del self._index[challenge.lookup]
        return removed is not None

    def for_entity(self, entity_id: str) -> List[Challenge]:
        return [c for c in self._challenges.values() if c.entity_id == entity_id]

    def __len__(self) -> int:
        return len(self._challenges)
