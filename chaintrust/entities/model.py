"""
ChainTrust - Entity Model

The Company is the core primitive. Everything else builds on it.

A Company represents a web3 organization that:
- Has an owner principal (the caller who registered it)
- Declares a public profile, off-chain identities and on-chain assets
- Accumulates VerificationProofs as it completes challenges
- Collects community validation (endorsements, testimonials, vouches)

Scores and status are derived fields. They are written by the scoring
engine and the proof monitor, never by profile updates.
"""
import uuid
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any
from enum import Enum


# =============================================
# ENUMS
# =============================================

class CompanyStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    TRUSTED = "trusted"
    FLAGGED = "flagged"          # Set by proof monitoring
    SUSPENDED = "suspended"      # Set by moderation


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"


class ChainType(str, Enum):
    ETHEREUM = "ethereum"
    BITCOIN = "bitcoin"
    ICP = "icp"
    POLYGON = "polygon"
    SOLANA = "solana"
    SUI = "sui"
    TON = "ton"


class VerificationType(str, Enum):
    GITHUB = "github"
    DOMAIN = "domain"
    TWITTER = "twitter"
    DISCORD = "discord"
    TELEGRAM = "telegram"
    ETHEREUM = "ethereum"
    BITCOIN = "bitcoin"
    ICP = "icp"
    POLYGON = "polygon"
    SOLANA = "solana"
    SUI = "sui"
    TON = "ton"

    @property
    def is_chain(self) -> bool:
        return self.value in CHAIN_VALUES


CHAIN_VALUES = {c.value for c in ChainType}


class VerificationMethod(str, Enum):
    AUTOMATED = "automated"          # Evidence checked by a fetcher
    PROOF_VISIBLE = "proof_visible"  # Public post attested by the owner


class ProofStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"
    DISPUTED = "disputed"


# Allowed automatic transitions. Removed is terminal.
PROOF_TRANSITIONS = {
    ProofStatus.ACTIVE: {ProofStatus.DISPUTED, ProofStatus.REMOVED},
    ProofStatus.DISPUTED: {ProofStatus.ACTIVE, ProofStatus.REMOVED},
    ProofStatus.REMOVED: set(),
}


# =============================================
# VALUE OBJECTS
# =============================================

@dataclass
class VerificationProof:
    verification_type: VerificationType
    proof_url: str
    verified_at: float
    verification_method: VerificationMethod = VerificationMethod.AUTOMATED
    challenge_data: Optional[str] = None
    status: ProofStatus = ProofStatus.ACTIVE
    # Address, org, domain or URL re-checked by monitoring
    reference: Optional[str] = None
    proof_id: str = field(default_factory=lambda: f"proof_{uuid.uuid4().hex[:12]}")

    def transition(self, new_status: ProofStatus) -> bool:
        """Move to new_status if allowed. Returns True when the status changed."""
        if new_status == self.status:
            return False
        if new_status not in PROOF_TRANSITIONS[self.status]:
            return False
        self.status = new_status
        return True

    @property
    def check_reference(self) -> str:
        return self.reference or self.proof_url


@dataclass
class WalletInfo:
    chain: str
    address: str
    wallet_type: str = "treasury"
    verified: bool = False


@dataclass
class TokenInfo:
    chain: str
    contract_address: str
    symbol: str = ""
    name: str = ""
    verified: bool = False


@dataclass
class TeamMember:
    name: str
    role: str = ""
    github: Optional[str] = None
    linkedin: Optional[str] = None
    verified: bool = False


@dataclass
class Endorsement:
    endorser_company_id: str
    message: str
    timestamp: float
    endorser_principal: str


@dataclass
class Testimonial:
    author_name: str
    role: str
    message: str
    timestamp: float
    verified: bool = False


@dataclass
class Vouch:
    voucher_principal: str
    message: str
    timestamp: float
    weight: int = 1


# =============================================
# AGGREGATES
# =============================================

@dataclass
class BasicInfo:
    name: str = ""
    description: str = ""
    website: str = ""
    founding_date: str = ""
    team_size: int = 0
    focus_areas: List[str] = field(default_factory=list)


@dataclass
class Web3Identity:
    github_org: Optional[str] = None
    twitter_handle: Optional[str] = None
    discord_server: Optional[str] = None
    telegram_channel: Optional[str] = None
    domain_verified: bool = False
    social_verification_status: VerificationStatus = VerificationStatus.PENDING
    verification_proofs: List[VerificationProof] = field(default_factory=list)


@dataclass
class CrossChainPresence:
    ethereum_contracts: List[str] = field(default_factory=list)
    bitcoin_addresses: List[str] = field(default_factory=list)
    icp_canisters: List[str] = field(default_factory=list)
    polygon_contracts: List[str] = field(default_factory=list)
    solana_addresses: List[str] = field(default_factory=list)
    sui_addresses: List[str] = field(default_factory=list)
    ton_addresses: List[str] = field(default_factory=list)
    treasury_wallets: List[WalletInfo] = field(default_factory=list)
    token_contracts: List[TokenInfo] = field(default_factory=list)

    def addresses_for(self, chain: ChainType) -> List[str]:
        return {
            ChainType.ETHEREUM: self.ethereum_contracts,
            ChainType.BITCOIN: self.bitcoin_addresses,
            ChainType.ICP: self.icp_canisters,
            ChainType.POLYGON: self.polygon_contracts,
            ChainType.SOLANA: self.solana_addresses,
            ChainType.SUI: self.sui_addresses,
            ChainType.TON: self.ton_addresses,
        }[chain]


@dataclass
class CommunityValidation:
    peer_endorsements: List[Endorsement] = field(default_factory=list)
    employee_testimonials: List[Testimonial] = field(default_factory=list)
    community_vouches: List[Vouch] = field(default_factory=list)
    reputation_score: int = 0
    reputation_staked: int = 0


@dataclass
class Company:
    """A registered organization under verification."""
    id: str
    created_by: str
    basic_info: BasicInfo = field(default_factory=BasicInfo)
    web3_identity: Web3Identity = field(default_factory=Web3Identity)
    cross_chain_presence: CrossChainPresence = field(default_factory=CrossChainPresence)
    team_members: List[TeamMember] = field(default_factory=list)
    community_validation: CommunityValidation = field(default_factory=CommunityValidation)
    status: CompanyStatus = CompanyStatus.PENDING
    verification_score: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0

    def find_proof(self, proof_id: str) -> Optional[VerificationProof]:
        for proof in self.web3_identity.verification_proofs:
            if proof.proof_id == proof_id:
                return proof
        return None

    def proofs_with_status(self, status: ProofStatus) -> List[VerificationProof]:
        return [p for p in self.web3_identity.verification_proofs if p.status == status]

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict with enum values, suitable for JSON."""
        return _plain(asdict(self))

    @staticmethod
    def from_dict(record: dict) -> "Company":
        """Create a Company from a to_dict() record."""
        identity = dict(record.get("web3_identity") or {})
        identity["verification_proofs"] = [
            VerificationProof(
                verification_type=VerificationType(p["verification_type"]),
                proof_url=p["proof_url"],
                verified_at=p["verified_at"],
                verification_method=VerificationMethod(p.get("verification_method", "automated")),
                challenge_data=p.get("challenge_data"),
                status=ProofStatus(p.get("status", "active")),
                reference=p.get("reference"),
                proof_id=p["proof_id"],
            )
            for p in identity.get("verification_proofs", [])
        ]
        identity["social_verification_status"] = VerificationStatus(
            identity.get("social_verification_status", "pending")
        )

        chains = dict(record.get("cross_chain_presence") or {})
        chains["treasury_wallets"] = [WalletInfo(**w) for w in chains.get("treasury_wallets", [])]
        chains["token_contracts"] = [TokenInfo(**t) for t in chains.get("token_contracts", [])]

        cv = dict(record.get("community_validation") or {})
        cv["peer_endorsements"] = [Endorsement(**e) for e in cv.get("peer_endorsements", [])]
        cv["employee_testimonials"] = [Testimonial(**t) for t in cv.get("employee_testimonials", [])]
        cv["community_vouches"] = [Vouch(**v) for v in cv.get("community_vouches", [])]

        return Company(
            id=record["id"],
            created_by=record["created_by"],
            basic_info=BasicInfo(**(record.get("basic_info") or {})),
            web3_identity=Web3Identity(**identity),
            cross_chain_presence=CrossChainPresence(**chains),
            team_members=[TeamMember(**m) for m in record.get("team_members", [])],
            community_validation=CommunityValidation(**cv),
            status=CompanyStatus(record.get("status", "pending")),
            verification_score=record.get("verification_score", 0),
            created_at=record.get("created_at", 0.0),
            updated_at=record.get("updated_at", 0.0),
        )


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value
