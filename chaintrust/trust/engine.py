"""
ChainTrust — Trust Scoring Engine

Pure, deterministic scoring. Nothing here touches storage or the network:
callers hand in a Company snapshot, get numbers back, and persist them.

Three scores:

    Verification score (0-100)
        Profile completeness      5 each: name, description, website, focus areas   (max 20)
        Off-chain identity        10 each: GitHub org, domain, social verified       (max 30)
        Chain presence            5 per non-empty category                           (max 40)
                                  ethereum, bitcoin, icp, solana, sui, ton,
                                  treasury wallets, token contracts
        Verified team members     3 each                                             (max 15)
        Community reputation      reputation_score / 10                              (max 10)
        Clamped to [0, 100].

    Reputation score (unbounded)
        verification_score / 4
        + 10 per peer endorsement
        + 5 per verified testimonial, + 2 per unverified testimonial
        + 3 x weight per community vouch
        + ceil(log10(staked)) x 2 when staked > 0

    Risk score (informational)
        +20 fewer than 2 active chains
        +30 fewer than half of declared addresses verified
        +25 more than 50 declared addresses
        +15 more than 20 treasury wallets

Status bands from reputation:
    0-20   pending
    21-50  verified
    51+    trusted
Flagged and suspended belong to monitoring and moderation and are never
overwritten here.
"""
import copy
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from chaintrust.entities.model import (
    Company, CompanyStatus, ProofStatus, VerificationStatus,
)


# =============================================
# CONSTANTS
# =============================================

REMOVED_PROOF_PENALTY = 20
DISPUTED_PROOF_PENALTY = 10

# Statuses the reputation formula may not overwrite
MODERATED_STATUSES = {CompanyStatus.FLAGGED, CompanyStatus.SUSPENDED}

# Vouch count (across all entities) -> voucher weight
VOUCHER_WEIGHT_BANDS = [
    (2, 1),
    (10, 2),
    (25, 3),
]
MAX_VOUCHER_WEIGHT = 5


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


# =============================================
# SIGNAL DATACLASSES
# =============================================

@dataclass
class VerificationSignals:
    has_name: bool = False
    has_description: bool = False
    has_website: bool = False
    has_focus_areas: bool = False

    github_org: bool = False
    domain_verified: bool = False
    social_verified: bool = False

    # Non-empty chain categories
    chain_categories: int = 0

    verified_team_members: int = 0
    reputation_score: int = 0

    @classmethod
    def from_company(cls, company: Company) -> "VerificationSignals":
        info = company.basic_info
        identity = company.web3_identity
        chains = company.cross_chain_presence
        categories = [
            chains.ethereum_contracts,
            chains.bitcoin_addresses,
            chains.icp_canisters,
            chains.solana_addresses,
            chains.sui_addresses,
            chains.ton_addresses,
            chains.treasury_wallets,
            chains.token_contracts,
        ]
        return cls(
            has_name=bool(info.name),
            has_description=bool(info.description),
            has_website=bool(info.website),
            has_focus_areas=bool(info.focus_areas),
            github_org=bool(identity.github_org),
            domain_verified=identity.domain_verified,
            social_verified=identity.social_verification_status == VerificationStatus.VERIFIED,
            chain_categories=sum(1 for c in categories if c),
            verified_team_members=sum(1 for m in company.team_members if m.verified),
            reputation_score=company.community_validation.reputation_score,
        )

    def calculate(self) -> int:
        score = 0

        # === Profile completeness (max 20) ===
        score += 5 * sum([self.has_name, self.has_description, self.has_website, self.has_focus_areas])

        # === Off-chain identity (max 30) ===
        if self.github_org:
            score += 10
        if self.domain_verified:
            score += 10
        if self.social_verified:
            score += 10

        # === Chain presence ===
        score += 5 * self.chain_categories

        # === Team (max 15) ===
        score += min(self.verified_team_members * 3, 15)

        # === Community (max 10) ===
        score += min(self.reputation_score // 10, 10)

        return min(max(score, 0), 100)


@dataclass
class ReputationSignals:
    verification_score: int = 0
    endorsements: int = 0
    verified_testimonials: int = 0
    unverified_testimonials: int = 0
    vouch_weights: List[int] = field(default_factory=list)
    staked: int = 0

    @classmethod
    def from_company(cls, company: Company) -> "ReputationSignals":
        cv = company.community_validation
        return cls(
            verification_score=company.verification_score,
            endorsements=len(cv.peer_endorsements),
            verified_testimonials=sum(1 for t in cv.employee_testimonials if t.verified),
            unverified_testimonials=sum(1 for t in cv.employee_testimonials if not t.verified),
            vouch_weights=[v.weight for v in cv.community_vouches],
            staked=cv.reputation_staked,
        )

    @property
    def staking_bonus(self) -> int:
        if self.staked <= 0:
            return 0
        return int(math.ceil(math.log10(self.staked))) * 2

    def calculate(self) -> int:
        score = self.verification_score // 4
        score += self.endorsements * 10
        score += self.verified_testimonials * 5
        score += self.unverified_testimonials * 2
        score += sum(w * 3 for w in self.vouch_weights)
        score += self.staking_bonus
        return score


@dataclass
class RiskSignals:
    active_chains: int = 0
    total_addresses: int = 0
    verified_wallets: int = 0
    treasury_wallets: int = 0

    @classmethod
    def from_company(cls, company: Company) -> "RiskSignals":
        chains = company.cross_chain_presence
        per_chain = [
            chains.ethereum_contracts,
            chains.bitcoin_addresses,
            chains.icp_canisters,
            chains.solana_addresses,
            chains.sui_addresses,
            chains.ton_addresses,
        ]
        return cls(
            active_chains=sum(1 for addrs in per_chain if addrs),
            total_addresses=sum(len(addrs) for addrs in per_chain),
            verified_wallets=sum(1 for w in chains.treasury_wallets if w.verified),
            treasury_wallets=len(chains.treasury_wallets),
        )

    def factors(self) -> List[tuple]:
        """(points, description) for every risk factor present."""
        found = []
        if self.active_chains < 2:
            found.append((20, "Low chain diversification"))
        if self.total_addresses > 0 and self.verified_wallets < self.total_addresses // 2:
            found.append((30, "Many unverified addresses"))
        if self.total_addresses > 50:
            found.append((25, "Unusually high number of addresses"))
        if self.treasury_wallets > 20:
            found.append((15, "High number of treasury wallets"))
        return found

    def calculate(self) -> int:
        return sum(points for points, _ in self.factors())


# =============================================
# OUTPUT
# =============================================

@dataclass
class RiskAssessment:
    score: int
    level: RiskLevel
    factors: List[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        if not self.factors:
            return (f"Risk Level: {self.level.value} (Score: {self.score}) "
                    f"- No significant risk factors detected.")
        return (f"Risk Level: {self.level.value} (Score: {self.score}) "
                f"- Risk factors: {', '.join(self.factors)}")

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "level": self.level.value,
            "factors": list(self.factors),
            "summary": self.summary,
        }


@dataclass
class TrustScores:
    verification: int
    reputation: int
    risk: RiskAssessment
    status: CompanyStatus

    def to_dict(self) -> dict:
        return {
            "verification": self.verification,
            "reputation": self.reputation,
            "risk": self.risk.to_dict(),
            "status": self.status.value,
        }


# =============================================
# SCORING FUNCTIONS
# =============================================

def calculate_verification_score(company: Company) -> int:
    return VerificationSignals.from_company(company).calculate()


def calculate_reputation_score(company: Company) -> int:
    return ReputationSignals.from_company(company).calculate()


def risk_level(score: int) -> RiskLevel:
    if score <= 20:
        return RiskLevel.LOW
    elif score <= 50:
        return RiskLevel.MEDIUM
    elif score <= 80:
        return RiskLevel.HIGH
    else:
        return RiskLevel.CRITICAL


def assess_risk(company: Company) -> RiskAssessment:
    signals = RiskSignals.from_company(company)
    factors = signals.factors()
    score = sum(points for points, _ in factors)
    return RiskAssessment(score=score, level=risk_level(score), factors=[d for _, d in factors])


def status_for_reputation(score: int) -> CompanyStatus:
    # Anything above 50 is trusted; there is no higher tier
    if score <= 20:
        return CompanyStatus.PENDING
    elif score <= 50:
        return CompanyStatus.VERIFIED
    else:
        return CompanyStatus.TRUSTED


def voucher_weight(vouch_count: int) -> int:
    """Weight of a new vouch given how many vouches the voucher already made."""
    for upper, weight in VOUCHER_WEIGHT_BANDS:
        if vouch_count <= upper:
            return weight
    return MAX_VOUCHER_WEIGHT


def proof_penalty(company: Company) -> int:
    removed = len(company.proofs_with_status(ProofStatus.REMOVED))
    disputed = len(company.proofs_with_status(ProofStatus.DISPUTED))
    return removed * REMOVED_PROOF_PENALTY + disputed * DISPUTED_PROOF_PENALTY


def rescore(company: Company) -> TrustScores:
    """
    Recompute verification and reputation in place and derive status.

    The two scores feed each other (reputation adds up to 10 verification
    points, verification adds a quarter of itself to reputation), so iterate
    until both settle. The map is monotone and bounded, so this converges in
    a couple of rounds.
    """
    for _ in range(5):
        verification = max(calculate_verification_score(company) - proof_penalty(company), 0)
        company.verification_score = verification
        reputation = calculate_reputation_score(company)
        settled = reputation == company.community_validation.reputation_score
        company.community_validation.reputation_score = reputation
        if settled:
            break

    if company.status not in MODERATED_STATUSES:
        company.status = status_for_reputation(company.community_validation.reputation_score)

    return TrustScores(
        verification=company.verification_score,
        reputation=company.community_validation.reputation_score,
        risk=assess_risk(company),
        status=company.status,
    )


def compute_scores(company: Company) -> TrustScores:
    """Scores for a snapshot without mutating it."""
    return rescore(copy.deepcopy(company))
