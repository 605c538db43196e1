"""
ChainTrust — Challenge Verifier

Challenge/response ownership proofs for domains and chain addresses, plus
the one-shot identity checks (GitHub org, social proof posts).

Lifecycle of a challenge for one (company, target):

    requested  ->  pending external check  ->  accepted   (proof appended, challenge deleted)
                                           ->  not found  (unsuccessful result, challenge kept)
                                           ->  expired    (challenge deleted, error)

Evidence is always fetched before the company record is locked; the
mutation that follows is a single store.update() that also rescores.
"""
import asyncio
import re
import time
from dataclasses import dataclass
from typing import List, Optional

import structlog

from chaintrust.config import settings
from chaintrust.entities.model import (
    ChainType, Company, ProofStatus, VerificationMethod, VerificationProof,
    VerificationStatus, VerificationType,
)
from chaintrust.errors import (
    ChainTrustError, ChallengeExpiredError, EvidenceNotFound, NotFoundError, ValidationError,
)
from chaintrust.guards import enforce_rate_limit, load_company, load_owned_company
from chaintrust.monitoring.events import SecurityEventType, SecuritySeverity
from chaintrust.monitoring.monitor import TaskPriority
from chaintrust.rate_limit import VERIFICATION
from chaintrust.trust.engine import RiskAssessment, RiskLevel, assess_risk, rescore
from chaintrust.verification.addresses import (
    MAX_ADDRESS_LENGTH, SOCIAL_DOMAINS, check_challenge_format, extract_domain,
    extract_twitter_username, is_suspicious_address, parse_chain, sanitize_challenge_data,
    sanitize_social_handle, sanitize_url, validate_hostname, validate_secure_url,
)
from chaintrust.verification.challenges import (
    DOMAIN, Challenge, ChallengeMethod, ChallengeStore, MethodKind, generate_token,
)

logger = structlog.get_logger()

_GITHUB_ORG = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$")

CHAIN_LABELS = {
    ChainType.ETHEREUM: "Ethereum",
    ChainType.BITCOIN: "Bitcoin",
    ChainType.ICP: "ICP",
    ChainType.POLYGON: "Polygon",
    ChainType.SOLANA: "Solana",
    ChainType.SUI: "Sui",
    ChainType.TON: "TON",
}

EXPLORER_URLS = {
    ChainType.ETHEREUM: "https://etherscan.io/address/{}",
    ChainType.BITCOIN: "https://www.blockchain.com/btc/address/{}",
    ChainType.ICP: "https://dashboard.internetcomputer.org/canister/{}",
    ChainType.POLYGON: "https://polygonscan.com/address/{}",
    ChainType.SOLANA: "https://solscan.io/account/{}",
    ChainType.SUI: "https://suiscan.xyz/mainnet/account/{}",
    ChainType.TON: "https://tonviewer.com/{}",
}

# Chains re-checked by the portfolio sweep, in report order
PORTFOLIO_CHAINS = [ChainType.ETHEREUM, ChainType.BITCOIN, ChainType.ICP]

RISK_EVENT_SEVERITY = {
    RiskLevel.LOW: SecuritySeverity.LOW,
    RiskLevel.MEDIUM: SecuritySeverity.MEDIUM,
    RiskLevel.HIGH: SecuritySeverity.HIGH,
    RiskLevel.CRITICAL: SecuritySeverity.HIGH,
}


def registry_text(entity_id: str) -> str:
    """Text a social proof post must contain."""
    return f"ChainTrust Registry - Company ID: {entity_id}"


@dataclass
class VerificationResult:
    success: bool
    message: str
    verified_at: Optional[float] = None
    proof_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "verified_at": self.verified_at,
            "proof_id": self.proof_id,
        }


def message_in_transactions(transactions: list, message: str) -> bool:
    """True when any tx input carries the message, raw or hex encoded."""
    encoded = message.encode("utf-8").hex()
    for tx in transactions:
        data = str(tx.get("input", ""))
        if message in data or encoded in data.lower():
            return True
    return False


class ChallengeVerifier:
    def __init__(self, store, challenges: ChallengeStore, fetcher, limiter, events, clock, monitor=None):
        self.store = store
        self.challenges = challenges
        self.fetcher = fetcher
        self.limiter = limiter
        self.events = events
        self.clock = clock
        self.monitor = monitor

    def _now(self) -> float:
        return self.clock.now() if self.clock else time.time()

    @staticmethod
    def _target_kind(target_kind: str) -> str:
        if (target_kind or "").strip().lower() == DOMAIN:
            return DOMAIN
        return parse_chain(target_kind).value

    # =============================================
    # CHALLENGE CREATION
    # =============================================

    async def create_challenge(
        self,
        entity_id: str,
        caller: str,
        target_kind: str,
        target: Optional[str] = None,
        method: Optional[ChallengeMethod] = None,
    ) -> Challenge:
        kind = self._target_kind(target_kind)
        await enforce_rate_limit(self.limiter, self.events, caller, VERIFICATION, "challenge creation")
        company = await load_owned_company(self.store, self.events, entity_id, caller, "create challenges")

        now = self._now()
        if kind == DOMAIN:
            challenge = self._domain_challenge(company, target, now)
        else:
            challenge = self._chain_challenge(company, ChainType(kind), target, method, caller, now)

        self.challenges.put(challenge)
        self.events.record(
            SecurityEventType.SECURITY_SCAN,
            caller,
            SecuritySeverity.LOW,
            f"Challenge created: {challenge.target} for company {entity_id} ({kind})",
            entity_id=entity_id,
        )
        logger.info("challenge_created",
                    entity_id=entity_id,
                    target_kind=kind,
                    target=challenge.target,
                    expires_at=challenge.expires_at)
        return challenge

    def _domain_challenge(self, company: Company, target: Optional[str], now: float) -> Challenge:
        # Only the domain of the company's own website can be claimed
        domain = validate_hostname(extract_domain(company.basic_info.website))
        requested = (target or "").strip().lower().rstrip(".")
        if requested and requested != domain:
            raise ValidationError(f"Domain must match the company website ({domain})")
        if company.web3_identity.domain_verified and any(
            p.verification_type == VerificationType.DOMAIN
            and p.reference == domain
            and p.status == ProofStatus.ACTIVE
            for p in company.web3_identity.verification_proofs
        ):
            raise ValidationError(f"Domain '{domain}' is already verified")

        return Challenge(
            entity_id=company.id,
            target_kind=DOMAIN,
            target=domain,
            expected=generate_token(),
            created_at=now,
            expires_at=now + settings.DOMAIN_CHALLENGE_TTL,
            method=MethodKind.DNS_TXT,
        )

    def _chain_challenge(
        self,
        company: Company,
        chain: ChainType,
        target: Optional[str],
        method: Optional[ChallengeMethod],
        caller: str,
        now: float,
    ) -> Challenge:
        address = (target or "").strip()
        if not address:
            raise ValidationError("Address or contract is required")
        self.validate_address_with_security_check(chain, address, caller)

        if self._has_active_proof(company, VerificationType(chain.value), address):
            raise ValidationError(f"{CHAIN_LABELS[chain]} address {address} is already verified")

        method = method or ChallengeMethod()
        return Challenge(
            entity_id=company.id,
            target_kind=chain.value,
            target=address,
            expected=method.expected_message(company.id),
            created_at=now,
            expires_at=now + settings.CHAIN_CHALLENGE_TTL,
            method=method.kind,
        )

    @staticmethod
    def _has_active_proof(company: Company, vtype: VerificationType, reference: str) -> bool:
        return any(
            p.verification_type == vtype and p.reference == reference and p.status == ProofStatus.ACTIVE
            for p in company.web3_identity.verification_proofs
        )

    def validate_address_with_security_check(self, chain: ChainType, address: str, caller: str):
        """Security screen then format check. Raises ValidationError."""
        if is_suspicious_address(address):
            self.events.record(
                SecurityEventType.SUSPICIOUS_INPUT,
                caller,
                SecuritySeverity.HIGH,
                f"Suspicious address pattern detected: {address} for chain {chain.value}",
            )
            raise ValidationError("Suspicious address pattern detected")

        if len(address) > MAX_ADDRESS_LENGTH:
            self.events.record(
                SecurityEventType.SUSPICIOUS_INPUT,
                caller,
                SecuritySeverity.MEDIUM,
                f"Excessively long address attempted: {len(address)} chars for chain {chain.value}",
            )
            raise ValidationError("Address exceeds maximum length")

        try:
            check_challenge_format(chain, address)
        except ValidationError:
            self.events.record(
                SecurityEventType.SUSPICIOUS_INPUT,
                caller,
                SecuritySeverity.LOW,
                f"Invalid address format attempted: {address} for chain {chain.value}",
            )
            raise

    # =============================================
    # CHALLENGE VERIFICATION
    # =============================================

    async def verify_challenge(
        self,
        entity_id: str,
        caller: str,
        target_kind: str,
        target: Optional[str] = None,
    ) -> VerificationResult:
        kind = self._target_kind(target_kind)
        await enforce_rate_limit(self.limiter, self.events, caller, VERIFICATION, "verification")
        await load_company(self.store, self.events, entity_id, caller, "Verification")

        challenge = self._find_challenge(entity_id, kind, target)
        if challenge is None:
            raise NotFoundError("No verification challenge found. Create one first.")

        if challenge.is_expired(self._now()):
            self.challenges.delete(challenge)
            logger.info("challenge_expired", entity_id=entity_id, target=challenge.target)
            raise ChallengeExpiredError("Verification challenge expired. Request a new one.")

        if kind == DOMAIN:
            return await self._verify_domain(challenge, caller)
        return await self._verify_chain(challenge, ChainType(kind), caller)

    def _find_challenge(self, entity_id: str, kind: str, target: Optional[str]) -> Optional[Challenge]:
        target = (target or "").strip()
        if kind == DOMAIN:
            target = target.lower()
        if target:
            return self.challenges.find(entity_id, kind, target)
        # No explicit target: newest outstanding challenge of this kind
        candidates = [c for c in self.challenges.for_entity(entity_id) if c.target_kind == kind]
        return max(candidates, key=lambda c: c.created_at) if candidates else None

    def _failed(self, challenge: Challenge, caller: str, message: str) -> VerificationResult:
        self.events.record(
            SecurityEventType.REPEATED_FAILED_VERIFICATION,
            caller,
            SecuritySeverity.LOW,
            f"Verification evidence not found for {challenge.target} (company {challenge.entity_id})",
            entity_id=challenge.entity_id,
        )
        logger.info("verification_not_found", entity_id=challenge.entity_id, target=challenge.target)
        return VerificationResult(success=False, message=message)

    def _consume(self, challenge: Challenge):
        # Single use: a concurrent verify that lost the race sees it gone
        if not self.challenges.delete(challenge):
            raise NotFoundError("No verification challenge found. Create one first.")

    async def _verify_domain(self, challenge: Challenge, caller: str) -> VerificationResult:
        domain = challenge.target
        txt = await self.fetcher.check_domain_txt(domain)
        if challenge.expected not in txt:
            return self._failed(
                challenge, caller,
                f"TXT record with token '{challenge.expected}' not found in domain '{domain}'",
            )

        self._consume(challenge)
        now = self._now()
        proof = VerificationProof(
            verification_type=VerificationType.DOMAIN,
            proof_url=f"https://{domain}",
            verified_at=now,
            verification_method=VerificationMethod.AUTOMATED,
            challenge_data=challenge.expected,
            reference=domain,
        )

        def mutate(company: Company):
            company.web3_identity.domain_verified = True
            company.web3_identity.verification_proofs.append(proof)
            rescore(company)
            company.updated_at = now

        await self._apply(challenge.entity_id, mutate)
        self._accepted(challenge, caller, proof)
        return VerificationResult(
            success=True,
            message=f"Domain '{domain}' verified successfully",
            verified_at=now,
            proof_id=proof.proof_id,
        )

    async def _verify_chain(self, challenge: Challenge, chain: ChainType, caller: str) -> VerificationResult:
        label = CHAIN_LABELS[chain]
        address = challenge.target

        if not self.fetcher.supports_chain(chain):
            return VerificationResult(
                success=False,
                message=f"Automated {label} verification is not available yet. "
                        f"Your challenge remains valid until it expires.",
            )

        try:
            evidence = await self.fetcher.check_chain_activity(chain, address)
        except EvidenceNotFound as e:
            return self._failed(challenge, caller, str(e))

        if chain == ChainType.ETHEREUM and not message_in_transactions(
            evidence.get("transactions", []), challenge.expected
        ):
            return self._failed(challenge, caller, "Challenge message not found in recent transactions")

        self._consume(challenge)
        now = self._now()
        proof = VerificationProof(
            verification_type=VerificationType(chain.value),
            proof_url=EXPLORER_URLS[chain].format(address),
            verified_at=now,
            verification_method=VerificationMethod.AUTOMATED,
            challenge_data=challenge.expected,
            reference=address,
        )

        def mutate(company: Company):
            presence = company.cross_chain_presence
            addresses = presence.addresses_for(chain)
            if address not in addresses:
                addresses.append(address)
            for wallet in presence.treasury_wallets:
                if wallet.address == address and wallet.chain.lower() == chain.value:
                    wallet.verified = True
            for token in presence.token_contracts:
                if token.contract_address == address and token.chain.lower() == chain.value:
                    token.verified = True
            company.web3_identity.verification_proofs.append(proof)
            rescore(company)
            company.updated_at = now

        await self._apply(challenge.entity_id, mutate)
        self._accepted(challenge, caller, proof)

        message = f"{label} address {address} verified successfully"
        if chain == ChainType.ETHEREUM:
            message = (f"Ethereum contract {address} verified successfully. "
                       f"Contract will be monitored for continued activity.")
        return VerificationResult(success=True, message=message, verified_at=now, proof_id=proof.proof_id)

    async def _apply(self, entity_id: str, mutate):
        if not await self.store.update(entity_id, mutate):
            raise NotFoundError("Company not found")

    def _accepted(self, challenge: Challenge, caller: str, proof: VerificationProof):
        self.events.record(
            SecurityEventType.SECURITY_SCAN,
            caller,
            SecuritySeverity.LOW,
            f"{proof.verification_type.value} verified: {challenge.target} for company {challenge.entity_id}",
            entity_id=challenge.entity_id,
        )
        self._schedule_monitoring(challenge.entity_id, proof)

    def _schedule_monitoring(self, entity_id: str, proof: VerificationProof):
        if self.monitor is not None:
            self.monitor.schedule_check(entity_id, proof.proof_id, priority=TaskPriority.MEDIUM)

    # =============================================
    # IDENTITY PLATFORMS
    # =============================================

    async def verify_github(self, entity_id: str, org: str, caller: str) -> VerificationResult:
        org = (org or "").strip()
        if not _GITHUB_ORG.match(org):
            raise ValidationError("Invalid GitHub organization name")

        await enforce_rate_limit(self.limiter, self.events, caller, VERIFICATION, "GitHub verification")
        await load_owned_company(self.store, self.events, entity_id, caller, "verify")

        try:
            data = await self.fetcher.check_identity_api("github", org)
        except EvidenceNotFound:
            return VerificationResult(success=False, message="GitHub organization not found")

        if int(data.get("public_repos") or 0) < 1:
            return VerificationResult(success=False, message="GitHub organization has no public repositories")

        now = self._now()
        proof = VerificationProof(
            verification_type=VerificationType.GITHUB,
            proof_url=f"https://github.com/{org}",
            verified_at=now,
            verification_method=VerificationMethod.AUTOMATED,
            reference=org,
        )

        def mutate(company: Company):
            company.web3_identity.github_org = org
            company.web3_identity.social_verification_status = VerificationStatus.VERIFIED
            company.web3_identity.verification_proofs.append(proof)
            rescore(company)
            company.updated_at = now

        await self._apply(entity_id, mutate)
        self._schedule_monitoring(entity_id, proof)
        logger.info("github_verified", entity_id=entity_id, org=org)
        return VerificationResult(
            success=True,
            message=f"GitHub organization '{org}' verified successfully",
            verified_at=now,
            proof_id=proof.proof_id,
        )

    async def verify_social(self, entity_id: str, platform: str, url: str, caller: str) -> VerificationResult:
        try:
            vtype = VerificationType((platform or "").strip().lower())
        except ValueError:
            raise ValidationError("Unsupported platform")
        if vtype not in SOCIAL_DOMAINS:
            raise ValidationError("Unsupported platform")

        validate_secure_url(url, SOCIAL_DOMAINS[vtype])
        await enforce_rate_limit(self.limiter, self.events, caller, VERIFICATION, "social verification")
        await load_owned_company(self.store, self.events, entity_id, caller, "verify")

        try:
            await self.fetcher.check_identity_api(vtype.value, url)
        except EvidenceNotFound:
            return VerificationResult(success=False, message=f"Proof post not found at {url}")

        now = self._now()
        clean_url = sanitize_url(url)
        proof = VerificationProof(
            verification_type=vtype,
            proof_url=clean_url,
            verified_at=now,
            verification_method=VerificationMethod.PROOF_VISIBLE,
            challenge_data=sanitize_challenge_data(registry_text(entity_id)),
            # Re-checked exactly as fetched; proof_url is the display form
            reference=url,
        )

        def mutate(company: Company):
            identity = company.web3_identity
            if vtype == VerificationType.TWITTER:
                username = extract_twitter_username(url)
                handle = sanitize_social_handle(username) if username else ""
                if handle:
                    identity.twitter_handle = handle
            elif vtype == VerificationType.DISCORD:
                identity.discord_server = clean_url
            else:
                identity.telegram_channel = clean_url
            identity.verification_proofs.append(proof)
            identity.social_verification_status = VerificationStatus.VERIFIED
            rescore(company)
            company.updated_at = now

        await self._apply(entity_id, mutate)
        self._schedule_monitoring(entity_id, proof)
        return VerificationResult(
            success=True,
            message=f"{vtype.value} profile verified with permanent proof. Link will be publicly "
                    f"visible on your company profile. WARNING: Deleting the original post will "
                    f"flag your company as suspicious.",
            verified_at=now,
            proof_id=proof.proof_id,
        )

    # =============================================
    # PORTFOLIO & RISK
    # =============================================

    async def verify_portfolio(self, entity_id: str, caller: str) -> List[str]:
        """Re-check every declared Ethereum, Bitcoin and ICP entry."""
        await enforce_rate_limit(self.limiter, self.events, caller, VERIFICATION, "portfolio verification")
        company = await load_owned_company(
            self.store, self.events, entity_id, caller, "verify the chain portfolio"
        )

        items = [
            (chain, address)
            for chain in PORTFOLIO_CHAINS
            for address in company.cross_chain_presence.addresses_for(chain)
        ]
        semaphore = asyncio.Semaphore(settings.TASK_CONCURRENCY)

        async def check(chain: ChainType, address: str) -> str:
            label = CHAIN_LABELS[chain]
            async with semaphore:
                try:
                    await asyncio.wait_for(
                        self.fetcher.check_chain_activity(chain, address),
                        timeout=settings.TASK_TIMEOUT,
                    )
                except asyncio.TimeoutError:
                    return f"{label}: {address} ✗ - check timed out"
                except ChainTrustError as e:
                    return f"{label}: {address} ✗ - {e}"
            return f"{label}: {address} ✓"

        results = await asyncio.gather(*(check(chain, address) for chain, address in items))

        self.events.record(
            SecurityEventType.SECURITY_SCAN,
            caller,
            SecuritySeverity.LOW,
            f"Multi-chain portfolio verification completed for company {entity_id}: "
            f"{len(results)} addresses checked",
            entity_id=entity_id,
        )
        return list(results)

    async def assess_risk(self, entity_id: str, caller: Optional[str] = None) -> RiskAssessment:
        company = await self.store.get(entity_id)
        if company is None:
            raise NotFoundError("Company not found")
        assessment = assess_risk(company)
        self.events.record(
            SecurityEventType.SECURITY_SCAN,
            caller,
            RISK_EVENT_SEVERITY[assessment.level],
            f"Cross-chain risk assessment for company {entity_id}: {assessment.summary}",
            entity_id=entity_id,
        )
        return assessment

    # =============================================
    # INSTRUCTIONS
    # =============================================

    @staticmethod
    def instructions(verification_type: VerificationType, entity_id: Optional[str] = None) -> str:
        required = registry_text(entity_id) if entity_id else registry_text("[YOUR_COMPANY_ID]")

        if verification_type == VerificationType.GITHUB:
            return ("To verify your GitHub organization:\n"
                    "1. Ensure your organization has at least 1 public repository\n"
                    "2. Submit your organization name for verification\n"
                    "3. The organization will be checked for existence and activity")
        if verification_type == VerificationType.DOMAIN:
            return ("To verify domain ownership:\n"
                    "1. Create a domain verification challenge\n"
                    "2. Add the challenge token as a TXT record on your domain\n"
                    "3. Verify the challenge to complete verification\n"
                    f"4. TXT record format: '{settings.TXT_RECORD_PREFIX}<token>'")
        if verification_type in SOCIAL_DOMAINS:
            name = verification_type.value.capitalize()
            return (f"{name} Verification (Permanent Proof Required):\n"
                    f"1. Publish a PUBLIC post with this exact text: '{required}'\n"
                    f"2. Pin the post where your community can see it\n"
                    f"3. Submit the post URL for verification\n"
                    f"WARNING: Deleting this post after verification will flag your company as suspicious")

        chain = ChainType(verification_type.value)
        label = CHAIN_LABELS[chain]
        if chain == ChainType.ETHEREUM:
            step = "Send a transaction to your contract with the challenge message in the input data"
        elif chain == ChainType.BITCOIN:
            step = "Ensure your address has transaction history (at least 1 transaction)"
        elif chain == ChainType.ICP:
            step = "Ensure you are listed as a controller of the canister"
        else:
            step = "Send a transaction from your address carrying the challenge message"
        return (f"To verify {label} ownership:\n"
                f"1. Create a cross-chain verification challenge for your address\n"
                f"2. {step}\n"
                f"3. Verify the challenge to complete verification")
