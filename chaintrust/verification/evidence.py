"""
ChainTrust — Evidence Fetchers

The only code that talks to the outside world. Three checks:

    check_domain_txt(domain)              -> TXT text ("" when the name has no TXT records)
    check_identity_api(platform, ref)     -> response dict
    check_chain_activity(chain, address)  -> activity dict

A check that completed but found nothing raises EvidenceNotFound. A check
that could not complete (timeout, DNS failure, unexpected status) raises
TransportError. Callers rely on telling the two apart.

Every call carries an explicit timeout. Sources:
    - DNS TXT via dnspython's async resolver
    - GitHub REST API (api.github.com)
    - Social proof pages (plain HTTPS GET)
    - Etherscan txlist for Ethereum
    - blockchain.info rawaddr for Bitcoin
    - ICP identifiers are checked by format only
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import dns.asyncresolver
import dns.exception
import dns.resolver
import httpx
import structlog

from chaintrust.config import settings
from chaintrust.entities.model import ChainType
from chaintrust.errors import EvidenceNotFound, TransportError
from chaintrust.verification.addresses import is_valid_canister_id

logger = structlog.get_logger()

GITHUB_API = "https://api.github.com"
ETHERSCAN_API = "https://api.etherscan.io/api"
BLOCKCHAIN_INFO_API = "https://blockchain.info"

# Chains with an automated evidence source
AUTOMATED_CHAINS = {ChainType.ETHEREUM, ChainType.BITCOIN, ChainType.ICP}

_NOT_FOUND_STATUSES = {404, 410}


class EvidenceFetcher:
    """Interface. Implementations must raise EvidenceNotFound / TransportError."""

    def supports_chain(self, chain: ChainType) -> bool:
        return chain in AUTOMATED_CHAINS

    async def check_domain_txt(self, domain: str) -> str:
        raise NotImplementedError

    async def check_identity_api(self, platform: str, reference: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def check_chain_activity(self, chain: ChainType, address: str) -> Dict[str, Any]:
        raise NotImplementedError


class HttpEvidenceFetcher(EvidenceFetcher):
    def __init__(self, client: Optional[httpx.AsyncClient] = None, resolver=None):
        self._client = client
        self._resolver = resolver
        self._timeout = httpx.Timeout(settings.HTTP_TIMEOUT, connect=5.0)
        self._chain_timeout = httpx.Timeout(settings.CHAIN_HTTP_TIMEOUT, connect=5.0)

    @asynccontextmanager
    async def _http(self):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            headers={"User-Agent": settings.USER_AGENT},
            follow_redirects=True,
            verify=True,
            timeout=self._timeout,
        ) as client:
            yield client

    async def _get(self, source: str, url: str, timeout: httpx.Timeout, **kwargs) -> httpx.Response:
        try:
            async with self._http() as client:
                return await client.get(url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("evidence_timeout", source=source, url=url)
            raise TransportError(source, f"timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("evidence_http_error", source=source, url=url, error=str(e))
            raise TransportError(source, str(e)) from e

    @staticmethod
    def _json(source: str, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(source, "invalid JSON response", resp.status_code) from e

    # =============================================
    # DNS
    # =============================================

    async def check_domain_txt(self, domain: str) -> str:
        resolver = self._resolver or dns.asyncresolver.Resolver()
        try:
            answers = await resolver.resolve(domain, "TXT", lifetime=settings.DNS_TIMEOUT)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return ""
        except dns.exception.Timeout as e:
            raise TransportError("dns", f"TXT lookup for {domain} timed out") from e
        except dns.exception.DNSException as e:
            raise TransportError("dns", f"TXT lookup for {domain} failed: {e}") from e

        records = []
        for rdata in answers:
            records.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
        logger.debug("txt_records_fetched", domain=domain, count=len(records))
        return "\n".join(records)

    # =============================================
    # IDENTITY PLATFORMS
    # =============================================

    async def check_identity_api(self, platform: str, reference: str) -> Dict[str, Any]:
        if platform == "github":
            return await self._check_github_org(reference)
        return await self._check_proof_page(platform, reference)

    async def _check_github_org(self, org: str) -> Dict[str, Any]:
        headers = {"Accept": "application/vnd.github.v3+json"}
        if settings.GITHUB_TOKEN:
            headers["Authorization"] = f"Bearer {settings.GITHUB_TOKEN}"

        resp = await self._get("github", f"{GITHUB_API}/orgs/{org}", self._timeout, headers=headers)
        if resp.status_code == 200:
            return self._json("github", resp)
        if resp.status_code in _NOT_FOUND_STATUSES:
            raise EvidenceNotFound("github", org, f"GitHub organization '{org}' not found")
        raise TransportError("github", f"unexpected status {resp.status_code}", resp.status_code)

    async def _check_proof_page(self, platform: str, url: str) -> Dict[str, Any]:
        resp = await self._get(platform, url, self._timeout)
        if resp.status_code == 200:
            return {"url": url, "status_code": 200}
        if resp.status_code in _NOT_FOUND_STATUSES:
            raise EvidenceNotFound(platform, url, f"Proof page not found: {url}")
        raise TransportError(platform, f"unexpected status {resp.status_code}", resp.status_code)

    # =============================================
    # CHAINS
    # =============================================

    async def check_chain_activity(self, chain: ChainType, address: str) -> Dict[str, Any]:
        if chain == ChainType.ETHEREUM:
            return await self._check_etherscan(address)
        if chain == ChainType.BITCOIN:
            return await self._check_blockchain_info(address)
        if chain == ChainType.ICP:
            if is_valid_canister_id(address):
                return {"canister_id": address}
            raise EvidenceNotFound("icp", address, "Invalid ICP canister ID format")
        raise TransportError(chain.value, "no automated evidence source for this chain")

    async def _check_etherscan(self, address: str) -> Dict[str, Any]:
        params = {
            "module": "account",
            "action": "txlist",
            "address": address,
            "sort": "desc",
            "apikey": settings.ETHERSCAN_API_KEY,
        }
        resp = await self._get("etherscan", ETHERSCAN_API, self._chain_timeout, params=params)
        if resp.status_code != 200:
            raise TransportError("etherscan", f"unexpected status {resp.status_code}", resp.status_code)

        data = self._json("etherscan", resp)
        result = data.get("result")
        if isinstance(result, list) and result:
            return {"address": address, "transactions": result}
        if data.get("message", "").startswith("No transactions") or result == []:
            raise EvidenceNotFound("etherscan", address, "No transactions found for address")
        raise TransportError("etherscan", f"API error: {data.get('message')} {result}")

    async def _check_blockchain_info(self, address: str) -> Dict[str, Any]:
        resp = await self._get(
            "blockchain_info",
            f"{BLOCKCHAIN_INFO_API}/rawaddr/{address}",
            self._chain_timeout,
            params={"limit": 50},
        )
        if resp.status_code in _NOT_FOUND_STATUSES:
            raise EvidenceNotFound("blockchain_info", address, "Bitcoin address not found")
        if resp.status_code != 200:
            raise TransportError("blockchain_info", f"unexpected status {resp.status_code}", resp.status_code)

        data = self._json("blockchain_info", resp)
        if data.get("n_tx", 0) <= 0:
            raise EvidenceNotFound("blockchain_info", address, "Bitcoin address has no transaction history")
        return {"address": address, "n_tx": data["n_tx"], "transactions": data.get("txs", [])}
