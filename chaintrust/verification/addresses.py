"""
ChainTrust — Address & URL Validation

Per-chain address formats, chain name aliases, social URL rules and input
sanitizers. Everything here is synchronous and side-effect free; callers
decide which failures are worth an audit event.
"""
import re
from typing import Optional
from urllib.parse import urlsplit

from chaintrust.entities.model import ChainType, VerificationType
from chaintrust.errors import ValidationError


# =============================================
# CHAIN NAMES
# =============================================

CHAIN_ALIASES = {
    "bitcoin": ChainType.BITCOIN,
    "btc": ChainType.BITCOIN,
    "ethereum": ChainType.ETHEREUM,
    "eth": ChainType.ETHEREUM,
    "solana": ChainType.SOLANA,
    "sol": ChainType.SOLANA,
    "sui": ChainType.SUI,
    "ton": ChainType.TON,
    "icp": ChainType.ICP,
    "internet_computer": ChainType.ICP,
    "polygon": ChainType.POLYGON,
    "matic": ChainType.POLYGON,
}


def parse_chain(name: str) -> ChainType:
    chain = CHAIN_ALIASES.get((name or "").strip().lower())
    if chain is None:
        raise ValidationError(f"Unsupported chain: {name}")
    return chain


# =============================================
# STRICT ADDRESS VALIDATORS
# =============================================

_BTC_LEGACY = re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$")
_BTC_SEGWIT = re.compile(r"^bc1[a-z0-9]{39,59}$")
_EVM = re.compile(r"^0x[a-fA-F0-9]{40}$")
_SOLANA = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_SUI = re.compile(r"^0x[a-fA-F0-9]{64}$")
_TON_RAW = re.compile(r"^0:[a-fA-F0-9]{64}$")
_TON_FRIENDLY = re.compile(r"^[EUkQ][A-Za-z0-9_-]{46,48}$")
_ICP_PRINCIPAL = re.compile(r"^[a-z0-9]{5}-[a-z0-9]{5}-[a-z0-9]{5}-[a-z0-9]{5}-[a-z0-9]{3}$")
_ICP_CANISTER = re.compile(r"^[a-z0-9]+-[a-z0-9]+-[a-z0-9]+-[a-z0-9]+-[a-z0-9]+$")


def validate_bitcoin_address(address: str) -> bool:
    return bool(_BTC_LEGACY.match(address) or _BTC_SEGWIT.match(address))


def validate_ethereum_address(address: str) -> bool:
    return bool(_EVM.match(address))


def validate_solana_address(address: str) -> bool:
    return bool(_SOLANA.match(address))


def validate_sui_address(address: str) -> bool:
    return bool(_SUI.match(address))


def validate_ton_address(address: str) -> bool:
    return bool(_TON_RAW.match(address) or _TON_FRIENDLY.match(address))


def is_valid_canister_id(canister_id: str) -> bool:
    return bool(_ICP_CANISTER.match(canister_id))


def validate_icp_principal(principal: str) -> bool:
    return bool(_ICP_PRINCIPAL.match(principal))


_VALIDATORS = {
    ChainType.BITCOIN: validate_bitcoin_address,
    ChainType.ETHEREUM: validate_ethereum_address,
    ChainType.POLYGON: validate_ethereum_address,
    ChainType.SOLANA: validate_solana_address,
    ChainType.SUI: validate_sui_address,
    ChainType.TON: validate_ton_address,
    ChainType.ICP: validate_icp_principal,
}


def validate_cross_chain_address(chain: str, address: str) -> bool:
    try:
        chain_type = parse_chain(chain)
    except ValidationError:
        return False
    return _VALIDATORS[chain_type](address)


ADDRESS_RULES = {
    ChainType.BITCOIN: (
        "Bitcoin addresses can be:\n"
        "- Legacy format: starting with 1 or 3 (25-34 characters)\n"
        "- SegWit format: starting with bc1 (39-59 characters)\n"
        "Example: 1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
    ),
    ChainType.ETHEREUM: (
        "Ethereum addresses:\n"
        "- Must start with 0x\n"
        "- Followed by exactly 40 hexadecimal characters\n"
        "Example: 0x742d35Cc6634C0532925a3b8D4d3c12de56d0d9E"
    ),
    ChainType.SOLANA: (
        "Solana addresses:\n"
        "- Base58-encoded strings\n"
        "- 32-44 characters long\n"
        "- No 0, O, I, or l characters\n"
        "Example: 7dHbWXmci3dT8UFYWGGWnSZwJa8ACHWrAhwRgBAuR7a1"
    ),
    ChainType.SUI: (
        "Sui addresses:\n"
        "- Start with 0x\n"
        "- Followed by exactly 64 hexadecimal characters"
    ),
    ChainType.TON: (
        "TON addresses can be:\n"
        "- Raw format: 0: followed by 64 hex characters\n"
        "- User-friendly: base64url encoded, starting with EQ/UQ/kQ\n"
        "Example: EQD2NmD_lH5f5u1Kj3KfGyTvhZSX0Eg6qp2a5IQUKXxOG21n"
    ),
    ChainType.ICP: (
        "ICP principal IDs:\n"
        "- Base32-encoded with dashes\n"
        "- Format: xxxxx-xxxxx-xxxxx-xxxxx-xxx\n"
        "Example: rdmx6-jaaaa-aaaah-qcaiq-cai"
    ),
    ChainType.POLYGON: (
        "Polygon addresses (same as Ethereum):\n"
        "- Must start with 0x\n"
        "- Followed by exactly 40 hexadecimal characters"
    ),
}


def address_rules(chain: str) -> str:
    try:
        return ADDRESS_RULES[parse_chain(chain)]
    except ValidationError:
        return "Unsupported chain. Please check the chain name."


# =============================================
# CHALLENGE PRE-CHECKS
# =============================================

SUSPICIOUS_ADDRESSES = [
    "0x0000000000000000000000000000000000000000",  # Ethereum burn address
    "1111111111111111111114oLvT2",                 # Bitcoin burn address
    "aaaaa-aa",                                    # ICP management canister
]
MAX_ADDRESS_LENGTH = 200


def check_challenge_format(chain: ChainType, address: str):
    """Reject malformed targets before any external call. Raises ValidationError."""
    if chain in (ChainType.ETHEREUM, ChainType.POLYGON):
        if not _EVM.match(address):
            raise ValidationError("Invalid Ethereum/Polygon address format")
    elif chain == ChainType.BITCOIN:
        if not 26 <= len(address) <= 35:
            raise ValidationError("Invalid Bitcoin address format")
    elif chain == ChainType.ICP:
        if not is_valid_canister_id(address):
            raise ValidationError("Invalid ICP canister ID format")
    elif chain == ChainType.SOLANA:
        if not 32 <= len(address) <= 44:
            raise ValidationError("Invalid Solana address format")
    elif chain == ChainType.SUI:
        if not _SUI.match(address):
            raise ValidationError("Invalid Sui address format")
    elif chain == ChainType.TON:
        if not address.startswith(("0:", "EQ", "UQ", "kQ")):
            raise ValidationError("Invalid TON address format")


def is_suspicious_address(address: str) -> bool:
    return any(pattern in address for pattern in SUSPICIOUS_ADDRESSES)


# =============================================
# SOCIAL URLS
# =============================================

SOCIAL_DOMAINS = {
    VerificationType.TWITTER: ["twitter.com", "x.com", "mobile.twitter.com"],
    VerificationType.DISCORD: ["discord.gg", "discord.com", "discordapp.com"],
    VerificationType.TELEGRAM: ["t.me", "telegram.me"],
}

MAX_URL_LENGTH = 2048

_TWITTER_USER = re.compile(r"(?:twitter\.com|x\.com)/([^/?]+)")
_WEBSITE_HOST = re.compile(r"^https?://([^/]+)")
_HOSTNAME = re.compile(r"^(?=.{1,253}$)(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


def validate_secure_url(url: str, allowed_domains) -> str:
    """Return the lowercased hostname or raise ValidationError."""
    if not url.startswith("https://"):
        raise ValidationError("URL must use HTTPS protocol")
    if len(url) > MAX_URL_LENGTH:
        raise ValidationError("URL exceeds maximum length")

    hostname = url[len("https://"):].split("/")[0].split("?")[0].split("#")[0].lower()

    if not hostname.isascii():
        raise ValidationError("Non-ASCII characters in domain not allowed")

    if not any(hostname == d or hostname.endswith(f".{d}") for d in allowed_domains):
        raise ValidationError(f"URL must be from authorized domains: {', '.join(allowed_domains)}")

    if ".." in hostname or "--" in hostname:
        raise ValidationError("Suspicious hostname pattern detected")

    return hostname


def extract_twitter_username(url: str) -> Optional[str]:
    match = _TWITTER_USER.search(url)
    return match.group(1) if match else None


def extract_domain(website: str) -> str:
    match = _WEBSITE_HOST.match(website or "")
    if not match:
        raise ValidationError("Invalid URL format")
    host = match.group(1).lower()
    # Strip credentials and port
    host = urlsplit(f"//{host}").hostname or host
    return host


def validate_hostname(host: str) -> str:
    """Lowercased DNS name with a dotted, alphabetic TLD, or ValidationError."""
    host = (host or "").strip().lower().rstrip(".")
    if not _HOSTNAME.match(host):
        raise ValidationError(f"Invalid domain name: {host!r}")
    return host


# =============================================
# SANITIZERS
# =============================================

def sanitize_url(url: str) -> str:
    return "".join(c for c in url if (c.isascii() and c.isalnum()) or c in "./:-_?=&#")[:500]


def sanitize_social_handle(handle: str) -> str:
    return "".join(c for c in handle.lstrip("@") if (c.isascii() and c.isalnum()) or c in "_-")[:50]


def sanitize_challenge_data(data: str) -> str:
    return "".join(c for c in data if (c.isascii() and c.isalnum()) or c in " -:._")[:200]
