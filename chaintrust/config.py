"""
ChainTrust — Configuration
Unified config for verification, monitoring and community scoring.

All settings load from environment variables with safe defaults for development.
In production, set CT_ENV=production to enforce required values.
"""
import os
import secrets
import warnings
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


class Settings:
    def __init__(self):
        self.ENVIRONMENT = os.getenv("CT_ENV", "development")

        # === Redis ===
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

        # === Rate Limits ===
        # "memory" keeps history in-process, "redis" shares it across workers
        self.RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")
        self.RATE_LIMIT_HTTP = int(os.getenv("RATE_LIMIT_HTTP", "10"))
        self.RATE_WINDOW_HTTP = int(os.getenv("RATE_WINDOW_HTTP", "60"))
        self.RATE_LIMIT_VERIFICATION = int(os.getenv("RATE_LIMIT_VERIFICATION", "5"))
        self.RATE_WINDOW_VERIFICATION = int(os.getenv("RATE_WINDOW_VERIFICATION", "300"))
        self.RATE_LIMIT_REPORT = int(os.getenv("RATE_LIMIT_REPORT", "3"))
        self.RATE_WINDOW_REPORT = int(os.getenv("RATE_WINDOW_REPORT", "600"))
        self.RATE_HISTORY_CAP = int(os.getenv("RATE_HISTORY_CAP", "1000"))
        self.RATE_HISTORY_TRIM = int(os.getenv("RATE_HISTORY_TRIM", "100"))
        self.RATE_CLEANUP_WINDOW = int(os.getenv("RATE_CLEANUP_WINDOW", "300"))

        # === Challenges ===
        self.DOMAIN_CHALLENGE_TTL = int(os.getenv("DOMAIN_CHALLENGE_TTL", str(24 * 3600)))
        self.CHAIN_CHALLENGE_TTL = int(os.getenv("CHAIN_CHALLENGE_TTL", str(48 * 3600)))
        self.TXT_RECORD_PREFIX = os.getenv("TXT_RECORD_PREFIX", "chaintrust-verification=")

        # === Monitoring ===
        self.PROOF_CHECK_DELAY = int(os.getenv("PROOF_CHECK_DELAY", "3600"))
        self.REPUTATION_UPDATE_DELAY = int(os.getenv("REPUTATION_UPDATE_DELAY", "300"))
        self.RETRY_BASE_DELAY = int(os.getenv("RETRY_BASE_DELAY", "3600"))
        self.TASK_MAX_RETRIES = int(os.getenv("TASK_MAX_RETRIES", "3"))
        self.TASK_TIMEOUT = float(os.getenv("TASK_TIMEOUT", "30"))
        self.TASK_CONCURRENCY = int(os.getenv("TASK_CONCURRENCY", "5"))
        self.REPORT_THRESHOLD = int(os.getenv("REPORT_THRESHOLD", "3"))
        self.FLAG_THRESHOLD = int(os.getenv("FLAG_THRESHOLD", "30"))
        self.EVENT_HISTORY_SIZE = int(os.getenv("EVENT_HISTORY_SIZE", "10000"))

        # === Evidence sources ===
        self.HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10"))
        self.CHAIN_HTTP_TIMEOUT = float(os.getenv("CHAIN_HTTP_TIMEOUT", "15"))
        self.DNS_TIMEOUT = float(os.getenv("DNS_TIMEOUT", "10"))
        self.GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
        self.ETHERSCAN_API_KEY = os.getenv("ETHERSCAN_API_KEY", "")
        self.USER_AGENT = os.getenv(
            "CT_USER_AGENT", "ChainTrust Verifier/1.0 (+https://chaintrust.dev/bot)"
        )

        # === Application ===
        self._secret_from_env = os.getenv("SECRET_KEY", "")
        if self._secret_from_env:
            self.SECRET_KEY = self._secret_from_env
        else:
            self.SECRET_KEY = secrets.token_hex(32)
            if self.ENVIRONMENT == "production":
                raise RuntimeError("SECRET_KEY must be set in production. Add it to .env")
            warnings.warn("SECRET_KEY not set, using random key. Tokens will not survive restarts.")

        self.CT_HOST = os.getenv("CT_HOST", "0.0.0.0")
        self.CT_PORT = int(os.getenv("CT_PORT", "8000"))

        # Principals allowed to moderate testimonials and alerts
        self.MODERATORS = [
            p.strip()
            for p in os.getenv("CT_MODERATORS", "").split(",")
            if p.strip()
        ]

        # === Worker ===
        self.HEARTBEAT_MINUTES = int(os.getenv("HEARTBEAT_MINUTES", "5"))
        self.SCHEDULER_TICK_SECONDS = int(os.getenv("SCHEDULER_TICK_SECONDS", "3600"))
        # Run tick/heartbeat inside the API process instead of a separate worker
        self.SCHEDULER_IN_PROCESS = os.getenv("SCHEDULER_IN_PROCESS", "true").lower() in ("1", "true", "yes")
        self.WORKER_MAX_JOBS = int(os.getenv("WORKER_MAX_JOBS", "10"))
        self.WORKER_JOB_TIMEOUT = int(os.getenv("WORKER_JOB_TIMEOUT", "300"))

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def rate_limits(self) -> dict:
        """Per action class (limit, window_seconds)."""
        return {
            "http": (self.RATE_LIMIT_HTTP, self.RATE_WINDOW_HTTP),
            "verification": (self.RATE_LIMIT_VERIFICATION, self.RATE_WINDOW_VERIFICATION),
            "report": (self.RATE_LIMIT_REPORT, self.RATE_WINDOW_REPORT),
        }


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
