from pydantic_settings import BaseSettings
from typing import List, Any


def parse_csv_list(v: Any) -> List[str]:
    """Parse a comma-separated string (or list) into a list of stripped values"""
    if isinstance(v, list):
        return [str(item).strip() for item in v if str(item).strip()]
    if isinstance(v, str):
        return [item.strip() for item in v.split(',') if item.strip()]
    return []


class Settings(BaseSettings):
    """Pipeline settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "OverSkill Pipeline"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # Empty disables file logging

    # ==========================================
    # Cloudflare Workers
    # ==========================================
    CLOUDFLARE_ACCOUNT_ID: str = ""
    CLOUDFLARE_API_TOKEN: str = ""
    CLOUDFLARE_ZONE_ID: str = ""
    CLOUDFLARE_API_BASE: str = "https://api.cloudflare.com/client/v4"
    CLOUDFLARE_REQUEST_TIMEOUT: float = 60.0  # seconds
    APP_BASE_DOMAIN: str = "overskill.app"
    WORKER_COMPATIBILITY_DATE: str = "2024-01-01"

    # ==========================================
    # R2 Object Storage (S3 compatible)
    # ==========================================
    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET_NAME: str = "overskill-assets"
    R2_ENDPOINT_URL: str = ""  # Derived from R2_ACCOUNT_ID when empty
    R2_PUBLIC_URL: str = "https://assets.overskill.app"
    R2_ASSET_CACHE_CONTROL: str = "public, max-age=31536000, immutable"

    # ==========================================
    # GitHub Actions
    # ==========================================
    GITHUB_TOKEN: str = ""
    GITHUB_API_BASE: str = "https://api.github.com"
    GITHUB_WORKFLOW_GRACE_SECONDS: float = 15.0  # Workflow start latency
    GITHUB_POLL_INTERVAL_SECONDS: float = 10.0
    GITHUB_POLL_MAX_INTERVAL_SECONDS: float = 30.0
    GITHUB_MAX_POLLS: int = 30

    # ==========================================
    # Build Policy
    # ==========================================
    NPM_COMMAND: str = "npm"
    DEV_BUILD_TIMEOUT: float = 60.0  # Fast/development builds
    PROD_BUILD_TIMEOUT: float = 200.0  # Optimized/production builds
    MAX_BUILD_ATTEMPTS: int = 3
    MAX_FIXES_PER_ATTEMPT: int = 5
    WORKSPACE_ROOTS: str = "/github/workspace/"  # Extra log path prefixes to strip

    # ==========================================
    # Worker Size Policy
    # ==========================================
    WORKER_EMBED_CEILING: int = 900_000  # Bytes embedded in the worker script
    CRITICAL_ASSET_MAX_SIZE: int = 50_000  # Per-asset critical threshold
    WORKER_PLATFORM_LIMIT: int = 1_000_000  # Hard platform limit

    # ==========================================
    # External API Retry (transient failures only)
    # ==========================================
    API_MAX_RETRIES: int = 3
    API_RETRY_BASE_DELAY: float = 1.0  # seconds
    API_RETRY_MAX_DELAY: float = 30.0  # seconds

    # ==========================================
    # Platform Secrets injected into every worker
    # ==========================================
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_SECRET_KEY: str = ""

    # ==========================================
    # Auto-fix Rollout
    # ==========================================
    AUTO_FIX_ENABLED: bool = True
    AUTO_FIX_ROLLOUT_PERCENTAGE: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    @property
    def workspace_roots(self) -> List[str]:
        """Log path prefixes that are stripped from detected error locations"""
        return parse_csv_list(self.WORKSPACE_ROOTS)

    @property
    def effective_r2_endpoint(self) -> str:
        """R2 endpoint, derived from the account id when not set explicitly"""
        if self.R2_ENDPOINT_URL:
            return self.R2_ENDPOINT_URL
        if self.R2_ACCOUNT_ID:
            return f"https://{self.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"
        return ""

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


# Create settings instance
settings = Settings()
