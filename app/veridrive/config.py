import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    access_token_ttl_seconds: int
    refresh_token_ttl_seconds: int
    rate_limit_max_requests: int
    rate_limit_window_seconds: int
    login_rate_limit: int
    login_rate_window_seconds: int

    solana_rpc_url: str
    simulate_solana: bool
    wallet_encryption_key: str

    arweave_host: str
    arweave_protocol: str
    arweave_upload_url: str

    trust_score_threshold: int
    telemetry_max_age_hours: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer (got {raw!r}).")


def _getbool(name: str, default: bool = False) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///veridrive.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", "storage"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        access_token_ttl_seconds=_getint("ACCESS_TOKEN_TTL_SECONDS", 3600),
        refresh_token_ttl_seconds=_getint("REFRESH_TOKEN_TTL_SECONDS", 7 * 24 * 3600),
        rate_limit_max_requests=_getint("RATE_LIMIT_MAX_REQUESTS", 100),
        rate_limit_window_seconds=_getint("RATE_LIMIT_WINDOW_SECONDS", 900),
        login_rate_limit=_getint("LOGIN_RATE_LIMIT", 5),
        login_rate_window_seconds=_getint("LOGIN_RATE_WINDOW_SECONDS", 300),
        solana_rpc_url=_getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com"),
        simulate_solana=_getbool("SIMULATE_SOLANA", False),
        wallet_encryption_key=_getenv("WALLET_ENCRYPTION_KEY", ""),
        arweave_host=_getenv("ARWEAVE_HOST", "arweave.net"),
        arweave_protocol=_getenv("ARWEAVE_PROTOCOL", "https"),
        arweave_upload_url=_getenv("ARWEAVE_UPLOAD_URL", ""),
        trust_score_threshold=_getint("TRUST_SCORE_THRESHOLD", 50),
        telemetry_max_age_hours=_getint("TELEMETRY_MAX_AGE_HOURS", 168),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # bearer tokens
        "ACCESS_TOKEN_TTL_SECONDS": s.access_token_ttl_seconds,
        "REFRESH_TOKEN_TTL_SECONDS": s.refresh_token_ttl_seconds,
        # per-IP limits
        "RATE_LIMIT_MAX_REQUESTS": s.rate_limit_max_requests,
        "RATE_LIMIT_WINDOW_SECONDS": s.rate_limit_window_seconds,
        "LOGIN_RATE_LIMIT": s.login_rate_limit,
        "LOGIN_RATE_WINDOW_SECONDS": s.login_rate_window_seconds,
        # chains
        "SOLANA_RPC_URL": s.solana_rpc_url,
        "SIMULATE_SOLANA": s.simulate_solana,
        "WALLET_ENCRYPTION_KEY": s.wallet_encryption_key,
        "ARWEAVE_HOST": s.arweave_host,
        "ARWEAVE_PROTOCOL": s.arweave_protocol,
        "ARWEAVE_UPLOAD_URL": s.arweave_upload_url,
        # purchase verification
        "TRUST_SCORE_THRESHOLD": s.trust_score_threshold,
        "TELEMETRY_MAX_AGE_HOURS": s.telemetry_max_age_hours,
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
