from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # shown inside the login challenge; changing it invalidates outstanding challenges
    SERVICE_NAME: str = "VaultSeed"

    HOST: str = "127.0.0.1"
    PORT: int = 8080
    # comma-separated; "*" allows any origin
    CORS_ORIGINS: str = "*"

    # credential lifetime (the credential also dies when the identity nonce rotates)
    CREDENTIAL_TTL_SECONDS: int = 3600

    # raw 32-byte Ed25519 seed, base64. Empty => ephemeral key per process.
    SERVER_ED25519_SK_B64: str = ""

    # "memory" | "sqlite"
    STORE_BACKEND: str = "memory"
    SQLITE_PATH: str = "data/vaultseed.db"

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @field_validator("SERVICE_NAME")
    @classmethod
    def normalize_service_name(cls, v: str) -> str:
        return (v or "").strip() or "VaultSeed"

    @property
    def cors_origin_list(self) -> list[str]:
        # CORS_ORIGINS="https://a.example,https://b.example"
        parts = [p.strip().rstrip("/") for p in self.CORS_ORIGINS.split(",") if p.strip()]
        return parts or ["*"]

    @field_validator("CREDENTIAL_TTL_SECONDS")
    @classmethod
    def check_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("CREDENTIAL_TTL_SECONDS must be positive")
        return v

    @field_validator("STORE_BACKEND")
    @classmethod
    def normalize_backend(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("memory", "sqlite"):
            raise ValueError("STORE_BACKEND must be 'memory' or 'sqlite'")
        return v

    @field_validator("AUDIT_ENABLED", mode="before")
    @classmethod
    def normalize_audit_enabled(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return True

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        v = (v or "INFO").strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid LOG_LEVEL: {v}")
        return v


settings = Settings()
