"""
Centralized configuration management for the Hashmark service.

Pydantic v2 settings management to enforce strict validation,
zero secret leakage, and fast-failure on invalid configuration.
"""

from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import AnyHttpUrl, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

SensitiveEnv = Annotated[
    Optional[SecretStr],
    Field(
        default=None,
        description="Sensitive credential, redacted from logs",
    ),
]

ContractAddress = Annotated[
    Optional[Annotated[str, Field(pattern=r"^0x[0-9a-fA-F]{40}$")]],
    Field(
        default=None,
        description="EVM address of the deployed proof registry contract",
    ),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Read once at startup. The ledger connection is built from the values
    present at that point and is never re-configured afterwards.
    """

    # ---------------------------------------------------------------------
    # Ledger connection
    # ---------------------------------------------------------------------

    rpc_url: Annotated[
        AnyHttpUrl,
        Field(
            default="http://127.0.0.1:8545",
            description="JSON-RPC endpoint of the ledger node",
        ),
    ]

    contract_address: ContractAddress

    private_key: SensitiveEnv

    log_start_block: Annotated[
        int,
        Field(
            default=0,
            ge=0,
            description="First block scanned for VideoAuthenticated logs",
        ),
    ]

    network_name: Annotated[
        Optional[str],
        Field(
            default=None,
            description="Overrides the network label printed on certificates",
        ),
    ]

    # ---------------------------------------------------------------------
    # Read / write behaviour
    # ---------------------------------------------------------------------

    read_retry_attempts: Annotated[
        int,
        Field(
            default=3,
            ge=1,
            le=10,
            description="Attempts for read calls failing at the transport layer",
        ),
    ]

    read_retry_max_wait_seconds: Annotated[
        float,
        Field(
            default=2.0,
            ge=0.0,
            description="Upper bound of the exponential back-off between read retries",
        ),
    ]

    receipt_poll_seconds: Annotated[
        float,
        Field(
            default=0.5,
            gt=0.0,
            description="Poll interval while waiting for a transaction receipt",
        ),
    ]

    confirmation_timeout_seconds: Annotated[
        Optional[float],
        Field(
            default=None,
            gt=0.0,
            description=(
                "Timeout imposed by the HTTP layer on block confirmation. "
                "Unset means wait for as long as the ledger takes."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # HTTP boundary
    # ---------------------------------------------------------------------

    frontend_url: Annotated[
        str,
        Field(
            default="http://localhost:5173",
            min_length=1,
            description="Origin used to build canonical verification URLs",
        ),
    ]

    cors_origins: Annotated[
        str,
        Field(
            default="http://localhost:5173",
            description="Comma-separated list of allowed CORS origins",
        ),
    ]

    api_prefix: Annotated[
        str,
        Field(
            default="/api",
            pattern=r"^(/[A-Za-z0-9_-]+)*$",
            description="Mount point of the public API router",
        ),
    ]

    max_upload_size_mb: Annotated[
        int,
        Field(
            default=500,
            ge=1,
            le=2048,
            description="OOM protection limit for hashed uploads",
        ),
    ]

    recent_default_limit: Annotated[
        int,
        Field(
            default=20,
            ge=1,
            le=100,
            description="Listing size used when /recent is called without a limit",
        ),
    ]

    stats_recent_count: Annotated[
        int,
        Field(
            default=5,
            ge=1,
            le=100,
            description="Number of recent proofs embedded in /stats",
        ),
    ]

    # ---------------------------------------------------------------------
    # Development helpers
    # ---------------------------------------------------------------------

    enable_faucet: Annotated[
        bool,
        Field(
            default=False,
            description="Expose the local Anvil faucet endpoint (development only)",
        ),
    ]

    model_config = SettingsConfigDict(
        env_prefix="HASHMARK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    @field_validator("frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @property
    def cors_origin_list(self) -> List[str]:
        return [
            origin.strip()
            for origin in self.cors_origins.split(",")
            if origin.strip()
        ]

    @property
    def server_signing_enabled(self) -> bool:
        return (
            self.private_key is not None
            and bool(self.private_key.get_secret_value().strip())
        )


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the FastAPI lifecycle.
    """
    return Settings()  # singleton within process
