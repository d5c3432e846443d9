"""Environment-driven configuration.

Values come from the process environment, optionally seeded from a ``.env``
file via python-dotenv. Nothing here talks to the network; collaborators
check the settings they need when they are built.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_ABI_PATH = PACKAGE_DIR / "contract_abi.json"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _get_int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _get_float(env, name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    # Blockchain
    rpc_url: str = "http://127.0.0.1:8545"
    contract_address: Optional[str] = None
    contract_abi_path: Path = DEFAULT_ABI_PATH
    account_address: Optional[str] = None
    private_key: Optional[str] = None
    gas_margin: float = 0.2
    gas_ceiling: Optional[int] = None
    anchor_retries: int = 2
    receipt_timeout: int = 120

    # AWS
    aws_region: Optional[str] = None
    s3_bucket: Optional[str] = None
    user_pool_id: Optional[str] = None
    app_client_id: Optional[str] = None
    issuer_group: str = "issuers"
    signed_url_expiry: int = 3600

    # HTTP
    request_timeout: float = 10.0
    max_upload_bytes: int = 16 * 1024 * 1024
    cors_origins: str = "*"
    port: int = 3001
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env=None, dotenv: bool = True) -> "Settings":
        """Build settings from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (tests)
            dotenv: Load a ``.env`` file first when reading ``os.environ``

        Raises:
            ConfigError: If a numeric variable cannot be parsed
        """
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        gas_margin = _get_float(env, "GAS_MARGIN", cls.gas_margin)
        if gas_margin < 0:
            raise ConfigError("GAS_MARGIN must not be negative")
        gas_ceiling = _get_int(env, "GAS_CEILING", 0) or None
        anchor_retries = _get_int(env, "ANCHOR_RETRIES", cls.anchor_retries)
        if anchor_retries < 0:
            raise ConfigError("ANCHOR_RETRIES must not be negative")

        return cls(
            rpc_url=(
                env.get("RPC_URL")
                or env.get("GANACHE_RPC_URL")
                or env.get("INFURA_URL")
                or cls.rpc_url
            ),
            contract_address=env.get("CONTRACT_ADDRESS") or None,
            contract_abi_path=Path(env.get("CONTRACT_ABI_PATH") or DEFAULT_ABI_PATH),
            account_address=env.get("ACCOUNT_ADDRESS") or None,
            private_key=env.get("PRIVATE_KEY") or None,
            gas_margin=gas_margin,
            gas_ceiling=gas_ceiling,
            anchor_retries=anchor_retries,
            receipt_timeout=_get_int(env, "RECEIPT_TIMEOUT", cls.receipt_timeout),
            aws_region=env.get("AWS_REGION") or None,
            s3_bucket=env.get("S3_BUCKET_NAME") or None,
            user_pool_id=env.get("USER_POOL_ID") or None,
            app_client_id=env.get("COGNITO_APP_CLIENT_ID") or None,
            issuer_group=env.get("ISSUER_GROUP") or cls.issuer_group,
            signed_url_expiry=_get_int(env, "SIGNED_URL_EXPIRY", cls.signed_url_expiry),
            request_timeout=_get_float(env, "REQUEST_TIMEOUT", cls.request_timeout),
            max_upload_bytes=_get_int(env, "MAX_UPLOAD_BYTES", cls.max_upload_bytes),
            cors_origins=env.get("CORS_ORIGINS") or cls.cors_origins,
            port=_get_int(env, "PORT", cls.port),
            log_level=(env.get("LOG_LEVEL") or cls.log_level).upper(),
        )

    @property
    def cognito_issuer(self) -> str:
        self.require("aws_region", "user_pool_id")
        return f"https://cognito-idp.{self.aws_region}.amazonaws.com/{self.user_pool_id}"

    @property
    def jwks_url(self) -> str:
        return f"{self.cognito_issuer}/.well-known/jwks.json"

    def require(self, *names: str) -> None:
        """Raise ConfigError naming every listed setting that is unset."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigError(
                "Missing required configuration: " + ", ".join(missing)
            )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
