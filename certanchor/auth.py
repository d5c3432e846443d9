"""Bearer token verification and capability gating.

Tokens are Cognito-issued RS256 JWTs. A token is only trusted after its
signature, expiry, issuer and audience have been checked against the user
pool's published keys; only then are its group claims read.
"""

import logging
from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, Optional, Tuple

import jwt
from flask import current_app, g, request

from .config import Settings
from .errors import AuthenticationError, PermissionDenied

logger = logging.getLogger(__name__)

GROUPS_CLAIM = "cognito:groups"


@dataclass(frozen=True)
class Principal:
    subject: str
    username: str = ""
    email: str = ""
    groups: Tuple[str, ...] = field(default_factory=tuple)
    is_issuer: bool = False


def bearer_token(header: Optional[str]) -> str:
    if not header:
        raise AuthenticationError("No token provided")
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    return token.strip()


class TokenVerifier:
    """Verify Cognito tokens and turn their claims into a Principal.

    Args:
        issuer: Expected ``iss`` claim (the user pool URL)
        audience: App client id; checked against ``aud`` on id tokens and
            ``client_id`` on access tokens. None skips the check.
        issuer_group: Group whose members may issue certificates
        key_resolver: Callable returning the verification key for a raw token
        leeway: Clock skew tolerance in seconds
    """

    def __init__(
        self,
        issuer: str,
        audience: Optional[str],
        issuer_group: str = "issuers",
        key_resolver: Optional[Callable] = None,
        leeway: int = 30,
        jwks_url: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.issuer = issuer
        self.audience = audience
        self.issuer_group = issuer_group
        self.leeway = leeway
        if key_resolver is None:
            jwks = jwt.PyJWKClient(jwks_url or f"{issuer}/.well-known/jwks.json", timeout=timeout)
            key_resolver = lambda token: jwks.get_signing_key_from_jwt(token).key
        self._resolve_key = key_resolver

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenVerifier":
        return cls(
            issuer=settings.cognito_issuer,
            audience=settings.app_client_id,
            issuer_group=settings.issuer_group,
            jwks_url=settings.jwks_url,
            timeout=settings.request_timeout,
        )

    def verify(self, token: str) -> Principal:
        try:
            key = self._resolve_key(token)
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": ["exp", "iss", "sub"], "verify_aud": False},
            )
        except jwt.PyJWTError as e:
            logger.info("Rejected token: %s", e)
            raise AuthenticationError(f"Invalid token: {e}") from e

        token_use = claims.get("token_use")
        if token_use == "id":
            audience = claims.get("aud")
        elif token_use == "access":
            audience = claims.get("client_id")
        else:
            raise AuthenticationError(f"Unsupported token_use: {token_use!r}")
        if self.audience and audience != self.audience:
            raise AuthenticationError("Token was issued for a different client")

        groups = tuple(claims.get(GROUPS_CLAIM) or ())
        return Principal(
            subject=claims["sub"],
            username=claims.get("cognito:username") or claims.get("username") or "",
            email=claims.get("email", ""),
            groups=groups,
            is_issuer=self.issuer_group in groups,
        )

    def authenticate(self, header: Optional[str]) -> Principal:
        return self.verify(bearer_token(header))


# --- Flask decorators ---

def require_auth(view):
    """Authenticate the request and expose the principal as ``g.principal``."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        verifier = current_app.extensions["certanchor"].verifier
        g.principal = verifier.authenticate(request.headers.get("Authorization"))
        return view(*args, **kwargs)
    return wrapper


def require_issuer(view):
    @wraps(view)
    @require_auth
    def wrapper(*args, **kwargs):
        if not g.principal.is_issuer:
            raise PermissionDenied("Admin privileges required")
        return view(*args, **kwargs)
    return wrapper
