"""
Signing keys for tokens issued by the authorization server.

Keys come from OIDC_JWKS (a JSON private JWK set) when configured. Otherwise
an RSA-2048 key is generated at boot and kept in memory only: every restart
then invalidates all issued tokens, so this fallback is refused in production.
"""

import json
from typing import Any

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from app.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

SIGNING_ALGORITHM = "RS256"


class SigningKeys:
    def __init__(self, private_key: rsa.RSAPrivateKey, kid: str, ephemeral: bool) -> None:
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.kid = kid
        self.ephemeral = ephemeral

    @classmethod
    def from_settings(cls) -> "SigningKeys":
        if settings.OIDC_JWKS:
            return cls.from_jwks(settings.OIDC_JWKS)

        if settings.ENVIRONMENT == "production":
            raise RuntimeError("OIDC_JWKS must be configured in production")

        logger.warning("oidc_signing_key_generated", kid=settings.OIDC_KEY_ID, persisted=False)
        return cls(
            rsa.generate_private_key(public_exponent=65537, key_size=2048),
            kid=settings.OIDC_KEY_ID,
            ephemeral=True,
        )

    @classmethod
    def from_jwks(cls, raw: str) -> "SigningKeys":
        keys = json.loads(raw).get("keys") or []
        for jwk in keys:
            if jwk.get("kty") == "RSA" and "d" in jwk:
                private_key = RSAAlgorithm.from_jwk(json.dumps(jwk))
                if not isinstance(private_key, rsa.RSAPrivateKey):
                    continue
                logger.info("oidc_signing_key_loaded", kid=jwk.get("kid"))
                return cls(private_key, kid=jwk.get("kid") or settings.OIDC_KEY_ID, ephemeral=False)
        raise ValueError("OIDC_JWKS contains no RSA private key")

    def jwks(self) -> dict[str, Any]:
        """Public JWK set for /.well-known/jwks.json."""
        jwk = RSAAlgorithm.to_jwk(self.public_key, as_dict=True)
        jwk.update({"kid": self.kid, "use": "sig", "alg": SIGNING_ALGORITHM})
        return {"keys": [jwk]}

    def sign(self, claims: dict[str, Any]) -> str:
        return jwt.encode(
            claims, self.private_key, algorithm=SIGNING_ALGORITHM, headers={"kid": self.kid}
        )

    def verify(self, token: str, audience: str | None = None) -> dict[str, Any]:
        """
        Verify a token this server issued.

        Raises:
            jwt.PyJWTError: bad signature, wrong issuer or expired
        """
        return jwt.decode(
            token,
            self.public_key,
            algorithms=[SIGNING_ALGORITHM],
            issuer=settings.OIDC_ISSUER.rstrip("/"),
            audience=audience,
            options={"verify_aud": audience is not None, "require": ["exp", "iat", "sub"]},
        )
