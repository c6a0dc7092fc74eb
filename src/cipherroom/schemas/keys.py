"""Key material Pydantic schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PublicKeyJwk(BaseModel):
    """RSA-OAEP public key in the JSON Web Key form browsers export.

    This is the only identity key material ever published to the directory.
    """

    kty: Literal["RSA"] = "RSA"
    n: str = Field(..., min_length=1, description="Base64url-encoded modulus")
    e: str = Field(..., min_length=1, description="Base64url-encoded public exponent")
    alg: str = Field(default="RSA-OAEP-256")
    ext: bool = True
    key_ops: list[str] = Field(default_factory=lambda: ["wrapKey"])

    model_config = ConfigDict(extra="ignore", frozen=True)

    def to_json(self) -> str:
        """Serialize to the compact JSON string stored in the directory."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> PublicKeyJwk:
        """Parse the JSON string stored in the directory."""
        return cls.model_validate_json(data)
