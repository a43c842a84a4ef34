"""Authentication schemas."""
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class TokenClaims(BaseModel):
    """Claims every accepted bearer token must carry."""
    sub: str = Field(..., min_length=1)  # subject (user id)
    iss: str
    aud: Any  # string or list of strings
    exp: int
    iat: Optional[int] = None

    model_config = {"extra": "allow"}


class AuthenticatedUser(BaseModel):
    """Identity established by the auth verifier for one request."""
    user_id: str
    claims: Dict[str, Any] = Field(default_factory=dict)
