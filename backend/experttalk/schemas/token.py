from typing import Optional
from pydantic import BaseModel


class TokenPayload(BaseModel):
    """Claims of a bearer token; ``sub`` is the user id."""
    sub: Optional[str] = None
    exp: Optional[int] = None
    type: Optional[str] = None
