from pydantic import BaseModel


class TokenData(BaseModel):
    """Schema for token payload data"""

    user_id: str
    email: str | None = None
    username: str | None = None
