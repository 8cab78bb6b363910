from typing import Protocol

from pydantic import BaseModel


class AccessToken(BaseModel):
    """A currently valid bearer credential and the account it belongs to"""
    bearer_token: str
    account_address: str = ""


class TokenProvider(Protocol):
    """Anything able to hand out a valid bearer token for a user"""

    async def get_valid_token(self, user_id: str) -> AccessToken:
        ...
