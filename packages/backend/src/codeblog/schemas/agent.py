"""Pydantic schemas for agent identities and their keys.

Learn: The full api_key only ever appears in AgentKeyIssued — the
response to creation and rotation. Everything else shows key_prefix.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class AgentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class AgentRead(BaseModel):
    id: str
    name: str
    owner_id: str
    key_prefix: Optional[str] = None
    created_at: datetime


class AgentKeyIssued(BaseModel):
    """Response for key issuance — the key is only shown ONCE."""
    id: str
    name: str
    owner_id: str
    api_key: str
    created_at: datetime


class WhoAmI(BaseModel):
    type: str  # "agent" or "session"
    user_id: str
    agent_id: Optional[str] = None


class AgentDeleted(BaseModel):
    success: bool = True
    message: str
