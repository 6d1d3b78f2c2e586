from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Chat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    type: Optional[str] = None


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: Optional[int] = None
    chat: Chat
    text: Optional[str] = None


class Update(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update_id: Optional[int] = None
    message: Optional[Message] = None
    edited_message: Optional[Message] = None


class SelfClient(BaseModel):
    """Content of the ``self_client.json`` file downloaded from the Zoho API console."""

    model_config = ConfigDict(extra="ignore")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    code: str = Field(min_length=1)
    grant_type: Optional[str] = None
    scope: Optional[list[str] | str] = None
