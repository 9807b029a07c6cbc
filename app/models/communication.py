from pydantic import AliasChoices, BaseModel, Field

from app.models.fleet import Role


class Communication(BaseModel):
    id: int
    emergency_request_id: int
    sender_id: int
    sender_role: Role
    receiver_id: int
    receiver_role: Role
    message: str
    message_type: str = "text"
    is_read: bool = False
    created_at: str


class ChatMessage(BaseModel):
    """Inbound ``chat_message`` frame payload. Accepts camelCase or snake_case keys."""

    emergency_request_id: int = Field(
        ..., validation_alias=AliasChoices("emergencyRequestId", "emergency_request_id")
    )
    receiver_id: int = Field(..., validation_alias=AliasChoices("receiverId", "receiver_id"))
    receiver_role: Role = Field(..., validation_alias=AliasChoices("receiverRole", "receiver_role"))
    message: str = Field(..., min_length=1, max_length=2000)
