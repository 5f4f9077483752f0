"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /api/messages.

    Validates:
    - listing_id / receiver_id: non-empty strings
    - body: non-blank, at most 4096 characters
    - client_id: optional correlation id of the sender's optimistic entry
    """
    listing_id: str = Field(..., min_length=1, description="Listing the conversation is about")
    receiver_id: str = Field(..., min_length=1, description="User receiving the message")
    body: str = Field(..., description="Message text; length is checked against MAX_MESSAGE_LENGTH")
    client_id: Optional[str] = Field(None, max_length=64, description="Client correlation id")

    @field_validator("body")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message cannot be empty")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "listing_id": "8a4f0c1e-3f0e-4a57-b0b4-1d1f6f0e9a10",
                    "receiver_id": "5c2d7b9e-6e7a-4f7e-8f38-02b1b6a9d2c4",
                    "body": "Is the desk still available?",
                }
            ]
        }
    }


class EditMessageRequest(BaseModel):
    body: str = Field(..., description="New message text; length is checked against MAX_MESSAGE_LENGTH")

    @field_validator("body")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message cannot be empty")
        return v


class MarkReadRequest(BaseModel):
    listing_id: str = Field(..., min_length=1)
    counterpart_id: str = Field(..., min_length=1)


class TypingRequest(BaseModel):
    listing_id: str = Field(..., min_length=1)
    receiver_id: Optional[str] = Field(None, description="Counterpart the user is typing to")
    typing: bool = Field(True, description="False clears the indicator immediately")


class PushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscriptionData(BaseModel):
    """The browser's PushSubscription serialised with toJSON()."""
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys


class PushSubscribeRequest(BaseModel):
    subscription: PushSubscriptionData


class PushUnsubscribeRequest(BaseModel):
    endpoint: Optional[str] = Field(None, min_length=1, description="Omit to remove every device of the user")


class ReportRequest(BaseModel):
    listing_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=2000)


class ReportStatusRequest(BaseModel):
    status: Literal["resolved", "dismissed"]


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class SuccessResponse(BaseModel):
    success: bool = True


class UserSummary(BaseModel):
    id: str
    display_name: Optional[str] = None


class ListingSummary(BaseModel):
    id: str
    title: str
    image_url: Optional[str] = None


class MessageResponse(BaseModel):
    """A stored message with optional sender/receiver/listing summaries."""
    id: str
    listing_id: str
    sender_id: str
    receiver_id: str
    body: str
    created_at: str
    edited: bool = False
    read: bool = False
    delivered_at: Optional[str] = None
    seen_at: Optional[str] = None
    client_id: Optional[str] = None
    sender: Optional[UserSummary] = None
    receiver: Optional[UserSummary] = None
    listing: Optional[ListingSummary] = None


class MessageEnvelope(BaseModel):
    message: MessageResponse


class MessagesListResponse(BaseModel):
    messages: List[MessageResponse] = Field(default_factory=list)


class EditMessageResponse(BaseModel):
    success: bool = True
    message: MessageResponse


class MarkReadResponse(BaseModel):
    success: bool = True
    updated: int = Field(..., ge=0, description="Messages flipped to read by this call")


class ConversationResponse(BaseModel):
    listing_id: str
    other_user_id: str
    last_message: str
    last_message_time: str
    last_message_id: str
    unread_count: int = Field(..., ge=0)
    listing: Optional[ListingSummary] = None
    other_user: Optional[UserSummary] = None


class ConversationsListResponse(BaseModel):
    conversations: List[ConversationResponse] = Field(default_factory=list)
    error: Optional[str] = Field(None, description="Set when conversations could not be loaded")


class UnreadCountResponse(BaseModel):
    count: int = Field(..., ge=0)


class PushStatusResponse(BaseModel):
    subscribed: bool = Field(..., description="Whether any browser of the user receives push")


class TypingResponse(BaseModel):
    typing: List[str] = Field(default_factory=list, description="Caller or counterpart, when typing on the listing")


class ReportResponse(BaseModel):
    id: str
    reporter_id: str
    listing_id: str
    reason: str
    status: Literal["pending", "resolved", "dismissed"]
    created_at: str
    reporter: Optional[UserSummary] = None
    listing: Optional[ListingSummary] = None


class ReportEnvelope(BaseModel):
    report: ReportResponse


class ReportsListResponse(BaseModel):
    reports: List[ReportResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
