from typing import Annotated, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, field_validator

Priority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
Status = Literal["PENDING", "IN_PROGRESS", "RESOLVED", "CLOSED"]


def _required_text(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


RequiredText = Annotated[str, AfterValidator(_required_text)]


class UserSummary(BaseModel):
    id: str
    name: str
    username: Optional[str] = None
    role: Optional[str] = None


class MessageOut(BaseModel):
    id: str
    request_id: str
    sender_id: str
    content: str
    read: bool = False
    created_at: str
    sender: Optional[UserSummary] = None


class RequestOut(BaseModel):
    id: str
    guest_id: str
    email: str
    issue: str
    description: str
    priority: Priority
    status: Status
    category: str
    assigned_agent: Optional[str] = None
    resolved_at: Optional[str] = None
    created_at: str
    updated_at: str
    guest: Optional[UserSummary] = None
    last_message: Optional[MessageOut] = None
    messages: Optional[List[MessageOut]] = None


class CreateRequestBody(BaseModel):
    email: RequiredText
    issue: RequiredText
    description: RequiredText
    category: RequiredText
    priority: Optional[Priority] = None


class UpdateRequestBody(BaseModel):
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    assigned_agent: Optional[str] = None

    def patch(self) -> dict:
        return self.model_dump(exclude_none=True)


class CreateMessageBody(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def content_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message content is required")
        return value


class RequestResponse(BaseModel):
    request: RequestOut


class RequestListResponse(BaseModel):
    requests: List[RequestOut]


class MessageResponse(BaseModel):
    message: MessageOut


class MessageListResponse(BaseModel):
    messages: List[MessageOut]


class MarkReadResponse(BaseModel):
    success: bool = True
    updated: int


class SuccessResponse(BaseModel):
    success: bool = True
