from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional

class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    message: str = Field(..., min_length=1, max_length=16000)
    thread_id: Optional[str] = Field(default=None, alias="threadId", min_length=1, max_length=64, description="Existing thread to continue")
    tool_flag: bool = Field(default=False, alias="toolFlag", description="Bind the web search capability for this turn")
    attachments_context: Optional[str] = Field(default=None, alias="attachmentsContext", max_length=48000, description="Text already extracted from attached files")

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value
