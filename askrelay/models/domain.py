from pydantic import BaseModel, Field
from typing import Optional
import datetime


class AskRequest(BaseModel):
    # Optional so a missing question gets the same 400 as a blank one
    question: Optional[str] = None


class HistoryEntry(BaseModel):
    question: str
    answer: str
    created_at: Optional[datetime.datetime] = None


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Human readable failure reason")


class MessageResponse(BaseModel):
    message: str
