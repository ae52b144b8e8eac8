from pydantic import BaseModel
from typing import Literal, Optional, Union
from datetime import datetime
from order_placement.core.enums import ChallengeRequestType, ChallengeStatus


# Server -> client messages

class TwoFactorRequiredMessage(BaseModel):
    type: Literal["two_fa_required"] = "two_fa_required"
    session_token: str
    prompt_message: Optional[str] = None
    expires_at: datetime
    supplier_name: str
    two_fa_type: Optional[str] = None
    request_type: ChallengeRequestType
    order_id: Optional[int] = None


class CodeResultMessage(BaseModel):
    type: Literal["code_result"] = "code_result"
    session_token: Optional[str] = None
    success: bool
    error: Optional[str] = None
    can_retry: bool = False
    attempts_remaining: Optional[int] = None


class CancelledMessage(BaseModel):
    type: Literal["cancelled"] = "cancelled"
    session_token: str


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str


class StatusUpdateMessage(BaseModel):
    type: Literal["status_update"] = "status_update"
    order_id: int
    status: str
    verification_status: Optional[str] = None
    confirmation_number: Optional[str] = None
    error_message: Optional[str] = None


# Client -> server actions

class SubmitCodeAction(BaseModel):
    action: Literal["submit_code"] = "submit_code"
    session_token: str
    code: str


class CancelAction(BaseModel):
    action: Literal["cancel"] = "cancel"
    session_token: str


ClientAction = Union[SubmitCodeAction, CancelAction]


# HTTP fallbacks

class CodeSubmission(BaseModel):
    code: str


class ChallengeOut(BaseModel):
    session_token: str
    supplier_name: str
    request_type: ChallengeRequestType
    two_fa_type: Optional[str] = None
    prompt_message: Optional[str] = None
    status: ChallengeStatus
    attempts: int
    attempts_remaining: int
    expires_at: datetime
    time_remaining: int
    order_id: Optional[int] = None
