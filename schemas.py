from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str


class LoginRequest(BaseModel):
    email: str
    password: str


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str


class AccountAccessOut(BaseModel):
    id: str
    name: str
    domain: Optional[str]
    role: str


class LoginResponse(BaseModel):
    token: str
    user: UserOut
    accounts: list[AccountAccessOut]


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    domain: Optional[str]
    status: str
    storage_used: int
    storage_quota: int
    encryption_enabled: bool
    created_at: datetime


class FileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    original_name: str
    size: int
    mime_type: Optional[str]
    type: str
    folder: str
    checksum: str
    is_encrypted: bool
    is_public: bool
    download_count: int
    uploaded_by_user_id: Optional[str]
    uploaded_by_agent_id: Optional[str]
    created_at: datetime
    updated_at: datetime


class UploadOut(FileOut):
    # number of the version that captured the replaced content, if any
    version_number: Optional[int] = None


class VersionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    file_id: str
    version_number: int
    size: int
    checksum: str
    created_by: str
    created_at: datetime


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    file_id: str
    account_id: str
    action: str
    performed_by: str
    performed_by_type: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime


class ShareOut(BaseModel):
    file_id: str
    public_url: str
    token: str


class MessageOut(BaseModel):
    message: str


class ToolCallRequest(BaseModel):
    name: str
    arguments: dict[str, Any] = {}


class ToolCallResponse(BaseModel):
    tool: str
    result: Any
