from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    """JSON body returned for every failed request."""

    error: Any = Field(..., description="Message, or the upstream error payload when relayed")
    code: str = Field(..., description="Stable error code")
    details: Optional[Any] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str


class OAuthSettings(BaseModel):
    client_id: Optional[str] = Field(None, alias="clientId")
    authority: Optional[str] = None
    redirect_uri: str = Field(..., alias="redirectUri")
    scope: str
    response_type: str = Field(..., alias="responseType")
    prompt: str

    model_config = ConfigDict(populate_by_name=True)


class PromptConfig(BaseModel):
    title: str
    message: str
    login_button_text: str = Field(..., alias="loginButtonText")
    skip_button_text: str = Field(..., alias="skipButtonText")

    model_config = ConfigDict(populate_by_name=True)


class AuthConfigResponse(BaseModel):
    mode: str
    oauth: OAuthSettings
    prompt_config: PromptConfig = Field(..., alias="promptConfig")
    token_storage_key: str = Field(..., alias="tokenStorageKey")
    auto_refresh: bool = Field(..., alias="autoRefresh")
    refresh_threshold: int = Field(..., alias="refreshThreshold")

    model_config = ConfigDict(populate_by_name=True)


class SessionView(BaseModel):
    chat_id: str = Field(..., alias="chatId")
    user_info: Dict[str, Optional[str]] = Field(..., alias="userInfo")
    identifier: str
    created_at: str = Field(..., alias="createdAt")
    expires_at: str = Field(..., alias="expiresAt")
    last_accessed: str = Field(..., alias="lastAccessed")

    model_config = ConfigDict(populate_by_name=True)


class SessionDump(BaseModel):
    identifier: str
    count: int
    sessions: List[SessionView]
