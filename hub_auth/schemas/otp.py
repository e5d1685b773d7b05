from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any

class OtpIssue(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("appId", "appid", "app_id"))
    identity: Optional[str] = Field(default=None, validation_alias=AliasChoices("identity", "mobile"))

class OtpVerify(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("appId", "appid", "app_id"))
    identity: Optional[str] = Field(default=None, validation_alias=AliasChoices("identity", "mobile"))
    code: str = Field(validation_alias=AliasChoices("code", "otp"))

class OtpIssued(BaseModel):
    success: bool = True
    cooldownSeconds: int
    expiresInSeconds: int

class OtpVerified(BaseModel):
    success: bool = True
    verified: bool = True
    appId: str
    identity: str
    session: Optional[Dict[str, Any]] = None

class OtpPolicy(BaseModel):
    appId: str
    codeLength: int
    ttlSeconds: int
    cooldownSeconds: int
    maxAttempts: int
    channel: str
