from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)


class TwoFactorSetupOut(BaseModel):
    secret: str
    otpauth_uri: str


class TwoFactorToggleRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)
    enabled: Optional[bool] = None


class TwoFactorToggleOut(BaseModel):
    enabled: bool
    tokens: list[str]
