from pydantic import BaseModel, field_validator

from schemas.users import UserOut


class LoginRequest(BaseModel):
    username: str
    password: str


class GuestLoginRequest(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def name_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value


class TokenResponse(BaseModel):
    token: str
    expires_at: int
    user: UserOut


class MeResponse(BaseModel):
    user: UserOut
