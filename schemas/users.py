from typing import Literal, Optional

from pydantic import BaseModel

Role = Literal["GUEST", "SUPPORT", "MENTOR"]


class UserOut(BaseModel):
    id: str
    username: str
    name: str
    role: Role
    created_at: Optional[str] = None


class CreateUserRequest(BaseModel):
    username: str
    password: str
    name: str
    role: Role


class UpdateUserRequest(BaseModel):
    name: Optional[str] = None
    password: Optional[str] = None
    role: Optional[Role] = None
