from pydantic import BaseModel, EmailStr


class LoginRequest(BaseModel):
    email: str
    password: str
    deviceLabel: str = ""


class RefreshTokenRequest(BaseModel):
    refreshToken: str


class LogoutRequest(BaseModel):
    refreshToken: str


class AuthUser(BaseModel):
    id: str
    fullName: str
    email: EmailStr
    role: str


class AuthResponse(BaseModel):
    accessToken: str
    refreshToken: str
    user: AuthUser
