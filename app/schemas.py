from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _required_string(value, message: str) -> str:
    # sem coerção: 123 ou true não valem como texto
    if not isinstance(value, str) or not value.strip():
        raise ValueError(message)
    return value


class TokenRequest(BaseModel):
    """Credenciais do usuário root da API interna."""

    username: str = Field(..., description="Usuário root (JWT_ROOT_USERNAME).")
    password: str = Field(..., description="Senha root (JWT_ROOT_PASSWORD).")

    @field_validator("username", "password", mode="before")
    @classmethod
    def _validate_credentials(cls, value):
        return _required_string(value, "Username and password are required")


class TechnicianCreate(BaseModel):
    email: str = Field(..., description="E-mail corporativo do técnico.")

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value):
        return _required_string(value, "Field 'email' is required").strip()


class TechnicianUpdate(BaseModel):
    email: Optional[str] = None
    activo: Optional[bool] = None

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value):
        if value is None:
            return None
        return _required_string(value, "Field 'email' must be a string").strip()


class LogCreate(BaseModel):
    message: str = Field(..., description="Texto (geralmente JSON) a registrar.")

    @field_validator("message", mode="before")
    @classmethod
    def _validate_message(cls, value):
        return _required_string(value, "Field 'message' is required")
