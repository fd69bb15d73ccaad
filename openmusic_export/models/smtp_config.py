"""SMTP configuration model.

Defines Pydantic model for SMTP server configuration and validation.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from pydantic import BaseModel, Field, field_validator

IMPLICIT_TLS_PORT = 465


class SMTPConfig(BaseModel):
    """SMTP server configuration model.

    Validates and stores SMTP connection parameters.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port (1-65535). Port 465 selects implicit TLS.
        username: SMTP authentication username.
        password: SMTP authentication password.
        from_email: Sender email address.
        from_name: Sender display name.
        timeout: Socket timeout in seconds.
    """

    host: str = Field(..., min_length=1, description="SMTP server hostname")
    port: int = Field(..., ge=1, le=65535, description="SMTP server port")
    username: str = Field(..., min_length=1, description="SMTP authentication username")
    password: str = Field(..., description="SMTP authentication password")
    from_email: str = Field(..., min_length=3, description="Sender email address")
    from_name: str = Field(default="OpenMusic API", description="Sender display name")
    timeout: int = Field(default=60, ge=5, le=300, description="Socket timeout (seconds)")

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        """Validate password is not empty.

        Raises:
            ValueError: If password is empty or whitespace.
        """
        if not v or not v.strip():
            raise ValueError("SMTP password cannot be empty")
        return v

    @property
    def implicit_tls(self) -> bool:
        """Whether the connection must be TLS-wrapped from the first byte."""
        return self.port == IMPLICIT_TLS_PORT
