from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import List, Optional


class Settings(BaseSettings):
    # Database: a full URL, or PostgreSQL parts
    database_url: Optional[str] = None
    db_username: Optional[str] = None
    db_password: Optional[str] = None
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: Optional[str] = None
    db_schema: Optional[str] = None

    # Tokens and passwords
    secret_key: str = "change-me-pitstop-development-secret-key"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7
    bcrypt_rounds: int = 12

    # Account lifecycle
    max_login_attempts: int = 5
    lockout_minutes: int = 30
    email_verification_hours: int = 24
    password_reset_minutes: int = 60

    # Workshop rules
    labour_hourly_rate: float = 50.0
    invoice_due_days: int = 30

    # API
    rate_limit_enabled: bool = True
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Email
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    from_email: str = "noreply@pitstop.lk"
    frontend_url: str = "http://localhost:5173"

    @field_validator('algorithm', 'access_token_expire_minutes', 'bcrypt_rounds', mode='before')
    @classmethod
    def blank_means_default(cls, v, info):
        # An empty line in .env should not wipe out the default
        if v is None or v == '':
            return cls.model_fields[info.field_name].default
        return v

    @field_validator('secret_key')
    @classmethod
    def check_secret_key(cls, v):
        if len(v) < 32:
            raise ValueError("secret_key must be at least 32 characters")
        return v

    @field_validator('bcrypt_rounds')
    @classmethod
    def check_bcrypt_rounds(cls, v):
        if not 4 <= v <= 31:
            raise ValueError("bcrypt_rounds must be between 4 and 31")
        return v

    @property
    def database_connection_url(self) -> str:
        """PostgreSQL parts win over DATABASE_URL; SQLite file when neither is set"""
        parts = (self.db_username, self.db_password, self.db_host, self.db_port, self.db_name)
        if all(parts):
            return f"postgresql://{self.db_username}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
        return self.database_url or "sqlite:///./pitstop.db"

    class Config:
        env_file = ".env"


settings = Settings()
