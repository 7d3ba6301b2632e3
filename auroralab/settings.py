"""Process settings."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings, read from ``AURORALAB_*`` environment variables."""

    # Working directory for CDKTF operations
    workdir_base: str = "/tmp/auroralab"

    # Terraform
    terraform_bin: str = "terraform"
    auto_approve: bool = True

    # Overrides the auto-generated state bucket name
    state_bucket: Optional[str] = None

    # Logging
    log_level: str = "INFO"

    class Config:
        env_prefix = "AURORALAB_"
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()
