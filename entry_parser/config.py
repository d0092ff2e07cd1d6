"""Configuration management for Entry Parser."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).parent / "data"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI-compatible services
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_llm_model: str = "gpt-4o-mini"
    openai_whisper_model: str = "whisper-1"

    # Parsing behaviour
    tz_default: str = "Asia/Kolkata"
    request_timeout_seconds: float = 30.0
    max_upload_mb: int = 15

    # Startup resources
    prompt_path: Path = DATA_DIR / "prompt.txt"
    schema_path: Path = DATA_DIR / "expense_entry.schema.json"

    # API settings
    allow_origins: str = "*"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # OPENAI_API_KEY and openai_api_key both work
        extra="ignore",  # Ignore extra environment variables
    )

    @property
    def max_upload_bytes(self) -> int:
        """Get the upload ceiling in bytes."""
        return self.max_upload_mb * 1024 * 1024

    @property
    def allowed_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.allow_origins.split(",") if origin.strip()]

    def log_config(self) -> None:
        """Log current configuration with sensitive values redacted."""
        print("\n" + "=" * 60)
        print("📋 CONFIGURATION LOADED")
        print("=" * 60)
        print(
            f"OpenAI API Key:      {'✓ Set (' + self.openai_api_key[:8] + '...' + self.openai_api_key[-4:] + ')' if self.openai_api_key else '✗ Not set'}"
        )
        print(f"OpenAI Base URL:     {self.openai_base_url}")
        print(f"LLM Model:           {self.openai_llm_model}")
        print(f"Whisper Model:       {self.openai_whisper_model}")
        print(f"Default Timezone:    {self.tz_default}")
        print(f"Request Timeout:     {self.request_timeout_seconds}s")
        print(f"Max Upload:          {self.max_upload_mb} MB")
        print(f"Prompt:              {self.prompt_path}")
        print(f"Schema:              {self.schema_path}")
        print(f"Allowed Origins:     {self.allow_origins}")
        print(f"API Host:            {self.api_host}:{self.api_port}")
        print("=" * 60 + "\n")


# Global settings instance
settings = Settings()
