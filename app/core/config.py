from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    # Twilio
    TWILIO_AUTH_TOKEN: Optional[str] = None
    VALIDATE_TWILIO_SIGNATURE: bool = False

    # Callback URLs handed to Twilio (empty base means relative URLs)
    PUBLIC_BASE_URL: str = ""
    GATHER_CALLBACK_PATH: str = "/handle-gather"
    CONTINUATION_SECRET: Optional[str] = None

    # Call Flow Defaults
    DEFAULT_VOICE: str = "alice"
    GATHER_TIMEOUT_SECONDS: int = 10

    # Flow Store Settings
    FLOW_STORE_BACKEND: str = "memory"
    FLOW_FIXTURES_PATH: Optional[str] = None
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_KEY: Optional[str] = None
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Application Settings
    APP_NAME: str = "NumSphere Call Flow Service"
    DEBUG: bool = False

    class Config:
        env_file = ".env"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
