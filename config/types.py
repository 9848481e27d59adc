from typing import Optional
from pydantic import BaseModel, Field, field_validator


class AutomationSettings(BaseModel):
    """Model representing the settings an automation runtime is built from"""

    step_timeout_seconds: float = Field(30.0, gt=0)
    input_timeout_seconds: float = Field(120.0, gt=0)
    placeholder_step_delay_seconds: float = Field(0.5, ge=0)
    state_reset_grace_seconds: float = Field(300.0, ge=0)
    state_cleanup_interval_seconds: float = Field(5.0, gt=0)
    browser_type: str = "chromium"
    browser_headless: bool = True
    viewport_width: int = Field(1280, gt=0)
    viewport_height: int = Field(720, gt=0)
    template_path: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"

    @field_validator("browser_type")
    @classmethod
    def _check_browser_type(cls, value: str) -> str:
        value = value.lower()
        if value not in ("chromium", "chrome", "edge", "firefox", "webkit"):
            raise ValueError(f"Unsupported browser type: {value}")
        return value

