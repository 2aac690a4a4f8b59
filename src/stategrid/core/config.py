"""Environment variable management for stategrid operations."""

from psutil import cpu_count
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict

from stategrid.exceptions import EnvironmentFormatError


class StateGridSettings(BaseSettings):
    """stategrid environment configuration settings."""

    # Load configuration
    load_workers: int = Field(
        default_factory=lambda: cpu_count(logical=True) or 1,
        ge=1,
        description="Number of threads used to read independent data sources",
        alias="STATEGRID__LOAD__WORKERS",
    )
    load_batch_elements: int = Field(
        default=10_000_000,
        ge=1,
        description="Largest number of elements loaded at once when batching ensemble members",
        alias="STATEGRID__LOAD__BATCH_ELEMENTS",
    )

    # Build configuration
    show_progress: bool = Field(
        default=False,
        description="Whether to show a progress bar while building ensembles",
        alias="STATEGRID__BUILD__SHOW_PROGRESS",
    )

    model_config = SettingsConfigDict(case_sensitive=True)

    @field_validator("show_progress", mode="before")
    @classmethod
    def parse_bool_fields(cls, v: object) -> bool:
        """Parse boolean fields leniently."""
        if v is None:
            return False
        if isinstance(v, str):
            return v.lower() in ("1", "true", "yes", "on")
        return bool(v)


_ENV_VAR_MAPPING = {
    "load_workers": "STATEGRID__LOAD__WORKERS",
    "load_batch_elements": "STATEGRID__LOAD__BATCH_ELEMENTS",
    "show_progress": "STATEGRID__BUILD__SHOW_PROGRESS",
    "STATEGRID__LOAD__WORKERS": "STATEGRID__LOAD__WORKERS",
    "STATEGRID__LOAD__BATCH_ELEMENTS": "STATEGRID__LOAD__BATCH_ELEMENTS",
    "STATEGRID__BUILD__SHOW_PROGRESS": "STATEGRID__BUILD__SHOW_PROGRESS",
}


def get_settings() -> StateGridSettings:
    """Get current stategrid settings from environment variables."""
    try:
        return StateGridSettings()
    except ValidationError as e:
        error_details = e.errors()[0]
        field_name = error_details.get("loc", [None])[0]
        error_type = error_details.get("type", "unknown")

        type_mapping = {
            "int_parsing": "int",
            "float_parsing": "float",
            "greater_than_equal": "positive int",
        }
        mapped_type = type_mapping.get(error_type, error_type)
        env_var = _ENV_VAR_MAPPING.get(field_name, field_name)

        raise EnvironmentFormatError(env_var, mapped_type) from e
