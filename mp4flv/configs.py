from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    log_level: str = "INFO"  # The logging level to use.
    large_box_threshold: int = Field(
        10 * 1024 * 1024,
        description="Unknown boxes larger than this many bytes are recorded as (offset, size) and never read.",
    )
    strict_sample_tables: bool = Field(
        False,
        description="Raise on sample indices past the end of a run-length table instead of extrapolating the last run.",
    )
    input_path: str = "test.mp4"  # Source MP4 used by main().
    output_path: str = "out.flv"  # Destination FLV written by main().

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
