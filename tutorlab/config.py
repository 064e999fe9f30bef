import sys
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    api_key: str = ""
    # Optional OpenAI-compatible endpoint (empty = SDK default)
    api_base_url: str = ""
    model_name: str = "gpt-4o-2024-08-06"
    # Temperature defaults: low for evaluation stages, higher for open-ended tutoring
    default_temperature: float = 0.3
    tutoring_temperature: float = 0.8
    evaluation_temperature: float = 0.3
    max_tokens: int = 4096
    presence_penalty: float = 0.6
    frequency_penalty: float = 0.3
    # Upper bound applied by the HTTP layer around a model call
    generation_timeout_seconds: float = 60.0
    # Database path - can be overridden via DATABASE_PATH env var for Docker
    database_path: str = "tutorlab.db"
    # Environment: "dev" (default) or "prod"
    env: str = "dev"
    # Enables the scenario override; ignored unless env is "dev"
    scenario_override: bool = False
    # How long the flow guard waits for an in-flight transition before comparing stages
    guard_settle_seconds: float = 0.3
    max_cached_flows: int = 10000
    # CORS origins (comma-separated)
    cors_origins: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_development(self) -> bool:
        return self.env == "dev"

    @property
    def scenario_override_enabled(self) -> bool:
        return self.is_development and self.scenario_override


def _load_settings() -> Settings:
    """Load settings and refuse to start a production process without an API key."""
    s = Settings()

    if s.env not in ("dev", "prod"):
        print(f"ERROR: ENV must be 'dev' or 'prod', got {s.env!r}.", file=sys.stderr)
        sys.exit(1)

    if s.env == "prod" and not s.api_key:
        print("ERROR: API_KEY environment variable is required in production.", file=sys.stderr)
        print("Set API_KEY to a valid OpenAI API key in your .env file.", file=sys.stderr)
        sys.exit(1)

    return s


settings = _load_settings()
