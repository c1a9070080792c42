from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "dev"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    cors_allow_origins: list[str] = ["*"]

    llm_provider: str = "gemini"
    llm_model: str = "gemini-2.5-flash"
    gemini_api_key: str = ""
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    oracle_timeout_seconds: float = 60.0
    oracle_temperature: float = 0.4
    oracle_max_output_tokens: int = 4096

    # Added to the indicative grade when a session completes without an explicit final grade.
    completion_grade_bonus: float = 1.5
    # Prose fallback for completion detection; the STATUS block is preferred.
    completion_markers: list[str] = [
        "eindoverzicht",
        "alle vragen zijn behandeld",
        "gefeliciteerd",
        "final overview",
        "all questions",
        "congratulations",
    ]
    malformed_envelope_policy: str = "fallback"  # "fallback" | "fail"
    fallback_total_questions: int = 5
    fallback_initial_grade: float = 6.0

    max_upload_bytes: int = 10 * 1024 * 1024
    session_ttl_seconds: int = 3600
    max_sessions: int = 500

    gateway_auth_enabled: bool = False
    gateway_api_key: str = ""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
