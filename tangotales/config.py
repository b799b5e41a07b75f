from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_temperature: float = 0.3
    gemini_max_output_tokens: int = 2048
    search_grounding_enabled: bool = True
    gemini_max_attempts: int = 3
    gemini_base_delay_seconds: float = 1.0

    # Concurrency governor
    max_concurrent_enrichments: int = 1
    min_request_spacing_ms: int = 2000

    # Link validation
    link_validation_timeout_seconds: float = 10.0
    link_validation_max_redirects: int = 5
    link_validation_max_bytes: int = 32 * 1024
    link_validation_concurrency: int = 3
    trust_ephemeral_redirects: bool = True  # grounding redirect tokens cannot be probed
    rewrite_redirect_urls: bool = False

    # Sessions / runs
    session_registry_max_sessions: int = 64
    session_ttl_seconds: int = 3600
    run_timeout_seconds: float = 0  # 0 disables
    follow_up_enabled: bool = True

    # Persistence
    store_backend: str = "json"  # json | memory
    store_dir: str = ".cache/subjects"

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_to_file: bool = True
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
