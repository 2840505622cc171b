"""Runtime configuration."""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # Server
    host: str = field(default_factory=lambda: os.getenv("RUNTIME_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("RUNTIME_PORT", "8000")))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Agent Run Service
    run_service_url: str = field(default_factory=lambda: os.getenv("RUN_SERVICE_URL", "http://localhost:8123"))
    run_service_api_key: str = field(default_factory=lambda: os.getenv("RUN_SERVICE_API_KEY", ""))
    run_service_timeout: float = field(default_factory=lambda: float(os.getenv("RUN_SERVICE_TIMEOUT", "300")))

    # Manager decision model (Ollama chat API)
    model_url: str = field(default_factory=lambda: os.getenv("MODEL_URL", "http://localhost:11434"))
    manager_model: str = field(default_factory=lambda: os.getenv("MANAGER_MODEL", "llama3.3:70b"))
    manager_temperature: float = field(default_factory=lambda: float(os.getenv("MANAGER_TEMPERATURE", "0.3")))

    # Orchestration
    subagent_timeout: float = field(default_factory=lambda: float(os.getenv("SUBAGENT_TIMEOUT", "300")))
    max_iterations: int = field(default_factory=lambda: int(os.getenv("MAX_ITERATIONS", "10")))

    # Correlation
    correlation_window_seconds: float = field(
        default_factory=lambda: float(os.getenv("CORRELATION_WINDOW_SECONDS", "300")))
    checkpoint_max_depth: int = field(default_factory=lambda: int(os.getenv("CHECKPOINT_MAX_DEPTH", "6")))

    # Usage reporting
    usage_model_id: str = field(default_factory=lambda: os.getenv("USAGE_MODEL_ID", "gpt-5"))
    input_token_cost_per_million: float = field(
        default_factory=lambda: float(os.getenv("INPUT_TOKEN_COST_PER_MILLION", "1.25")))
    output_token_cost_per_million: float = field(
        default_factory=lambda: float(os.getenv("OUTPUT_TOKEN_COST_PER_MILLION", "10.0")))
    usage_cache_max_users: int = field(default_factory=lambda: int(os.getenv("USAGE_CACHE_MAX_USERS", "1000")))
    usage_cache_max_entries: int = field(default_factory=lambda: int(os.getenv("USAGE_CACHE_MAX_ENTRIES", "50")))

    # Suspended sessions
    session_ttl: int = field(default_factory=lambda: int(os.getenv("SESSION_TTL", "1800")))

    # Persistence
    store_backend: str = field(default_factory=lambda: os.getenv("STORE_BACKEND", "memory"))
    supabase_url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_key: str = field(default_factory=lambda: os.getenv("SUPABASE_KEY", ""))

    @property
    def run_service_headers(self) -> dict:
        """Headers sent with every run service request."""
        if self.run_service_api_key:
            return {"x-api-key": self.run_service_api_key}
        return {}


# Global config instance
config = Config()
