"""Configuration management for the feedback RAG core."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"

if env_path.exists():
    load_dotenv(env_path)


class Config:
    """Application configuration loaded from environment variables."""

    # OpenAI Configuration
    @classmethod
    def get_openai_api_key(cls) -> str:
        """Get OpenAI API key from environment variables.

        Returns:
            OpenAI API key from environment or empty string if not set.
        """
        return os.getenv("OPENAI_API_KEY", "")

    OPENAI_BASE_URL: str | None = os.getenv("OPENAI_BASE_URL")

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    OPENAI_LOG_LEVEL: str = os.getenv("OPENAI_LOG_LEVEL", "WARNING").upper()

    # Application Settings
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # Embedding Configuration
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    EMBEDDING_DIMENSION: int = int(os.getenv("EMBEDDING_DIMENSION", "1536"))
    EMBEDDING_BATCH_SIZE: int = int(os.getenv("EMBEDDING_BATCH_SIZE", "100"))

    # Chat Model Configuration
    CHAT_MODEL: str = os.getenv("CHAT_MODEL", "gpt-4.1-nano")
    CHAT_MAX_TOKENS: int = int(os.getenv("CHAT_MAX_TOKENS", "1500"))
    CHAT_TEMPERATURE: float = float(os.getenv("CHAT_TEMPERATURE", "0.7"))

    # Query Rewriting Configuration
    QUERY_REWRITE_MAX_TOKENS: int = int(os.getenv("QUERY_REWRITE_MAX_TOKENS", "150"))
    QUERY_REWRITE_TEMPERATURE: float = float(
        os.getenv("QUERY_REWRITE_TEMPERATURE", "0.1")
    )

    # Vector Store Configuration
    VECTOR_BACKEND: str = os.getenv("VECTOR_BACKEND", "sqlite").lower()
    DISTANCE_STRATEGY: str = os.getenv("DISTANCE_STRATEGY", "cosine").lower()
    VECTOR_STORE_DB_PATH: Path = Path(
        os.getenv("VECTOR_STORE_DB_PATH", "data/feedback_embeddings.db")
    )
    FAISS_INDEX_DIR: Path = Path(os.getenv("FAISS_INDEX_DIR", "data/faiss"))
    VECTOR_RAW_TOP_K_MULTIPLIER: int = int(
        os.getenv("VECTOR_RAW_TOP_K_MULTIPLIER", "2")
    )

    # Retrieval Configuration
    SEARCH_TOP_K: int = int(os.getenv("SEARCH_TOP_K", "5"))
    MMR_LAMBDA: float = float(os.getenv("MMR_LAMBDA", "0.5"))
    MMR_FETCH_K_CAP: int = int(os.getenv("MMR_FETCH_K_CAP", "50"))

    # Session Configuration
    SESSION_DB_PATH: Path = Path(os.getenv("SESSION_DB_PATH", "data/chat_sessions.db"))
    MEMORY_WINDOW_TURNS: int = int(os.getenv("MEMORY_WINDOW_TURNS", "10"))
    SESSION_LIST_LIMIT: int = int(os.getenv("SESSION_LIST_LIMIT", "50"))

    # Timeouts and Retries
    EMBEDDING_TIMEOUT_SECONDS: float = float(
        os.getenv("EMBEDDING_TIMEOUT_SECONDS", "15")
    )
    COMPLETION_TIMEOUT_SECONDS: float = float(
        os.getenv("COMPLETION_TIMEOUT_SECONDS", "60")
    )
    VECTOR_SEARCH_TIMEOUT_SECONDS: float = float(
        os.getenv("VECTOR_SEARCH_TIMEOUT_SECONDS", "10")
    )
    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_BASE_DELAY_SECONDS: float = float(
        os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0")
    )
    RETRY_MAX_DELAY_SECONDS: float = float(os.getenv("RETRY_MAX_DELAY_SECONDS", "30"))

    # Health Monitoring
    HEALTH_CACHE_TTL_SECONDS: float = float(
        os.getenv("HEALTH_CACHE_TTL_SECONDS", "30")
    )
    HEALTH_PROBE_TIMEOUT_SECONDS: float = float(
        os.getenv("HEALTH_PROBE_TIMEOUT_SECONDS", "5")
    )
    CIRCUIT_FAILURE_THRESHOLD: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "3"))
    CIRCUIT_RESET_TIMEOUT_SECONDS: float = float(
        os.getenv("CIRCUIT_RESET_TIMEOUT_SECONDS", "60")
    )

    # API Header Configuration
    API_USER_AGENT: str = os.getenv("API_USER_AGENT", "FeedbackRAG/1.0")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration values.

        Raises:
            ValueError: If OPENAI_API_KEY is not set or a backend name is unknown.
        """
        if not cls.get_openai_api_key():
            msg = (
                "OPENAI_API_KEY is required. Please set it in .env file or environment."
            )
            raise ValueError(msg)
        if cls.VECTOR_BACKEND not in {"sqlite", "faiss"}:
            msg = f"Unsupported VECTOR_BACKEND: {cls.VECTOR_BACKEND}"
            raise ValueError(msg)
        if cls.DISTANCE_STRATEGY not in {"cosine", "euclidean", "inner_product"}:
            msg = f"Unsupported DISTANCE_STRATEGY: {cls.DISTANCE_STRATEGY}"
            raise ValueError(msg)

    @classmethod
    def is_development(cls) -> bool:
        """Check if running in development environment.

        Returns:
            True if environment is development.
        """
        return cls.ENVIRONMENT.lower() == "development"

    @classmethod
    def is_production(cls) -> bool:
        """Check if running in production environment.

        Returns:
            True if environment is production.
        """
        return cls.ENVIRONMENT.lower() == "production"

    @classmethod
    def setup_logging(cls) -> None:
        """Setup basic logging configuration.

        Configure logging once at application startup with:
        - Console output for all levels
        - Simple, readable format
        - Configurable level via environment variable
        """
        logging.basicConfig(
            level=getattr(logging, cls.LOG_LEVEL, logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )

        # Configure third-party library log levels via environment variables
        third_party_level = getattr(logging, cls.OPENAI_LOG_LEVEL, logging.WARNING)
        logging.getLogger("openai").setLevel(third_party_level)
        logging.getLogger("httpx").setLevel(third_party_level)

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger with the specified name.

        Args:
            name: Logger name (typically __name__)

        Returns:
            Logger instance
        """
        return logging.getLogger(name)

    @classmethod
    def get_api_headers(cls) -> dict[str, str]:
        """Build default headers for outbound API calls.

        Returns:
            Mapping of header names to values used on outbound HTTP requests.
        """
        headers: dict[str, str] = {}

        if cls.API_USER_AGENT:
            headers["User-Agent"] = cls.API_USER_AGENT

        return headers


config = Config()
