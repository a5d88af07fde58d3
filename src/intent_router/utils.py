"""
Utility functions for the Intent & Routing Orchestrator.

This module provides:
- Environment variable validation and loading
- Logging configuration with structured JSON output
- Timing utilities for performance measurement
- Request ID generation
- Input sanitization for logging
"""

import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from loguru import logger


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# Optional environment variables with defaults
DEFAULT_SETTINGS: Dict[str, Any] = {
    "ROUTING_MODEL": "openai/gpt-4o-mini",
    "LLM_BASE_URL": "https://openrouter.ai/api/v1",
    "REQUEST_TIMEOUT_SECONDS": 10,
    "SEARCH_CACHE_TTL_MINUTES": 10,
    "SEARCH_CACHE_SIZE": 1000,
    "TONE_CACHE_TTL_MINUTES": 15,
    "TONE_CACHE_SIZE": 500,
    "TONE_REFRESH_AFTER_MESSAGES": 10,
    "RECHECK_TTL_HOURS": 6,
    "RECHECK_CACHE_SIZE": 1000,
    "SEARCH_LLM_TIMEOUT_MS": 3000,
    "TONE_LLM_TIMEOUT_MS": 2000,
    "LOW_CONFIDENCE_THRESHOLD": 40,
    "CACHE_SWEEP_INTERVAL_SECONDS": 60,
    "ROUTING_RULES_PATH": None,
    "LOG_LEVEL": "INFO",
    "FAST_TIER_PLANS": "starter,lite",
}

_INT_SETTINGS = {
    "REQUEST_TIMEOUT_SECONDS", "SEARCH_CACHE_SIZE", "TONE_CACHE_SIZE",
    "TONE_REFRESH_AFTER_MESSAGES", "RECHECK_CACHE_SIZE", "SEARCH_LLM_TIMEOUT_MS",
    "TONE_LLM_TIMEOUT_MS", "CACHE_SWEEP_INTERVAL_SECONDS",
}
_FLOAT_SETTINGS = {
    "SEARCH_CACHE_TTL_MINUTES", "TONE_CACHE_TTL_MINUTES", "RECHECK_TTL_HOURS",
    "LOW_CONFIDENCE_THRESHOLD",
}


def setup_logging(level: str = "INFO", serialize: bool = True) -> None:
    """
    Configure structured JSON logging with Loguru.

    Args:
        level: Minimum level for the stdout sink
        serialize: Emit JSON records instead of plain text lines
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level,
        serialize=serialize
    )

    logger.info("Logging configuration complete", level=level)


def coerce_settings(values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert numeric settings to their declared types.

    Values that fail conversion are logged and replaced by their default.
    Keys outside the numeric settings pass through unchanged.

    Raises:
        ConfigurationError: If a numeric setting is negative
    """
    coerced = dict(values)
    for var, value in values.items():
        if var not in _INT_SETTINGS and var not in _FLOAT_SETTINGS:
            continue
        convert = int if var in _INT_SETTINGS else float
        try:
            coerced[var] = convert(value)
        except (TypeError, ValueError):
            default = DEFAULT_SETTINGS[var]
            logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
            coerced[var] = convert(default)

        if coerced[var] < 0:
            raise ConfigurationError(f"Setting {var} must not be negative")
    return coerced


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate orchestrator settings from the environment.

    Every setting is optional. Numeric values that fail conversion are
    logged and replaced by their default.

    Returns:
        Dict[str, Any]: Configuration dictionary with validated values
    """
    load_dotenv()

    config: Dict[str, Any] = {
        "OPENROUTER_API_KEY": os.getenv("OPENROUTER_API_KEY")
    }
    for var, default in DEFAULT_SETTINGS.items():
        config[var] = os.getenv(var, default)

    config = coerce_settings(config)

    logger.info("Environment configuration loaded and validated")
    return config


def generate_request_id() -> str:
    """
    Generate a unique request ID using UUID4.

    Returns:
        str: Unique request ID
    """
    return str(uuid.uuid4())


# Patterns that might be sensitive
_SENSITIVE_PATTERNS = [
    re.compile(r'sk-[a-zA-Z0-9]+', re.IGNORECASE),  # API keys starting with sk-
    re.compile(r'Bearer\s+[a-zA-Z0-9]+', re.IGNORECASE),  # Bearer tokens
    re.compile(r'\b[A-Za-z0-9]{20,}\b'),  # Long alphanumeric strings (potential tokens)
]


def sanitize_for_logging(text: str, max_length: int = 200) -> str:
    """
    Sanitize user input for safe logging by removing/masking sensitive information.

    Args:
        text: Input text to sanitize
        max_length: Maximum length of sanitized text

    Returns:
        str: Sanitized text safe for logging
    """
    if not text:
        return ""

    sanitized = text
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub('[REDACTED]', sanitized)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


class Timer:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str = "operation"):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = datetime.now(timezone.utc)
        logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = datetime.now(timezone.utc)
        duration_ms = (self.end_time - self.start_time).total_seconds() * 1000

        if exc_type is None:
            logger.debug(f"Completed {self.operation_name}", duration_ms=duration_ms)
        else:
            logger.error(f"Failed {self.operation_name}", duration_ms=duration_ms, error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds() * 1000
        return 0.0


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the process configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def parse_plan_list(raw: Optional[str]) -> set:
    """Split a comma separated plan list into lowercase names."""
    if not raw:
        return set()
    return {part.strip().lower() for part in raw.split(",") if part.strip()}


def initialize_app(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Initialize logging and configuration for a host process.

    Call once at startup, before ``create_pipeline``.

    Args:
        config: Settings to use instead of the environment

    Returns:
        Dict[str, Any]: The settings the process will run with
    """
    settings = dict(DEFAULT_SETTINGS)
    settings.update(coerce_settings(config) if config is not None else get_config())

    setup_logging(settings["LOG_LEVEL"])

    logger.info(
        "Application initialization complete",
        routing_model=settings["ROUTING_MODEL"],
        fast_tier_plans=settings["FAST_TIER_PLANS"],
        search_llm_timeout_ms=settings["SEARCH_LLM_TIMEOUT_MS"],
        tone_llm_timeout_ms=settings["TONE_LLM_TIMEOUT_MS"],
    )
    return settings
