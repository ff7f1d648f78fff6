import os
import logging
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv, find_dotenv

class ConfigError(Exception):
    """Custom exception for configuration errors."""
    pass

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_ISSUE_LOCATION = "Project Site"
DEFAULT_MAX_PARALLEL_ISSUES = 8

@dataclass
class AppConfig:
    """Application configuration data."""
    api_url: str
    api_token: str
    user_id: Optional[int] = None
    user_role: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    issue_location: str = DEFAULT_ISSUE_LOCATION
    max_parallel_issues: int = DEFAULT_MAX_PARALLEL_ISSUES

    @classmethod
    def load(cls) -> 'AppConfig':
        """
        Loads configuration from environment variables.

        Loads .env file first, then checks environment variables.
        Raises ConfigError if required variables are missing or malformed.
        """
        dotenv_path = find_dotenv(usecwd=True)
        logger.debug(f"Attempting to load .env file from: {dotenv_path if dotenv_path else 'Not found'}")
        found_dotenv = load_dotenv(dotenv_path=dotenv_path, override=False) # Existing env vars win
        logger.debug(f".env file found: {found_dotenv}")

        url = os.environ.get("MRR_API_URL")
        token = os.environ.get("MRR_API_TOKEN")
        user_id = os.environ.get("MRR_USER_ID")
        user_role = os.environ.get("MRR_USER_ROLE")
        timeout = os.environ.get("MRR_API_TIMEOUT")
        location = os.environ.get("MRR_ISSUE_LOCATION", DEFAULT_ISSUE_LOCATION)
        max_parallel = os.environ.get("MRR_MAX_PARALLEL_ISSUES")

        logger.debug(f"MRR_API_URL from env/dotenv: {url}")
        logger.debug(f"MRR_API_TOKEN from env/dotenv: {'SET' if token else 'NOT SET'}") # Never log the token itself
        logger.debug(f"MRR_USER_ID from env/dotenv: {user_id}")
        logger.debug(f"MRR_USER_ROLE from env/dotenv: {user_role}")

        if not url:
            logger.error("MRR_API_URL not found in environment variables or .env file")
            raise ConfigError("MRR_API_URL not found in environment variables or .env file")
        if not token:
            logger.error("MRR_API_TOKEN not found in environment variables or .env file")
            raise ConfigError("MRR_API_TOKEN not found in environment variables or .env file")

        config_instance = cls(
            api_url=url.rstrip('/'),
            api_token=token,
            user_id=_parse_number("MRR_USER_ID", user_id, int, None),
            user_role=user_role or None,
            timeout=_parse_number("MRR_API_TIMEOUT", timeout, float, DEFAULT_TIMEOUT),
            issue_location=location,
            max_parallel_issues=_parse_number("MRR_MAX_PARALLEL_ISSUES", max_parallel, int, DEFAULT_MAX_PARALLEL_ISSUES),
        )
        if config_instance.timeout <= 0:
            raise ConfigError("MRR_API_TIMEOUT must be greater than zero")
        if config_instance.max_parallel_issues < 1:
            raise ConfigError("MRR_MAX_PARALLEL_ISSUES must be at least 1")

        logger.info(
            f"AppConfig loaded: URL='{config_instance.api_url}', "
            f"Token is {'SET' if config_instance.api_token else 'NOT SET'}, "
            f"User ID={config_instance.user_id}, Role='{config_instance.user_role}', "
            f"Timeout={config_instance.timeout}s, Workers={config_instance.max_parallel_issues}"
        )
        return config_instance


def _parse_number(name, raw, kind, default):
    if raw is None or raw.strip() == "":
        return default
    try:
        return kind(raw)
    except ValueError:
        logger.error(f"{name} has an invalid value: '{raw}'")
        raise ConfigError(f"{name} must be a valid {kind.__name__}, got '{raw}'")
