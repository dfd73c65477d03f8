"""
Controller configuration.

Values come from the constructor or, through ``DomainConfig.from_env()``, from
``SQLDOMAIN_*`` environment variables (a ``.env`` file is honored).
"""
import os
import re
import logging
from datetime import timedelta
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_PERIOD_PATTERN = re.compile(r"^\s*(\d+)\s*([smhdwMy])\s*$")

_PERIOD_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "M": timedelta(days=30),
    "y": timedelta(days=365),
}


def parse_period(text: str) -> timedelta:
    """
    Parse a period like ``30s``, ``15m``, ``12h``, ``2d``, ``1w``, ``1M`` or ``1y``.

    Args:
        text: Amount followed by a unit character (``m`` is minutes, ``M`` is months)

    Returns:
        The period as timedelta

    Raises:
        ValueError: If the text does not match the period syntax
    """
    match = _PERIOD_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid period '{text}' - expected <amount><s|m|h|d|w|M|y>")
    return int(match.group(1)) * _PERIOD_UNITS[match.group(2)]


class DomainConfig(BaseModel):
    """Settings of one controller instance."""
    database_url: str = "sqlite:///sqldomain.db"
    data_horizon_period: timedelta = Field(default_factory=lambda: parse_period("1M"))
    crypt_password: Optional[str] = None
    crypt_salt: str = "SALTSALT"

    @field_validator("data_horizon_period", mode="before")
    @classmethod
    def _parse_period(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_period(value)
        return value

    @classmethod
    def from_env(cls, prefix: str = "SQLDOMAIN_", **overrides: Any) -> "DomainConfig":
        """
        Build a configuration from environment variables.

        Args:
            prefix: Prefix of the variables (``SQLDOMAIN_DATABASE_URL``,
                ``SQLDOMAIN_DATA_HORIZON_PERIOD``, ``SQLDOMAIN_CRYPT_PASSWORD``,
                ``SQLDOMAIN_CRYPT_SALT``)
            **overrides: Values taking precedence over the environment

        Returns:
            The configuration
        """
        load_dotenv()
        values = {}
        for name in cls.model_fields:
            env_value = os.getenv(prefix + name.upper())
            if env_value is not None:
                values[name] = env_value
        values.update(overrides)
        config = cls(**values)
        logger.info(f"Loaded configuration from environment (data horizon {config.data_horizon_period})")
        return config
