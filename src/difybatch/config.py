"""
Process-level runtime configuration.

Remote-service settings (base URL, API key, batch threshold, timeout) are not
read here: they live in ``DifySetting`` rows so they can change while running.
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "DIFYBATCH_"


class RuntimeConfig(BaseModel):
    database_url: str | None = None
    aggregation_timeout: float = Field(default=30.0, ge=0)
    worker_concurrency: int = Field(default=4, ge=1)
    queue_maxsize: int = Field(default=1000, ge=0)
    retry_lease_seconds: float = Field(default=300.0, gt=0)
    sweep_interval_seconds: float | None = Field(default=None, gt=0)
    user: str = "system"
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, *, load_env_file: bool = True) -> "RuntimeConfig":
        """
        Build the configuration from ``DIFYBATCH_*`` environment variables.

        Parameters
        ----------
        load_env_file : bool, optional
            If ``True``, load a ``.env`` file first, overriding the environment.

        Returns
        -------
        RuntimeConfig
            Validated configuration; unset variables keep their defaults.
        """
        if load_env_file:
            load_dotenv(override=True)
        raw = {
            "database_url": os.getenv(f"{ENV_PREFIX}DATABASE_URL"),
            "aggregation_timeout": os.getenv(f"{ENV_PREFIX}AGGREGATION_TIMEOUT"),
            "worker_concurrency": os.getenv(f"{ENV_PREFIX}WORKER_CONCURRENCY"),
            "queue_maxsize": os.getenv(f"{ENV_PREFIX}QUEUE_MAXSIZE"),
            "retry_lease_seconds": os.getenv(f"{ENV_PREFIX}RETRY_LEASE_SECONDS"),
            "sweep_interval_seconds": os.getenv(f"{ENV_PREFIX}SWEEP_INTERVAL"),
            "user": os.getenv(f"{ENV_PREFIX}USER"),
            "log_level": os.getenv(f"{ENV_PREFIX}LOG_LEVEL"),
        }
        return cls.model_validate({key: value for key, value in raw.items() if value})
