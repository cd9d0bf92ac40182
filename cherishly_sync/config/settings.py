"""
Typed sync settings built from the validated configuration dictionary.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from cherishly_sync.utils.paths import default_db_path

DEFAULT_LOCAL_APP = "cherishly"
DEFAULT_REMOTE_APP = "temerio"
DEFAULT_PAIRING_CODE_TTL_MINUTES = 10
DEFAULT_REMOTE_PEOPLE_CACHE_TTL = 300  # seconds
DEFAULT_API_TIMEOUT = 15.0  # seconds
DEFAULT_API_MAX_RETRIES = 3
DEFAULT_API_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_API_MAX_RETRY_DELAY = 30.0  # seconds
DEFAULT_PUSH_BATCH_SIZE = 100
DEFAULT_PULL_BATCH_SIZE = 200
DEFAULT_LOG_RETENTION_COUNT = 10


@dataclass
class SyncSettings:
    """
    Runtime settings for the sync engine and CLI.

    Attributes:
        user_id: Local account identity (stands in for the session provider)
        db_path: SQLite database path
        local_app: Identifier of this application, as sent to the peer
        remote_app: Identifier of the peer application
        remote_base_url: Base URL of the peer's sync endpoints
        local_base_url: Base URL at which this deployment's endpoints are reachable
        pairing_code_ttl_minutes: Lifetime of a generated pairing code
        remote_people_cache_ttl: Seconds before the remote people cache is stale
        api_timeout: Per-request timeout for peer calls
        api_max_retries: Attempts for retryable peer failures
        api_initial_retry_delay: First backoff delay
        api_max_retry_delay: Backoff ceiling
        push_batch_size: Outbox entries per push request
        pull_batch_size: Events requested per pull
        log_dir: Optional log directory override
        log_retention_count: Log files kept per kind
        verbose: Verbose console logging
    """

    user_id: Optional[str]
    db_path: Path
    local_app: str = DEFAULT_LOCAL_APP
    remote_app: str = DEFAULT_REMOTE_APP
    remote_base_url: Optional[str] = None
    local_base_url: Optional[str] = None
    pairing_code_ttl_minutes: int = DEFAULT_PAIRING_CODE_TTL_MINUTES
    remote_people_cache_ttl: int = DEFAULT_REMOTE_PEOPLE_CACHE_TTL
    api_timeout: float = DEFAULT_API_TIMEOUT
    api_max_retries: int = DEFAULT_API_MAX_RETRIES
    api_initial_retry_delay: float = DEFAULT_API_INITIAL_RETRY_DELAY
    api_max_retry_delay: float = DEFAULT_API_MAX_RETRY_DELAY
    push_batch_size: int = DEFAULT_PUSH_BATCH_SIZE
    pull_batch_size: int = DEFAULT_PULL_BATCH_SIZE
    log_dir: Optional[Path] = None
    log_retention_count: int = DEFAULT_LOG_RETENTION_COUNT
    verbose: bool = False

    @classmethod
    def from_dict(cls, config: dict[str, Any], config_dir: Path) -> SyncSettings:
        """
        Build settings from a validated config dict.

        Missing keys take their defaults; db_path defaults to sync.db in
        the config directory.
        """
        db_path = (
            Path(config["db_path"]).expanduser()
            if config.get("db_path")
            else default_db_path(config_dir)
        )
        log_dir = Path(config["log_dir"]).expanduser() if config.get("log_dir") else None

        return cls(
            user_id=config.get("user_id"),
            db_path=db_path,
            local_app=config.get("local_app", DEFAULT_LOCAL_APP),
            remote_app=config.get("remote_app", DEFAULT_REMOTE_APP),
            remote_base_url=config.get("remote_base_url"),
            local_base_url=config.get("local_base_url"),
            pairing_code_ttl_minutes=config.get(
                "pairing_code_ttl_minutes", DEFAULT_PAIRING_CODE_TTL_MINUTES
            ),
            remote_people_cache_ttl=config.get(
                "remote_people_cache_ttl", DEFAULT_REMOTE_PEOPLE_CACHE_TTL
            ),
            api_timeout=float(config.get("api_timeout", DEFAULT_API_TIMEOUT)),
            api_max_retries=config.get("api_max_retries", DEFAULT_API_MAX_RETRIES),
            api_initial_retry_delay=float(
                config.get("api_initial_retry_delay", DEFAULT_API_INITIAL_RETRY_DELAY)
            ),
            api_max_retry_delay=float(
                config.get("api_max_retry_delay", DEFAULT_API_MAX_RETRY_DELAY)
            ),
            push_batch_size=config.get("push_batch_size", DEFAULT_PUSH_BATCH_SIZE),
            pull_batch_size=config.get("pull_batch_size", DEFAULT_PULL_BATCH_SIZE),
            log_dir=log_dir,
            log_retention_count=config.get(
                "log_retention_count", DEFAULT_LOG_RETENTION_COUNT
            ),
            verbose=config.get("verbose", False),
        )
