"""
Scheduler configuration.

Defaults give a concurrency cap of 3, three attempts per job and a 5s
backoff base (5s, 10s, 20s).
"""

from dataclasses import dataclass


@dataclass
class QueueConfig:
    """Job queue and dispatch loop configuration."""

    concurrency: int = 3
    max_attempts: int = 3  # retries after the first failure
    retry_base_delay: float = 5.0  # seconds
    max_retry_delay: float = 3600.0  # seconds
    idle_poll_interval: float = 2.0  # seconds, nothing eligible
    busy_poll_interval: float = 1.0  # seconds, concurrency cap reached
    cleanup_days: int = 30
    auto_cleanup: bool = True
    # Validation/not-found failures inside handlers are terminal unless set
    retry_validation_errors: bool = False
    shutdown_timeout: float = 30.0  # seconds to wait for in-flight handlers
    stale_after: float = 3600.0  # seconds before a starting worker reclaims a PROCESSING job
