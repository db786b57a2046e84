"""Tillstand runtime configuration and settings."""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class TillstandConfig:
    """Runtime configuration for Tillstand operations.

    Attributes:
        poll_interval: Seconds between power-state polls (default: 5)
        min_poll_interval: Lower bound for the scaled-down poll interval (default: 0.5)
        default_state_timeout: Seconds to wait for a stable power state (default: 90)
        default_shutdown_timeout: Graceful shutdown hint for containers (default: 30)
        midclt_command: Middleware client binary (default: midclt)
        ssh_host: Optional ssh target; midclt runs locally when unset
        command_timeout: Seconds before a single midclt invocation is abandoned (default: 1800)
        log_file: Run log path; defaults to the state directory
    """

    poll_interval: float = 5.0
    min_poll_interval: float = 0.5
    default_state_timeout: int = 90
    default_shutdown_timeout: int = 30

    midclt_command: str = "midclt"
    ssh_host: Optional[str] = None
    command_timeout: int = 1800  # jobs such as image pulls can run long
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "TillstandConfig":
        """Create config from environment variables.

        Environment variables:
            TILLSTAND_POLL_INTERVAL: Seconds between state polls
            TILLSTAND_MIN_POLL_INTERVAL: Floor for scaled poll interval
            TILLSTAND_STATE_TIMEOUT: Default state transition timeout in seconds
            TILLSTAND_SHUTDOWN_TIMEOUT: Default graceful shutdown timeout in seconds
            TILLSTAND_MIDCLT: Middleware client command
            TILLSTAND_SSH_HOST: Run midclt on this host over ssh
            TILLSTAND_COMMAND_TIMEOUT: Per-command timeout in seconds
            TILLSTAND_LOG_FILE: Run log path

        Returns:
            TillstandConfig instance with values from environment or defaults
        """
        return cls(
            poll_interval=float(
                os.getenv("TILLSTAND_POLL_INTERVAL", cls.poll_interval)
            ),
            min_poll_interval=float(
                os.getenv("TILLSTAND_MIN_POLL_INTERVAL", cls.min_poll_interval)
            ),
            default_state_timeout=int(
                os.getenv("TILLSTAND_STATE_TIMEOUT", cls.default_state_timeout)
            ),
            default_shutdown_timeout=int(
                os.getenv("TILLSTAND_SHUTDOWN_TIMEOUT", cls.default_shutdown_timeout)
            ),
            midclt_command=os.getenv("TILLSTAND_MIDCLT", cls.midclt_command),
            ssh_host=os.getenv("TILLSTAND_SSH_HOST") or None,
            command_timeout=int(
                os.getenv("TILLSTAND_COMMAND_TIMEOUT", cls.command_timeout)
            ),
            log_file=os.getenv("TILLSTAND_LOG_FILE") or None,
        )


# Global config instance (can be overridden)
_config: Optional[TillstandConfig] = None


def get_config() -> TillstandConfig:
    """Get the global Tillstand configuration.

    Returns:
        TillstandConfig instance (creates from environment if not set)
    """
    global _config
    if _config is None:
        _config = TillstandConfig.from_env()
    return _config


def set_config(config: Optional[TillstandConfig]):
    """Set the global Tillstand configuration.

    Args:
        config: TillstandConfig instance to use globally, or None to reset
    """
    global _config
    _config = config
