# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailwatch configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailwatch/  (default: ~/.config/mailwatch/)
#
# Files:
#   - config.toml: watched account (without its secret) and polling settings
#
# Secrets are never read from or written to the config file. The caller
# supplies them when building the Account.
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mailwatch.core import Account


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mailwatch"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mailwatch.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mailwatch/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class WatchConfig:
    """
    Polling settings for a watch engine.

    Attributes:
        interval: Seconds between ticks.
        window: How many of the newest messages to fetch per cycle.
        filter: Search expression run before each fetch ("" skips SEARCH).
        cycle_timeout: Upper bound in seconds for one fetch cycle
                       (None = only the per-command IMAP timeout applies).
        backoff_after: Consecutive failed cycles before the wait between
                       ticks starts doubling (0 = never back off).
        max_backoff: Ceiling in seconds for the backed-off wait.
        io_timeout: Per-command timeout handed to the IMAP session.
    """
    interval: float = 30.0
    window: int = 1
    filter: str = "UNSEEN"
    cycle_timeout: float | None = None
    backoff_after: int = 0
    max_backoff: float = 300.0
    io_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ConfigError(f"interval must be positive, got {self.interval}")
        if self.window < 1:
            raise ConfigError(f"window must be a positive integer, got {self.window}")
        if self.cycle_timeout is not None and self.cycle_timeout <= 0:
            raise ConfigError(f"cycle_timeout must be positive, got {self.cycle_timeout}")
        if self.backoff_after < 0:
            raise ConfigError(f"backoff_after must not be negative, got {self.backoff_after}")
        if self.max_backoff < self.interval:
            raise ConfigError("max_backoff must not be shorter than interval")
        if self.io_timeout <= 0:
            raise ConfigError(f"io_timeout must be positive, got {self.io_timeout}")


@dataclass
class AccountConfig:
    """
    The non-secret half of an Account, as stored in config.toml.

    Attributes:
        user: Login name.
        address: "host:port" of the IMAP server.
        mailbox: Mailbox to watch.
        security: "ssl" or "starttls".
    """
    user: str = ""
    address: str = ""
    mailbox: str = "INBOX"
    security: str = "ssl"

    def to_account(self, secret: str) -> Account:
        """Combine with a caller-supplied secret into an Account."""
        if not self.user or not self.address:
            raise ConfigError("Account needs both user and address")
        try:
            return Account(
                user=self.user,
                secret=secret,
                address=self.address,
                mailbox=self.mailbox,
                security=self.security,
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e


@dataclass
class Config:
    """
    Main configuration container for mailwatch.

    Usage:
        >>> config = Config.load()
        >>> account = config.account.to_account(secret)
        >>> engine = await WatchEngine.start_account(account, config.watch)
    """
    account: AccountConfig = field(default_factory=AccountConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from a TOML file.

        Args:
            path: File to read. Defaults to the XDG config file.

        Returns:
            Loaded Config object, or defaults if the file doesn't exist.

        Raises:
            ConfigError: If the file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to a TOML file.

        Creates the parent directory if it doesn't exist.
        """
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create a Config object from a parsed TOML dictionary."""
        account = data.get("account", {})
        watch = data.get("watch", {})

        try:
            return cls(
                account=AccountConfig(
                    user=account.get("user", ""),
                    address=account.get("address", ""),
                    mailbox=account.get("mailbox", "INBOX"),
                    security=account.get("security", "ssl"),
                ),
                watch=WatchConfig(
                    interval=float(watch.get("interval", 30.0)),
                    window=int(watch.get("window", 1)),
                    filter=watch.get("filter", "UNSEEN"),
                    cycle_timeout=watch.get("cycle_timeout"),
                    backoff_after=int(watch.get("backoff_after", 0)),
                    max_backoff=float(watch.get("max_backoff", 300.0)),
                    io_timeout=float(watch.get("io_timeout", 30.0)),
                ),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config value: {e}") from e

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        data: dict[str, Any] = {}

        data["account"] = {
            "user": self.account.user,
            "address": self.account.address,
            "mailbox": self.account.mailbox,
            "security": self.account.security,
        }

        data["watch"] = {
            "interval": self.watch.interval,
            "window": self.watch.window,
            "filter": self.watch.filter,
            "backoff_after": self.watch.backoff_after,
            "max_backoff": self.watch.max_backoff,
            "io_timeout": self.watch.io_timeout,
        }
        # TOML has no null
        if self.watch.cycle_timeout is not None:
            data["watch"]["cycle_timeout"] = self.watch.cycle_timeout

        return data


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or validating configuration."""
    pass
