# =============================================================================
# Account Model
# =============================================================================
# The credentials and target mailbox for one watched session. The watcher
# never looks up passwords itself: whoever builds an Account hands the
# secret in directly, and the secret is kept out of repr() and out of
# config files.
# =============================================================================

from dataclasses import dataclass, field

# Implicit-TLS IMAP port, used when the address carries no port
DEFAULT_IMAP_PORT = 993


@dataclass
class Account:
    """
    Connection details for a watched mailbox.

    Attributes:
        user: Login name (usually the email address).
        secret: Password or app password. Never logged.
        address: "host:port" of the IMAP server. Port defaults to 993.
        mailbox: Mailbox to watch.
        security: "ssl" for implicit TLS or "starttls" to upgrade a
                  plain connection.

    Example:
        >>> account = Account("me@example.com", "s3cret", "imap.example.com:993")
        >>> account.host, account.port
        ('imap.example.com', 993)
    """

    user: str
    secret: str = field(repr=False)
    address: str
    mailbox: str = "INBOX"
    security: str = "ssl"               # "ssl" or "starttls"

    def __post_init__(self) -> None:
        if self.security not in ("ssl", "starttls"):
            raise ValueError(f"Unknown security mode: {self.security!r}")
        if not self.address:
            raise ValueError("Account address must not be empty")

    @property
    def host(self) -> str:
        """Hostname part of the address."""
        host, _, _ = self._split_address()
        return host

    @property
    def port(self) -> int:
        """Port part of the address, 993 if none was given."""
        _, _, port = self._split_address()
        return port

    def _split_address(self) -> tuple[str, str, int]:
        # rpartition keeps bracketed IPv6 literals like [::1]:993 intact
        host, sep, port = self.address.rpartition(":")
        if not sep or not port.isdigit() or host.endswith(":"):
            return self.address.strip("[]"), "", DEFAULT_IMAP_PORT
        return host.strip("[]"), sep, int(port)

    def __str__(self) -> str:
        return f"{self.user}@{self.address}/{self.mailbox}"
