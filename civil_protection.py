"""Resistance Civil Protection - Squadmate Notifier for a Dead Man's Switch.

This script keeps a small local configuration describing who you are, how
outgoing email is sent, and a list of trusted contacts ("squadmates"), and
it can dispatch a notification email to all of them on demand.

The system works by:
- Storing the sender identity, the transport and the squadmates in a single
  JSON file (default: ~/.config/resistance/config.json)
- Sending email either through an authenticated SMTP server or through the
  local mail-transfer agent (sendmail)
- Sending a test notification to every squadmate so that delivery can be
  confirmed with them before the switch is relied upon

Key Features:
- Single script design for ease of use and editing
- Support for major email providers (Gmail, iCloud, Outlook, Yahoo, Hotmail)
  with an explicit server/port override for everything else
- Atomic configuration writes with owner-only file permissions
- Per-recipient failure reporting when notifying squadmates
- Logging to syslog (facility daemon) when a syslog socket is available

Usage:
    cmacm [--config PATH] [--verbose] [setup [smtp|sendmail] | add NAME EMAIL | remove {email,name} VALUE | test]

Examples:
    cmacm setup smtp                          # Interactive setup using SMTP
    cmacm setup sendmail                      # Interactive setup using sendmail
    cmacm add "John Doe" johndoe@example.com  # Add a squadmate
    cmacm remove email johndoe@example.com    # Remove a squadmate (asks first)
    cmacm test                                # Send a test email to all squadmates
    cmacm                                     # Show the current configuration

Environment Variables:
    CMACM_CONFIG: Path of the configuration file (overridden by --config)
    CMACM_SENDMAIL: Path of the sendmail binary (default: /usr/sbin/sendmail)
    XDG_CONFIG_HOME: Base directory for the default configuration path

Testing:
    This module includes doctests that can be run with:
    python3 -m doctest civil_protection.py -v
"""

from __future__ import annotations

import argparse
import contextlib
import getpass
import json
import logging
import logging.handlers
import os
import re
import smtplib
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field, replace
from email.errors import MessageError
from email.mime.text import MIMEText
from email.utils import formataddr
from enum import StrEnum
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, NoReturn, TypedDict

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
CONFIG_VERSION = 1


class CivilProtectionException(Exception):
    """Base exception for Resistance Civil Protection errors.

    Every fallible operation of the core raises a subclass of this exception,
    so the CLI can tell configuration problems, validation problems and
    transport problems apart.

    Examples:
        >>> try:
        ...     raise CivilProtectionException("Test error")
        ... except CivilProtectionException as e:
        ...     str(e)
        'Test error'
    """


class NotConfiguredError(CivilProtectionException):
    """Raised when an operation needs a configuration that does not exist yet."""


class AlreadyConfiguredError(CivilProtectionException):
    """Raised when setup is attempted while a configuration already exists."""


class ValidationError(CivilProtectionException):
    """Raised when user supplied data is rejected."""


class InvalidEmailError(ValidationError):
    """Raised when an email address is empty or malformed."""


class DuplicateSquadmateError(ValidationError):
    """Raised when a squadmate with the same email address already exists."""


class SquadmateNotFoundError(CivilProtectionException):
    """Raised when the squadmate to remove is not in the configuration."""


class PersistenceError(CivilProtectionException):
    """Raised when the configuration file cannot be read or written."""


class ConfigNotFoundError(PersistenceError):
    """Raised when the configuration file is absent."""


class CorruptConfigError(PersistenceError):
    """Raised when the configuration file exists but cannot be parsed."""


class TransportError(CivilProtectionException):
    """Base class for failures of the outgoing mail transport."""


class AuthError(TransportError):
    """Raised when connecting or authenticating to the mail server fails."""


class SendError(TransportError):
    """Raised when one or more emails could not be delivered.

    Attributes:
        failures: Mapping of recipient email address to failure reason
        delivered: Recipients that were sent the email successfully

    Examples:
        >>> error = SendError("boom", failures={"bob@example.com": "refused"})
        >>> error.failures
        {'bob@example.com': 'refused'}
        >>> error.delivered
        []
    """

    def __init__(
        self,
        message: str,
        failures: dict[str, str] | None = None,
        delivered: list[Identity] | None = None,
    ) -> None:
        super().__init__(message)
        self.failures: dict[str, str] = dict(failures or {})
        self.delivered: list[Identity] = list(delivered or [])


@dataclass(frozen=True)
class Identity:
    """A display name and email address pair.

    Used both for the sending identity and for every squadmate. Squadmates
    are identified by their email address, compared exactly as stored.

    Attributes:
        name: Human-readable name shown to recipients
        email: Email address

    Examples:
        >>> alice = Identity("Alice", "alice@example.com")
        >>> str(alice)
        'Alice <alice@example.com>'
        >>> alice == Identity("Alice", "alice@example.com")
        True
    """

    name: str
    email: str

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"

    def validate(self) -> None:
        """Validate the email address format and the display name.

        This is a syntactic check only, nothing is looked up on the network.
        Control characters (line breaks included) are rejected in both
        fields, since both end up in message headers.

        Raises:
            InvalidEmailError: If the email address is empty or malformed
            ValidationError: If the name contains control characters

        Examples:
            >>> Identity("Alice", "alice@example.com").validate()  # Should not raise

            >>> try:
            ...     Identity("Alice", "invalid-email").validate()
            ... except InvalidEmailError as e:
            ...     print(e)
            Invalid email address: 'invalid-email'

            >>> try:
            ...     Identity("Nobody", "").validate()
            ... except InvalidEmailError as e:
            ...     print(e)
            Email address must not be empty

            >>> try:
            ...     Identity("Bob\\nBcc: eve@evil.example", "bob@example.com").validate()
            ... except ValidationError as e:
            ...     print(e)
            Name must not contain control characters: 'Bob\\nBcc: eve@evil.example'
        """
        if CONTROL_CHARS.search(self.name):
            raise ValidationError(f"Name must not contain control characters: {self.name!r}")
        if not self.email:
            raise InvalidEmailError("Email address must not be empty")
        if CONTROL_CHARS.search(self.email) or not EMAIL_PATTERN.fullmatch(self.email):
            raise InvalidEmailError(f"Invalid email address: {self.email!r}")

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "email": self.email}

    @classmethod
    def from_dict(cls, data: Any) -> Identity:
        """Build an identity from its persisted form.

        Raises:
            ValueError: If the entry is not an object with string fields

        Examples:
            >>> Identity.from_dict({"name": "Bob", "email": "bob@example.com"})
            Identity(name='Bob', email='bob@example.com')
        """
        if not isinstance(data, dict):
            raise ValueError(f"Identity must be an object, got {type(data).__name__}")
        name = data.get("name")
        email = data.get("email")
        if not isinstance(name, str) or not isinstance(email, str):
            raise ValueError(f"Identity needs string 'name' and 'email': {data!r}")
        return cls(name=name, email=email)


class EmailMethod(StrEnum):
    """Enumeration of the supported outgoing mail transports.

    Examples:
        >>> EmailMethod.SMTP.value
        'smtp'
        >>> EmailMethod("sendmail") is EmailMethod.SENDMAIL
        True
        >>> [m.value for m in EmailMethod]
        ['smtp', 'sendmail']
    """

    SMTP = "smtp"
    SENDMAIL = "sendmail"


@dataclass(frozen=True)
class SmtpTransportConfig:
    """Settings for sending through an authenticated SMTP server.

    When ``server`` is not given, the server and port are looked up from the
    domain of the sending address (see ``SmtpTransport.SMTP_CONFIGS``).

    Attributes:
        password: Password (or app password) of the sending account
        server: Optional SMTP server hostname override
        port: Optional SMTP server port override

    Examples:
        >>> config = SmtpTransportConfig(password="hunter2")
        >>> str(config)
        'SMTP'
        >>> config.method
        <EmailMethod.SMTP: 'smtp'>
        >>> "hunter2" in repr(config)
        False

        >>> try:
        ...     SmtpTransportConfig(password="pw", server="mail..example.com")
        ... except ValidationError as e:
        ...     print(e)
        Invalid SMTP server hostname: 'mail..example.com'
        >>> try:
        ...     SmtpTransportConfig(password="pw", port=70000)
        ... except ValidationError as e:
        ...     print(e)
        SMTP port must be between 1 and 65535, got 70000
    """

    password: str = field(repr=False)
    server: str | None = None
    port: int | None = None

    MAX_PORT = 65535

    def __post_init__(self) -> None:
        """Validate the server and port overrides.

        Raises:
            ValidationError: If the hostname cannot be encoded or the port is
                out of range
        """
        if self.server is not None:
            try:
                encoded = self.server.encode("idna")
            except UnicodeError as e:
                raise ValidationError(f"Invalid SMTP server hostname: {self.server!r}") from e
            if not encoded or CONTROL_CHARS.search(self.server) or " " in self.server:
                raise ValidationError(f"Invalid SMTP server hostname: {self.server!r}")
        if self.port is not None and not 1 <= self.port <= self.MAX_PORT:
            raise ValidationError(
                f"SMTP port must be between 1 and {self.MAX_PORT}, got {self.port}"
            )

    def __str__(self) -> str:
        return "SMTP"

    @property
    def method(self) -> EmailMethod:
        return EmailMethod.SMTP

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "password": self.password,
            "server": self.server,
            "port": self.port,
        }


@dataclass(frozen=True)
class SendmailTransportConfig:
    """Settings for sending through the local mail-transfer agent.

    Examples:
        >>> str(SendmailTransportConfig())
        'Sendmail'
        >>> SendmailTransportConfig().to_dict()
        {'method': 'sendmail'}
    """

    def __str__(self) -> str:
        return "Sendmail"

    @property
    def method(self) -> EmailMethod:
        return EmailMethod.SENDMAIL

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method.value}


TransportConfig = SmtpTransportConfig | SendmailTransportConfig


def transport_config_from_dict(data: Any) -> TransportConfig:
    """Build a transport configuration from its persisted form.

    The password never appears in the error messages.

    Raises:
        ValueError: If the method is unknown or a field has the wrong type
        ValidationError: If the SMTP server or port is invalid

    Examples:
        >>> transport_config_from_dict({"method": "sendmail"})
        SendmailTransportConfig()
        >>> transport_config_from_dict({"method": "smtp", "password": "pw", "port": 2525})
        SmtpTransportConfig(server=None, port=2525)
        >>> try:
        ...     transport_config_from_dict({"method": "carrier-pigeon"})
        ... except ValueError as e:
        ...     print(e)
        Unknown email method: 'carrier-pigeon'
    """
    if not isinstance(data, dict):
        raise ValueError("Transport must be an object")
    method = data.get("method")
    match method:
        case EmailMethod.SMTP:
            password = data.get("password")
            server = data.get("server")
            port = data.get("port")
            if not isinstance(password, str):
                raise ValueError("SMTP transport needs a string 'password'")
            if server is not None and not isinstance(server, str):
                raise ValueError("SMTP 'server' must be a string")
            if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
                raise ValueError("SMTP 'port' must be an integer")
            return SmtpTransportConfig(password=password, server=server, port=port)
        case EmailMethod.SENDMAIL:
            return SendmailTransportConfig()
        case _:
            raise ValueError(f"Unknown email method: {method!r}")


@dataclass
class Config:
    """The persisted configuration.

    Attributes:
        identity: Identity emails are sent from
        transport: How emails are sent
        squadmates: Recipients of notifications, in the order they were added

    Examples:
        >>> config = Config(Identity("Alice", "alice@example.com"), SendmailTransportConfig())
        >>> config.squadmates
        []
        >>> Config.from_dict(config.to_dict()) == config
        True
    """

    identity: Identity
    transport: TransportConfig
    squadmates: list[Identity] = field(default_factory=list)

    def validate(self) -> None:
        """Check the configuration invariants.

        Raises:
            InvalidEmailError: If an email address is malformed
            DuplicateSquadmateError: If two squadmates share an email address
            ValidationError: If the transport is not a known variant

        Examples:
            >>> bob = Identity("Bob", "bob@example.com")
            >>> config = Config(Identity("Alice", "alice@example.com"), SendmailTransportConfig(), [bob, bob])
            >>> try:
            ...     config.validate()
            ... except DuplicateSquadmateError as e:
            ...     print(e)
            Duplicate squadmate email address: bob@example.com
        """
        self.identity.validate()
        if not isinstance(self.transport, (SmtpTransportConfig, SendmailTransportConfig)):
            raise ValidationError(f"Unknown transport: {type(self.transport).__name__}")
        seen: set[str] = set()
        for squadmate in self.squadmates:
            squadmate.validate()
            if squadmate.email in seen:
                raise DuplicateSquadmateError(
                    f"Duplicate squadmate email address: {squadmate.email}"
                )
            seen.add(squadmate.email)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": CONFIG_VERSION,
            "identity": self.identity.to_dict(),
            "transport": self.transport.to_dict(),
            "squadmates": [squadmate.to_dict() for squadmate in self.squadmates],
        }

    @classmethod
    def from_dict(cls, data: Any) -> Config:
        """Build a configuration from its persisted form.

        Raises:
            ValueError: If the data does not describe a configuration
            KeyError: If a required section is missing
        """
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a JSON object")
        version = data.get("version", CONFIG_VERSION)
        if version != CONFIG_VERSION:
            raise ValueError(f"Unsupported configuration version: {version!r}")
        squadmates = data["squadmates"]
        if not isinstance(squadmates, list):
            raise ValueError("'squadmates' must be a list")
        return cls(
            identity=Identity.from_dict(data["identity"]),
            transport=transport_config_from_dict(data["transport"]),
            squadmates=[Identity.from_dict(entry) for entry in squadmates],
        )


class ConfigStore:
    """Loads, saves and deletes the single configuration file.

    The file is rewritten in full on every save. There is no locking: a
    single operator running one instance at a time is assumed.

    Attributes:
        CONFIG_ENV_VAR: Environment variable overriding the default location
        APP_DIR_NAME: Directory created under the user configuration directory

    Examples:
        >>> import tempfile
        >>> tmp = tempfile.TemporaryDirectory()
        >>> store = ConfigStore(Path(tmp.name) / "config.json")
        >>> store.exists()
        False
        >>> config = Config(Identity("Alice", "alice@example.com"), SendmailTransportConfig())
        >>> store.save(config)
        >>> store.exists()
        True
        >>> store.load() == config
        True
        >>> store.delete()
        >>> store.exists()
        False
        >>> tmp.cleanup()
    """

    CONFIG_ENV_VAR = "CMACM_CONFIG"
    APP_DIR_NAME = "resistance"
    CONFIG_FILE_NAME = "config.json"

    def __init__(self, path: Path | None = None) -> None:
        self._path = path if path is not None else self.default_path()

    @classmethod
    def default_path(cls) -> Path:
        """Resolve the configuration path from the environment.

        Order: ``CMACM_CONFIG``, then ``$XDG_CONFIG_HOME/resistance/config.json``,
        then ``~/.config/resistance/config.json``.

        Examples:
            >>> import os
            >>> old = os.environ.get("CMACM_CONFIG")
            >>> os.environ["CMACM_CONFIG"] = "/tmp/cmacm.json"
            >>> ConfigStore.default_path()
            PosixPath('/tmp/cmacm.json')
            >>> if old is None: del os.environ["CMACM_CONFIG"]
            ... else: os.environ["CMACM_CONFIG"] = old
        """
        env_path = os.environ.get(cls.CONFIG_ENV_VAR)
        if env_path:
            return Path(env_path).expanduser()
        xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
        base_dir = Path(xdg_config_home) if xdg_config_home else Path.home() / ".config"
        return base_dir / cls.APP_DIR_NAME / cls.CONFIG_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        """Return True if the file is present and readable as a configuration."""
        try:
            self.load()
        except PersistenceError:
            return False
        return True

    def load(self) -> Config:
        """Read and parse the configuration file.

        Raises:
            ConfigNotFoundError: If the file does not exist
            CorruptConfigError: If the file cannot be parsed or is invalid
            PersistenceError: If the file cannot be read

        Examples:
            >>> import tempfile
            >>> tmp = tempfile.TemporaryDirectory()
            >>> path = Path(tmp.name) / "config.json"
            >>> try:
            ...     ConfigStore(path).load()
            ... except ConfigNotFoundError:
            ...     print("Missing file detected")
            Missing file detected
            >>> _ = path.write_text("{not json", encoding="utf-8")
            >>> try:
            ...     ConfigStore(path).load()
            ... except CorruptConfigError:
            ...     print("Corrupt file detected")
            Corrupt file detected
            >>> tmp.cleanup()
        """
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError as e:
            raise ConfigNotFoundError(f"No configuration found at {self._path}") from e
        except OSError as e:
            raise PersistenceError(f"Failed to read configuration {self._path}: {e}") from e

        try:
            config = Config.from_dict(json.loads(raw.decode("utf-8")))
            config.validate()
        except (ValueError, KeyError, ValidationError) as e:
            raise CorruptConfigError(
                f"Configuration file {self._path} is corrupt: {e}"
            ) from e
        return config

    def save(self, config: Config) -> None:
        """Atomically replace the configuration file with ``config``.

        The data is written to a temporary file next to the target, which is
        then renamed over it, so readers never see a partial file. The
        temporary file is created with owner-only permissions because it
        holds the SMTP password.

        Raises:
            PersistenceError: If the file cannot be written
        """
        data = json.dumps(config.to_dict(), indent=2) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write configuration {self._path}: {e}") from e
        logger.debug("Saved configuration to %s", self._path)

    def delete(self) -> None:
        """Remove the configuration file. A missing file is not an error.

        Raises:
            PersistenceError: If the file exists but cannot be removed
        """
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete configuration {self._path}: {e}") from e


@dataclass
class Email:
    """Represents an email message with validation.

    Attributes:
        sender: Identity the email is sent from
        to: Recipient identity (must have a valid email address)
        subject: Email subject line
        body: Email body content

    Examples:
        >>> alice = Identity("Alice", "alice@example.com")
        >>> bob = Identity("Bob", "bob@example.com")
        >>> email = Email(alice, bob, "Hello", "Test message")
        >>> email.to.email
        'bob@example.com'

        >>> # Invalid email should raise exception
        >>> try:
        ...     Email(alice, Identity("Eve", "invalid-email"), "Subject", "Body")
        ... except InvalidEmailError:
        ...     print("Invalid email caught")
        Invalid email caught
    """

    sender: Identity
    to: Identity
    subject: str
    body: str

    TEST_SUBJECT = "Resistance Test Email"
    TEST_BODY = (
        "Dear {recipient},\n\n"
        "{sender} has added you as a squadmate in Resistance, a dead man's switch.\n"
        "If Resistance is ever triggered, you will receive an email like this one.\n\n"
        "This is only a test to check that emails reach you. "
        "Please let {sender_name} know that you received it.\n"
    )

    def __post_init__(self) -> None:
        self.to.validate()

    @classmethod
    def test_notification(cls, sender: Identity, to: Identity) -> Email:
        """Build the fixed test notification for one squadmate.

        Examples:
            >>> alice = Identity("Alice", "alice@example.com")
            >>> email = Email.test_notification(alice, Identity("Bob", "bob@example.com"))
            >>> email.subject
            'Resistance Test Email'
            >>> email.body.splitlines()[0]
            'Dear Bob,'
        """
        body = cls.TEST_BODY.format(
            recipient=to.name or to.email,
            sender=str(sender),
            sender_name=sender.name or sender.email,
        )
        return cls(sender=sender, to=to, subject=cls.TEST_SUBJECT, body=body)

    def to_mime(self) -> MIMEText:
        """Render the email as a MIME message.

        Examples:
            >>> alice = Identity("Alice", "alice@example.com")
            >>> msg = Email(alice, Identity("Bob", "bob@example.com"), "Hi", "Body").to_mime()
            >>> msg["From"]
            'Alice <alice@example.com>'
            >>> msg["To"]
            'Bob <bob@example.com>'
            >>> msg["Subject"]
            'Hi'
        """
        msg = MIMEText(self.body, "plain", "utf-8")
        msg["From"] = formataddr((self.sender.name, self.sender.email))
        msg["To"] = formataddr((self.to.name, self.to.email))
        msg["Subject"] = self.subject
        return msg


class Transport:
    """Base class for outgoing mail transports.

    A transport is used as a context manager: entering it opens the session
    (logging in where the transport needs it), leaving it closes the session.

    Attributes:
        SECONDS_BETWEEN_EMAILS: Delay between consecutive emails of one session
    """

    SECONDS_BETWEEN_EMAILS: float = 0

    def __init__(self, sender: Identity) -> None:
        self._sender = sender

    @property
    def sender(self) -> Identity:
        return self._sender

    def open(self) -> None:
        """Open the session. Transports without sessions do nothing."""

    def close(self) -> None:
        """Close the session. Transports without sessions do nothing."""

    def send(self, email: Email) -> None:
        """Deliver one email. Subclasses must override this.

        Raises:
            SendError: If the email could not be delivered
        """
        raise NotImplementedError("Transport subclasses must implement send()")

    def __enter__(self) -> Transport:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback_obj: TracebackType | None,
    ) -> None:
        self.close()


class SMTPConfig(TypedDict):
    """Type definition for SMTP server configuration.

    Attributes:
        server: SMTP server hostname
        port: SMTP server port number

    Examples:
        >>> config: SMTPConfig = {"server": "smtp.gmail.com", "port": 587}
        >>> config["server"]
        'smtp.gmail.com'
        >>> config["port"]
        587
    """

    server: str
    port: int


class SmtpTransport(Transport):
    """Sends email through an authenticated SMTP server using STARTTLS.

    Supports major email providers with automatic SMTP configuration;
    any other provider needs an explicit server in the transport settings.

    Attributes:
        SECONDS_BETWEEN_EMAILS: Delay between sending multiple emails
        TIMEOUT_SECONDS: Socket timeout for the SMTP connection
        DEFAULT_PORT: Port used with an explicit server and no explicit port
        SMTP_CONFIGS: Mapping of email domains to SMTP configurations

    Examples:
        >>> alice = Identity("Alice", "alice@gmail.com")
        >>> transport = SmtpTransport(alice, SmtpTransportConfig(password="pw"))
        >>> transport.smtp_config
        {'server': 'smtp.gmail.com', 'port': 587}

        >>> custom = SmtpTransportConfig(password="pw", server="mail.example.org", port=2525)
        >>> SmtpTransport(Identity("Alice", "alice@example.org"), custom).smtp_config
        {'server': 'mail.example.org', 'port': 2525}

        >>> # Unsupported provider without an explicit server
        >>> try:
        ...     SmtpTransport(Identity("Alice", "alice@unsupported.com"), SmtpTransportConfig(password="pw"))
        ... except AuthError as e:
        ...     "Unsupported email provider" in str(e)
        True
    """

    SECONDS_BETWEEN_EMAILS = 1
    TIMEOUT_SECONDS = 30
    DEFAULT_PORT = 587
    SMTP_CONFIGS: dict[str, SMTPConfig] = {
        "gmail.com": {"server": "smtp.gmail.com", "port": 587},
        "icloud.com": {"server": "smtp.mail.me.com", "port": 587},
        "outlook.com": {"server": "smtp-mail.outlook.com", "port": 587},
        "yahoo.com": {"server": "smtp.mail.yahoo.com", "port": 587},
        "hotmail.com": {"server": "smtp-mail.outlook.com", "port": 587},
    }

    def __init__(self, sender: Identity, config: SmtpTransportConfig) -> None:
        """Resolve the SMTP server for the sending address.

        Raises:
            AuthError: If no server is configured and the provider is unknown
        """
        super().__init__(sender)
        self._password = config.password
        self._smtp_config = self._resolve_smtp_config(sender.email, config)
        self._smtp_server: smtplib.SMTP | None = None

    @classmethod
    def _resolve_smtp_config(cls, email: str, config: SmtpTransportConfig) -> SMTPConfig:
        if config.server:
            return {"server": config.server, "port": config.port or cls.DEFAULT_PORT}

        domain = email.split("@")[-1].lower()
        smtp_config = cls.SMTP_CONFIGS.get(domain)
        if not smtp_config:
            raise AuthError(
                f"Unsupported email provider: {domain}. "
                f"Supported providers: {', '.join(cls.SMTP_CONFIGS.keys())}. "
                "Configure an explicit SMTP server for other providers."
            )
        return {"server": smtp_config["server"], "port": config.port or smtp_config["port"]}

    @property
    def smtp_config(self) -> SMTPConfig:
        return self._smtp_config

    def open(self) -> None:
        """Connect, enable TLS and log in.

        Raises:
            AuthError: If the connection or authentication fails
        """
        server_name = self._smtp_config["server"]
        port = self._smtp_config["port"]
        try:
            server = smtplib.SMTP(server_name, port, timeout=self.TIMEOUT_SECONDS)
        except (smtplib.SMTPException, OSError, UnicodeError) as e:
            raise AuthError(
                f"Failed to connect to email server {server_name}:{port}: {e}"
            ) from e

        try:
            server.starttls()  # Enable TLS encryption
            server.login(self._sender.email, self._password)
        except smtplib.SMTPAuthenticationError as e:
            server.close()
            raise AuthError(
                "Failed to authenticate with email server. "
                f"Check your email and password/app password. Error: {e}"
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            server.close()
            raise AuthError(f"SMTP error occurred: {e}") from e

        self._smtp_server = server
        logger.debug("Logged in to %s:%s as %s", server_name, port, self._sender.email)

    def close(self) -> None:
        if self._smtp_server is None:
            return
        try:
            self._smtp_server.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.debug("Error while closing SMTP connection: %s", e)
            self._smtp_server.close()
        finally:
            self._smtp_server = None

    def send(self, email: Email) -> None:
        """Send an email, opening a temporary session if none is open.

        Raises:
            AuthError: If a temporary session cannot be opened
            SendError: If the server rejects the email
        """
        if self._smtp_server is None:
            with self:
                self.send(email)
            return

        try:
            self._smtp_server.send_message(email.to_mime())
        except (smtplib.SMTPException, OSError, MessageError) as e:
            raise SendError(
                f"Failed to send email to {email.to.email}: {e}",
                failures={email.to.email: str(e)},
            ) from e


class SendmailTransport(Transport):
    """Sends email by piping it to the local mail-transfer agent.

    Runs ``sendmail -t -oi`` so the recipients are read from the message
    headers. No login is needed.

    Examples:
        >>> alice = Identity("Alice", "alice@example.com")
        >>> SendmailTransport(alice, command="/opt/bin/sendmail").command
        '/opt/bin/sendmail'
    """

    SENDMAIL_ENV_VAR = "CMACM_SENDMAIL"
    DEFAULT_COMMAND = "/usr/sbin/sendmail"

    def __init__(self, sender: Identity, command: str | None = None) -> None:
        super().__init__(sender)
        self._command = command or os.environ.get(self.SENDMAIL_ENV_VAR) or self.DEFAULT_COMMAND

    @property
    def command(self) -> str:
        return self._command

    def send(self, email: Email) -> None:
        """Hand one email to sendmail.

        Raises:
            SendError: If the message cannot be rendered, or sendmail cannot
                be run or exits with an error
        """
        try:
            message = email.to_mime().as_bytes()
        except MessageError as e:
            raise SendError(
                f"Failed to render email to {email.to.email}: {e}",
                failures={email.to.email: str(e)},
            ) from e

        try:
            result = subprocess.run(
                [self._command, "-t", "-oi", "-f", self._sender.email],
                input=message,
                capture_output=True,
                check=False,
            )
        except OSError as e:
            raise SendError(
                f"Failed to run {self._command}: {e}",
                failures={email.to.email: str(e)},
            ) from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            reason = f"{self._command} exited with status {result.returncode}"
            if stderr:
                reason = f"{reason}: {stderr}"
            raise SendError(
                f"Failed to send email to {email.to.email}: {reason}",
                failures={email.to.email: reason},
            )


def transport_for(config: Config) -> Transport:
    """Build the transport described by a configuration.

    Examples:
        >>> config = Config(Identity("Alice", "alice@example.com"), SendmailTransportConfig())
        >>> type(transport_for(config)).__name__
        'SendmailTransport'
    """
    match config.transport:
        case SmtpTransportConfig():
            return SmtpTransport(config.identity, config.transport)
        case SendmailTransportConfig():
            return SendmailTransport(config.identity)
    raise ValidationError(f"Unknown transport: {type(config.transport).__name__}")


class CivilProtection:
    """Manages the configuration, the squadmates and their notification.

    Each CLI invocation builds one instance, runs one operation sequence on
    it and discards it. The configuration is loaded lazily and every change
    is saved immediately.

    Examples:
        >>> import tempfile
        >>> tmp = tempfile.TemporaryDirectory()
        >>> cp = CivilProtection(ConfigStore(Path(tmp.name) / "config.json"))
        >>> cp.does_config_exist()
        False
        >>> cp.create_config_sendmail(Identity("Alice", "alice@example.com"))
        >>> cp.does_config_exist()
        True

        >>> bob = Identity("Bob", "bob@example.com")
        >>> cp.add_squadmate(bob)
        >>> cp.find_squadmate_by_name("Bob")
        Identity(name='Bob', email='bob@example.com')
        >>> cp.rm_squadmate(bob)
        >>> cp.find_squadmate_by_email("bob@example.com") is None
        True

        >>> cp.delete_config()
        >>> try:
        ...     cp.config()
        ... except NotConfiguredError:
        ...     print("Not configured")
        Not configured
        >>> tmp.cleanup()
    """

    def __init__(
        self,
        store: ConfigStore | None = None,
        transport_factory: Callable[[Config], Transport] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Where the configuration lives (default location if omitted)
            transport_factory: Builds the transport for a configuration
                (``transport_for`` if omitted)
        """
        self._store = store if store is not None else ConfigStore()
        self._transport_factory = transport_factory or transport_for
        self._config: Config | None = None

    @property
    def store(self) -> ConfigStore:
        return self._store

    def does_config_exist(self) -> bool:
        return self._store.exists()

    def delete_config(self) -> None:
        """Delete the stored configuration and forget the in-memory copy.

        Raises:
            PersistenceError: If the file cannot be removed
        """
        self._store.delete()
        self._config = None
        logger.info("Deleted configuration %s", self._store.path)

    def create_config(self, identity: Identity, transport: TransportConfig) -> None:
        """Create, save and adopt a new configuration without squadmates.

        Args:
            identity: Identity emails will be sent from
            transport: Transport settings, SMTP or sendmail

        Raises:
            InvalidEmailError: If the identity's email address is malformed
            ValidationError: If the transport is not a known variant
            AlreadyConfiguredError: If a configuration already exists
            PersistenceError: If the configuration cannot be saved
        """
        config = Config(identity=identity, transport=transport)
        config.validate()
        if self.does_config_exist():
            raise AlreadyConfiguredError(
                f"Resistance is already set up ({self._store.path})"
            )
        self._store.save(config)
        self._config = config
        logger.info("Created configuration for %s using %s", identity.email, transport)

    def create_config_smtp(self, identity: Identity, password: str) -> None:
        """Shortcut for ``create_config`` with an SMTP transport."""
        self.create_config(identity, SmtpTransportConfig(password=password))

    def create_config_sendmail(self, identity: Identity) -> None:
        """Shortcut for ``create_config`` with a sendmail transport."""
        self.create_config(identity, SendmailTransportConfig())

    def login(self) -> None:
        """Check that the configured transport accepts the stored credentials.

        For SMTP this connects and authenticates, then disconnects again.
        For sendmail nothing needs to be checked. Can be called any number
        of times.

        Raises:
            NotConfiguredError: If there is no configuration
            AuthError: If connecting or authenticating fails
        """
        config = self.config()
        with self._transport_factory(config):
            pass
        logger.info("Logged in via %s as %s", config.transport, config.identity.email)

    def config(self) -> Config:
        """Return the configuration, loading it on first access.

        Raises:
            NotConfiguredError: If no configuration has been set up
            CorruptConfigError: If the stored configuration is unreadable
        """
        if self._config is None:
            try:
                self._config = self._store.load()
            except ConfigNotFoundError as e:
                raise NotConfiguredError("Resistance is not set up yet") from e
        return self._config

    def _replace_squadmates(self, squadmates: list[Identity]) -> None:
        updated = replace(self.config(), squadmates=squadmates)
        self._store.save(updated)
        self._config = updated

    def add_squadmate(self, identity: Identity) -> None:
        """Append a squadmate and save.

        Raises:
            NotConfiguredError: If there is no configuration
            InvalidEmailError: If the email address is malformed
            DuplicateSquadmateError: If the email address is already present
        """
        config = self.config()
        identity.validate()
        if self.find_squadmate_by_email(identity.email) is not None:
            raise DuplicateSquadmateError(
                f"A squadmate with email {identity.email} already exists"
            )
        self._replace_squadmates([*config.squadmates, identity])
        logger.info("Added squadmate %s", identity)

    def find_squadmate_by_name(self, name: str) -> Identity | None:
        """Return the first squadmate with exactly this name, or None.

        Names are not unique; when several squadmates share one, the one
        added first wins.
        """
        return next(
            (squadmate for squadmate in self.config().squadmates if squadmate.name == name),
            None,
        )

    def find_squadmate_by_email(self, email: str) -> Identity | None:
        return next(
            (squadmate for squadmate in self.config().squadmates if squadmate.email == email),
            None,
        )

    def rm_squadmate(self, identity: Identity) -> None:
        """Remove the squadmate with the same email address and save.

        Raises:
            NotConfiguredError: If there is no configuration
            SquadmateNotFoundError: If no squadmate has that email address
        """
        squadmates = self.config().squadmates
        remaining = [squadmate for squadmate in squadmates if squadmate.email != identity.email]
        if len(remaining) == len(squadmates):
            raise SquadmateNotFoundError(f"No squadmate with email {identity.email}")
        self._replace_squadmates(remaining)
        logger.info("Removed squadmate %s", identity)

    def notify_squadmates(self) -> list[Identity]:
        """Send the test notification to every squadmate.

        All squadmates are attempted over one transport session, even when
        some of them fail.

        Returns:
            list[Identity]: Squadmates the email was delivered to

        Raises:
            NotConfiguredError: If there is no configuration
            AuthError: If the transport session cannot be opened
            SendError: If delivery failed for at least one squadmate; its
                ``failures`` and ``delivered`` attributes hold the details
        """
        config = self.config()
        squadmates = list(config.squadmates)
        if not squadmates:
            logger.info("No squadmates to notify")
            return []

        delivered: list[Identity] = []
        failures: dict[str, str] = {}
        with self._transport_factory(config) as transport:
            for i, squadmate in enumerate(squadmates):
                if i and transport.SECONDS_BETWEEN_EMAILS:
                    time.sleep(transport.SECONDS_BETWEEN_EMAILS)
                email = Email.test_notification(config.identity, squadmate)
                try:
                    transport.send(email)
                except SendError as e:
                    logger.warning("Failed to notify %s: %s", squadmate, e)
                    failures[squadmate.email] = e.failures.get(squadmate.email, str(e))
                    continue
                logger.info("Notified %s", squadmate)
                delivered.append(squadmate)

        if failures:
            raise SendError(
                f"Failed to notify {len(failures)} of {len(squadmates)} squadmates: "
                f"{', '.join(failures)}",
                failures=failures,
                delivered=delivered,
            )
        return delivered


SYSLOG_SOCKET = "/dev/log"
SYSLOG_IDENT = "resistance-cmacm"


def setup_logging(verbose: bool = False) -> None:
    """Send log records to syslog and, when verbose, to standard error.

    Without a syslog socket, logging is simply left without a syslog
    handler. Calling this again does not add duplicate handlers.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler_names = {handler.get_name() for handler in root.handlers}

    if "cmacm-syslog" not in handler_names and os.path.exists(SYSLOG_SOCKET):
        try:
            syslog_handler = logging.handlers.SysLogHandler(
                address=SYSLOG_SOCKET,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON,
            )
        except OSError as e:
            print(f"Syslog is unavailable: {e}", file=sys.stderr)
        else:
            syslog_handler.set_name("cmacm-syslog")
            syslog_handler.setLevel(logging.INFO)
            syslog_handler.setFormatter(
                logging.Formatter(f"{SYSLOG_IDENT}[%(process)d]: %(message)s")
            )
            root.addHandler(syslog_handler)

    if verbose and "cmacm-stderr" not in handler_names:
        stream_handler = logging.StreamHandler()
        stream_handler.set_name("cmacm-stderr")
        stream_handler.setLevel(logging.DEBUG)
        stream_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(stream_handler)


def _fail(message: str) -> NoReturn:
    print(message, file=sys.stderr)
    raise SystemExit(1)


def _read_line(prompt: str) -> str:
    try:
        return input(prompt)
    except EOFError:
        _fail("Failed to read from standard input")


def prompt_yn(prompt: str) -> bool:
    """Ask a yes/no question, defaulting to no."""
    return _read_line(f"{prompt} (y/N): ").strip().lower().startswith("y")


def prompt_identity() -> Identity:
    name = _read_line(
        "Enter a human-readable name to show to recipients when sending emails: "
    ).strip()
    email = _read_line("Enter the email address to send emails from: ").strip()
    return Identity(name=name, email=email)


def prompt_password() -> str:
    try:
        return getpass.getpass("Enter the password for the email address given above: ")
    except EOFError:
        _fail("Failed to read password")


def _check_config(cp: CivilProtection) -> Config:
    try:
        return cp.config()
    except NotConfiguredError:
        _fail("Resistance is not setup yet!")
    except CivilProtectionException as e:
        _fail(f"Failed to load config: {e}")


def cmd_status(cp: CivilProtection, args: argparse.Namespace) -> None:
    try:
        conf = cp.config()
    except NotConfiguredError:
        _fail("Not configured yet! Run with `--help` to show setup commands")
    except CivilProtectionException as e:
        _fail(f"Failed to load config: {e}")

    print(f"Transport: {conf.transport}")
    print(f"From Address: {conf.identity}")
    if not conf.squadmates:
        print('No squadmates! Add some with `cmacm add "John Doe" johndoe@example.com`')
        return
    print("Squadmates:")
    for squadmate in conf.squadmates:
        print(f"\t{squadmate}")


def cmd_setup(cp: CivilProtection, args: argparse.Namespace) -> None:
    if args.email_method is None:
        cmd_status(cp, args)
        return

    method = EmailMethod(args.email_method)
    if method is EmailMethod.SENDMAIL and (args.server is not None or args.port is not None):
        _fail("--server and --port only apply to `setup smtp`")

    if cp.does_config_exist():
        if not prompt_yn(
            "Resistance is already setup! Are you sure you want to reinitialize setup?"
        ):
            print("Canceled")
            raise SystemExit(1)
        try:
            cp.delete_config()
        except CivilProtectionException as e:
            _fail(f"Failed to delete existing config: {e}")

    identity = prompt_identity()
    transport: TransportConfig
    try:
        match method:
            case EmailMethod.SMTP:
                transport = SmtpTransportConfig(
                    password=prompt_password(), server=args.server, port=args.port
                )
            case EmailMethod.SENDMAIL:
                transport = SendmailTransportConfig()
        cp.create_config(identity, transport)
    except CivilProtectionException as e:
        _fail(f"Failed to setup Resistance: {e}")

    print("Logging in...")
    try:
        cp.login()
    except CivilProtectionException as e:
        _fail(f"Failed to login: {e}")

    print("Resistance has been successfully setup")


def cmd_add(cp: CivilProtection, args: argparse.Namespace) -> None:
    _check_config(cp)
    squadmate = Identity(name=args.name, email=args.email)
    try:
        cp.add_squadmate(squadmate)
    except CivilProtectionException as e:
        _fail(f"Failed to add squadmate: {e}")
    print(f"Successfully added squadmate: {squadmate}")


def cmd_remove(cp: CivilProtection, args: argparse.Namespace) -> None:
    _check_config(cp)
    if args.field_type == "name":
        squadmate = cp.find_squadmate_by_name(args.value)
    else:
        squadmate = cp.find_squadmate_by_email(args.value)
    if squadmate is None:
        _fail(f"Unable to find squadmate with {args.field_type} {args.value}")

    if not prompt_yn(f"Found squadmate {squadmate}, are you sure you want to remove them?"):
        print("Canceled")
        return

    try:
        cp.rm_squadmate(squadmate)
    except CivilProtectionException as e:
        _fail(f"Failed to remove squadmate: {e}")
    print(f"Successfully removed squadmate {squadmate}")


def cmd_test(cp: CivilProtection, args: argparse.Namespace) -> None:
    _check_config(cp)
    try:
        delivered = cp.notify_squadmates()
    except SendError as e:
        for squadmate in e.delivered:
            print(f"Sent a test email to {squadmate}")
        print("Failed to send email! Is Resistance setup correctly?", file=sys.stderr)
        for address, reason in e.failures.items():
            print(f"\t{address}: {reason}", file=sys.stderr)
        raise SystemExit(1)
    except CivilProtectionException as e:
        _fail(f"Failed to send email! Is Resistance setup correctly?\n{e}")

    if not delivered:
        print('No squadmates! Add some with `cmacm add "John Doe" johndoe@example.com`')
        return
    print(
        "Sent a test email to all Squadmates. "
        "Confirm with them that they received the email."
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser.

    Examples:
        >>> parser = build_parser()
        >>> args = parser.parse_args(["add", "John Doe", "johndoe@example.com"])
        >>> args.name, args.email
        ('John Doe', 'johndoe@example.com')

        >>> args = parser.parse_args(["setup", "smtp", "--server", "mail.example.org"])
        >>> args.email_method, args.server, args.port
        ('smtp', 'mail.example.org', None)

        >>> parser.parse_args([]).command is None
        True

        >>> try:
        ...     parser.parse_args(["remove", "phone", "123"])
        ... except SystemExit:
        ...     print("Invalid argument handled correctly")
        Invalid argument handled correctly
    """
    parser = argparse.ArgumentParser(
        prog="cmacm",
        description="Resistance - notify your squadmates when you stop checking in",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s setup smtp                          # Set up sending through SMTP
  %(prog)s setup sendmail                      # Set up sending through sendmail
  %(prog)s add "John Doe" johndoe@example.com  # Add a squadmate
  %(prog)s remove name "John Doe"              # Remove a squadmate
  %(prog)s test                                # Send a test email to all squadmates
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to the configuration file (default: ${ConfigStore.CONFIG_ENV_VAR} "
        "or ~/.config/resistance/config.json)",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Also log to standard error."
    )
    parser.set_defaults(func=cmd_status)

    subparsers = parser.add_subparsers(dest="command")

    sub_setup = subparsers.add_parser(
        "setup", help="Set up Resistance, or show the configuration"
    )
    sub_setup.add_argument(
        "email_method",
        nargs="?",
        choices=[method.value for method in EmailMethod],
        help="How to send emails. Without it, show the current configuration.",
    )
    sub_setup.add_argument(
        "--server", default=None, help="SMTP server hostname (smtp only)"
    )
    sub_setup.add_argument(
        "--port", type=int, default=None, help="SMTP server port (smtp only)"
    )
    sub_setup.set_defaults(func=cmd_setup)

    sub_add = subparsers.add_parser("add", help="Add a squadmate")
    sub_add.add_argument("name", help="Name of the squadmate")
    sub_add.add_argument("email", help="Email address of the squadmate")
    sub_add.set_defaults(func=cmd_add)

    sub_remove = subparsers.add_parser("remove", help="Remove a squadmate")
    sub_remove.add_argument(
        "field_type", choices=["email", "name"], help="Field to look the squadmate up by"
    )
    sub_remove.add_argument("value", help="Email address or name of the squadmate")
    sub_remove.set_defaults(func=cmd_remove)

    sub_test = subparsers.add_parser(
        "test", help="Send a test email to all squadmates"
    )
    sub_test.set_defaults(func=cmd_test)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the cmacm CLI.

    Parses the command line, builds one CivilProtection for this
    invocation and runs the chosen command on it.
    """
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)

    cp = CivilProtection(ConfigStore(args.config))
    func: Callable[[CivilProtection, argparse.Namespace], None] = args.func
    func(cp, args)


if __name__ == "__main__":
    main()
