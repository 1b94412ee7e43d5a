"""Credential resolution for WebDAV basic authentication."""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Protocol

import keyring
from dotenv import load_dotenv
from keyring.errors import KeyringError
from rich.prompt import Prompt

from ..errors import AuthError

logger = logging.getLogger(__name__)

USERNAME_ENV = "DAVSYNC_USERNAME"
PASSWORD_ENV = "DAVSYNC_PASSWORD"


@dataclass(frozen=True)
class Credentials:
    """Username and password for HTTP basic auth."""

    username: str
    password: str

    def as_tuple(self) -> tuple[str, str]:
        return (self.username, self.password)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


class CredentialProvider(Protocol):
    """One source of credentials. Returns None to decline."""

    name: str

    def get(self, remote_target: str) -> Credentials | None: ...


class EnvCredentialProvider:
    """Reads DAVSYNC_USERNAME / DAVSYNC_PASSWORD, loading a .env file first."""

    name = "environment"

    def get(self, remote_target: str) -> Credentials | None:
        load_dotenv()
        username = os.getenv(USERNAME_ENV, "")
        password = os.getenv(PASSWORD_ENV, "")
        if username and password:
            return Credentials(username, password)
        return None


class KeyringCredentialProvider:
    """Looks the password up in the system keyring."""

    name = "keyring"

    def __init__(self, service: str = "davsync", username: str = "") -> None:
        """Initialize the provider.

        Args:
            service: Keyring service name
            username: Account name (falls back to DAVSYNC_USERNAME)
        """
        self.service = service
        self.username = username

    def get(self, remote_target: str) -> Credentials | None:
        username = self.username or os.getenv(USERNAME_ENV, "")
        if not username:
            return None
        try:
            password = keyring.get_password(self.service, username)
        except KeyringError as e:
            logger.debug("Keyring lookup failed for %s: %s", username, e)
            return None
        if password:
            return Credentials(username, password)
        return None


class PromptCredentialProvider:
    """Asks on the terminal. Declines when stdin is not interactive."""

    name = "prompt"

    def __init__(self, username: str = "") -> None:
        self.username = username

    def get(self, remote_target: str) -> Credentials | None:
        if not sys.stdin.isatty():
            return None
        username = self.username or Prompt.ask(f"Username for {remote_target}")
        if not username:
            raise AuthError("No username given")
        password = Prompt.ask(f"Password for {username}@{remote_target}", password=True)
        return Credentials(username, password)


class CredentialResolver:
    """Tries each provider in order; the first answer wins and is cached."""

    def __init__(self, providers: list[CredentialProvider] | None = None) -> None:
        self.providers = list(providers) if providers is not None else []
        self._cache: dict[str, Credentials | None] = {}

    @classmethod
    def default(cls, username: str = "", keyring_service: str = "davsync") -> "CredentialResolver":
        """Environment, then keyring, then terminal prompt."""
        return cls([
            EnvCredentialProvider(),
            KeyringCredentialProvider(service=keyring_service, username=username),
            PromptCredentialProvider(username=username),
        ])

    def resolve(self, remote_target: str) -> Credentials | None:
        """Return credentials for a host, or None for unauthenticated access.

        Args:
            remote_target: Host (netloc) the credentials are for

        Returns:
            Credentials from the first provider that has them, or None

        Raises:
            AuthError: If a provider fails in a way that must abort
        """
        if remote_target in self._cache:
            return self._cache[remote_target]

        creds = None
        for provider in self.providers:
            creds = provider.get(remote_target)
            if creds is not None:
                logger.debug("Credentials for %s from %s", remote_target, provider.name)
                break

        if creds is None:
            logger.debug("No credentials for %s; continuing unauthenticated", remote_target)
        self._cache[remote_target] = creds
        return creds
