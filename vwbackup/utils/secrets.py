"""
Secret store backends.

Secrets (backup passphrase, storage credentials) are fetched by name through
a SecretStore. Business logic never reads the process environment: the entry
point decides which backend to build and hands it to the components.

Backends:
- MappingSecretStore: values captured by the entry point (usually os.environ)
- FileSecretStore: one file per secret, as mounted by Docker secrets
- EncryptedFileSecretStore: Fernet-encrypted JSON file keyed by the app SECRET_KEY
"""

import os
import json
import base64
import logging
from pathlib import Path
from typing import Dict, Optional, Iterable

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from vwbackup.backup.errors import ConfigurationError

logger = logging.getLogger(__name__)


class SecretNotFound(ConfigurationError):
    """Raised when a named secret is not available."""


class SecretStore:
    """Interface: look up secrets by name."""

    def get(self, name: str) -> str:
        raise NotImplementedError

    def get_optional(self, name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        try:
            return self.get(name)
        except SecretNotFound:
            return None

    def known_values(self) -> Iterable[str]:
        """Secret values this store has handed out (used to mask log output)."""
        return ()


class MappingSecretStore(SecretStore):
    """Secrets from an in-memory mapping captured at process start."""

    def __init__(self, values: Dict[str, str]):
        self._values = dict(values)
        self._served = set()

    def get(self, name: str) -> str:
        value = self._values.get(name)
        if not value:
            raise SecretNotFound(f"Secret not configured: {name}")
        self._served.add(value)
        return value

    def known_values(self):
        return tuple(self._served)


class FileSecretStore(SecretStore):
    """
    Secrets stored as individual files in a directory.

    Matches the Docker/Compose secrets convention (/run/secrets/<name>).
    Trailing newlines are stripped.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._served = set()

    def get(self, name: str) -> str:
        if not name or '/' in name or name.startswith('.'):
            raise SecretNotFound(f"Invalid secret name: {name!r}")
        path = self.directory / name
        try:
            value = path.read_text().rstrip('\r\n')
        except FileNotFoundError:
            raise SecretNotFound(f"Secret file not found: {path}")
        except OSError as e:
            raise SecretNotFound(f"Cannot read secret {name}: {e}")
        if not value:
            raise SecretNotFound(f"Secret file is empty: {path}")
        self._served.add(value)
        return value

    def known_values(self):
        return tuple(self._served)


class EncryptedFileSecretStore(SecretStore):
    """
    Secrets persisted in a JSON file as Fernet tokens.

    The Fernet key is derived from the application SECRET_KEY with PBKDF2, so
    the file never holds plaintext secrets.
    """

    SALT = b'vwbackup_secret_store_salt_v1'

    def __init__(self, path: str, master_key: str):
        """
        Args:
            path: JSON file holding {name: token}
            master_key: Application SECRET_KEY

        Raises:
            ConfigurationError: If master_key is empty
        """
        if not master_key:
            raise ConfigurationError("SECRET_KEY not configured - cannot open encrypted secret store")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.SALT,
            iterations=100000,
        )
        self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(master_key.encode())))
        self.path = Path(path)
        self._served = set()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read secret store {self.path}: {e}")

    def get(self, name: str) -> str:
        token = self._load().get(name)
        if not token:
            raise SecretNotFound(f"Secret not stored: {name}")
        try:
            value = self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise ConfigurationError(f"Secret {name} cannot be decrypted (SECRET_KEY changed?)")
        self._served.add(value)
        return value

    def put(self, name: str, value: str):
        """Encrypt and store a secret, replacing any previous value."""
        if not name or not value:
            raise ConfigurationError("Secret name and value are required")
        data = self._load()
        data[name] = self._fernet.encrypt(value.encode()).decode()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)
        logger.info(f"Stored secret {name} in {self.path}")

    def names(self):
        return sorted(self._load().keys())

    def known_values(self):
        return tuple(self._served)


def create_secret_store(backend: str, environ: Dict[str, str] = None, secrets_dir: str = None,
                        secrets_file: str = None, master_key: str = None) -> SecretStore:
    """
    Build the configured secret store.

    Args:
        backend: 'env', 'file' or 'encrypted'
        environ: Mapping for the 'env' backend (captured by the entry point)
        secrets_dir: Directory for the 'file' backend
        secrets_file: JSON file for the 'encrypted' backend
        master_key: SECRET_KEY for the 'encrypted' backend

    Raises:
        ConfigurationError: If the backend is unknown or incompletely configured
    """
    if backend == 'env':
        return MappingSecretStore(environ or {})
    if backend == 'file':
        if not secrets_dir:
            raise ConfigurationError("SECRETS_DIR is required for the 'file' secrets backend")
        return FileSecretStore(secrets_dir)
    if backend == 'encrypted':
        if not secrets_file:
            raise ConfigurationError("SECRETS_FILE is required for the 'encrypted' secrets backend")
        return EncryptedFileSecretStore(secrets_file, master_key)
    raise ConfigurationError(f"Unknown secrets backend: {backend!r} (valid: env, file, encrypted)")
