"""
Secret provisioning for the stack.

Handles:
- Reading credentials from the YAML secret store
- Generating missing credentials and persisting them immediately
- Explicit regeneration of a single credential
- Rendering the derived .env file consumed by docker compose

Both files are owner-only (0600) and are replaced atomically under an
exclusive lock, so concurrent readers never see a partial file.
"""

import os
import fcntl
import secrets
import string
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, List, Iterable, Callable, Iterator, Tuple
import yaml

from .config import StackConfig, env_name_for
from .errors import ConfigError, StoreUnavailable, WriteError
from .fileutil import atomic_write

logger = logging.getLogger(__name__)


MIN_SECRET_LENGTH = 32

# RFC 3986 unreserved punctuation: survives shell, YAML, .env and URL interpolation
SAFE_PUNCTUATION = "-_.~"
SECRET_ALPHABET = string.ascii_letters + string.digits + SAFE_PUNCTUATION

ENV_HEADER = (
    "# Generated by stackdeploy from the secret store. Do not edit.\n"
    "# Re-run `stackdeploy init-secrets` to regenerate.\n"
)


def generate_secret(length: int = MIN_SECRET_LENGTH) -> str:
    """
    Generate a cryptographically secure random secret.

    The value starts with a letter or digit and contains at least one
    lowercase letter, uppercase letter, digit and punctuation character, so
    services with password complexity rules accept it.
    """
    if length < MIN_SECRET_LENGTH:
        raise ValueError(f"Secret length must be at least {MIN_SECRET_LENGTH}")
    while True:
        value = "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))
        if (
            value[0].isalnum()
            and any(c.islower() for c in value)
            and any(c.isupper() for c in value)
            and any(c.isdigit() for c in value)
            and any(c in SAFE_PUNCTUATION for c in value)
        ):
            return value


def split_key(key: str) -> Tuple[str, str]:
    """Split "service.credential" into its two parts."""
    service, sep, name = key.partition(".")
    if not sep or not service or not name:
        raise ConfigError(f"Secret key must look like service.credential, got {key!r}")
    return service, name


@dataclass
class SecretRecord:
    """A credential as seen in the store."""
    key: str
    env_name: str
    exists: bool
    value: Optional[str] = None


class SecretProvider:
    """Resolves credentials from the secret store, creating missing ones."""

    def __init__(
        self,
        store_path: Path,
        env_path: Path,
        env_names: Optional[Dict[str, str]] = None,
        length: int = MIN_SECRET_LENGTH,
        generator: Callable[[int], str] = generate_secret,
    ):
        self.store_path = Path(store_path)
        self.env_path = Path(env_path)
        self.env_names = dict(env_names or {})
        self.length = length
        self.generator = generator

    @classmethod
    def from_config(cls, config: StackConfig) -> "SecretProvider":
        return cls(config.secrets_file, config.env_file, config.secrets)

    @property
    def required_keys(self) -> List[str]:
        return list(self.env_names)

    def env_name(self, key: str) -> str:
        return self.env_names.get(key) or env_name_for(key)

    def initialize(self):
        """Create the store directory with owner-only permissions."""
        try:
            self.store_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(self.store_path, f"cannot create store directory: {e}")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self.store_path.parent.is_dir():
            raise StoreUnavailable(self.store_path, "store directory does not exist")
        lock_path = self.store_path.with_name(f".{self.store_path.name}.lock")
        try:
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise StoreUnavailable(self.store_path, f"cannot open lock file: {e}")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _load(self) -> Dict[str, Dict[str, str]]:
        """Read the store; a missing file in an existing directory is an empty store."""
        try:
            text = self.store_path.read_text()
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StoreUnavailable(self.store_path, str(e))
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise StoreUnavailable(self.store_path, f"invalid YAML: {e}")
        if data is None:
            return {}
        if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
            raise StoreUnavailable(self.store_path, "expected a mapping of service to credentials")
        return {
            str(service): {str(k): str(v) for k, v in creds.items() if v is not None}
            for service, creds in data.items()
        }

    def _atomic_write(self, path: Path, content: str):
        atomic_write(path, content, mode=0o600)

    def _save(self, data: Dict[str, Dict[str, str]], key: Optional[str] = None):
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=True)
        try:
            self._atomic_write(self.store_path, content)
        except OSError as e:
            raise WriteError(self.store_path, str(e), key=key)

    def resolve(self, key: str) -> str:
        """Return the stored value for key, generating and persisting it if absent."""
        return self.resolve_all([key])[key]

    def resolve_all(self, keys: Iterable[str]) -> Dict[str, str]:
        """
        Resolve several keys under one lock with at most one store write.

        Raises WriteError if newly generated values could not be persisted;
        nothing is returned in that case.
        """
        keys = list(keys)
        parts = {key: split_key(key) for key in keys}
        with self._exclusive():
            data = self._load()
            values: Dict[str, str] = {}
            generated: List[str] = []
            for key in keys:
                service, name = parts[key]
                value = data.get(service, {}).get(name)
                if value is None:
                    value = self.generator(self.length)
                    data.setdefault(service, {})[name] = value
                    generated.append(key)
                values[key] = value
            if generated:
                self._save(data, key=generated[0] if len(generated) == 1 else None)
                for key in generated:
                    logger.info(f"Generated secret: {key}")
        return values

    def regenerate(self, key: str) -> str:
        """
        Replace a credential with a fresh value.

        Stateful services initialised with the old value will not accept the
        new one until they are reconfigured; this is an operator action only.
        """
        service, name = split_key(key)
        with self._exclusive():
            data = self._load()
            value = self.generator(self.length)
            data.setdefault(service, {})[name] = value
            self._save(data, key=key)
        logger.warning(f"Regenerated secret {key}; services using the old value must be updated")
        return value

    def records(self) -> List[SecretRecord]:
        """Every required key plus anything else in the store, without generating."""
        with self._exclusive():
            data = self._load()
        keys = list(self.required_keys)
        for service, creds in sorted(data.items()):
            for name in sorted(creds):
                key = f"{service}.{name}"
                if key not in keys:
                    keys.append(key)
        result = []
        for key in keys:
            service, name = split_key(key)
            value = data.get(service, {}).get(name)
            result.append(SecretRecord(key, self.env_name(key), value is not None, value))
        return result

    def render_env(self, values: Dict[str, str]) -> str:
        lines = [ENV_HEADER]
        for key, value in values.items():
            lines.append(f"{self.env_name(key)}={value}\n")
        return "".join(lines)

    def write_env_file(self, values: Dict[str, str]) -> bool:
        """
        Regenerate the env file from resolved values.

        Returns False without touching the file when it already holds exactly
        this content with owner-only permissions.
        """
        content = self.render_env(values)
        try:
            if self.env_path.read_text() == content and (self.env_path.stat().st_mode & 0o077) == 0:
                return False
        except FileNotFoundError:
            pass
        except OSError as e:
            raise WriteError(self.env_path, str(e))
        try:
            self.env_path.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write(self.env_path, content)
        except OSError as e:
            raise WriteError(self.env_path, str(e))
        logger.info(f"Written: {self.env_path}")
        return True

    def provision(self, keys: Optional[Iterable[str]] = None) -> Dict[str, str]:
        """Resolve every required key and refresh the env file."""
        values = self.resolve_all(self.required_keys if keys is None else keys)
        self.write_env_file(values)
        return values
