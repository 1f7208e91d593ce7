"""Configuration for Memoir AI.

Settings come from three sources, highest priority first:

1. Environment variables with the ``MEMOIR_`` prefix; nested sections use a
   double underscore (``MEMOIR_AI__MODEL_NAME=gemini-1.5-pro``).
2. A YAML config file (``./memoir.yaml`` or ``~/.memoir/config.yaml``, or an
   explicit path).
3. In-code defaults.

The Gemini API key is kept out of the config file. :class:`APIKeyManager`
looks for it in the ``GEMINI_API_KEY`` environment variable, then in the
system keyring, then in a machine-bound encrypted file.

Services never read configuration themselves: the CLI loads an
:class:`AppConfig` and passes the relevant sections into the objects it builds.

Config File Format (YAML):
    ```yaml
    ai:
      mode: enabled  # disabled | enabled | fallback_only
      model_name: gemini-1.5-flash
      temperature: 0.7
      max_output_tokens: 1000
      max_retries: 3

    chat:
      debounce_seconds: 2.0
      min_analysis_length: 50
      content_change_threshold: 100
      update_window: 5

    context:
      cache_ttl_seconds: 300

    storage:
      backend: json  # json | memory

    paths:
      config_dir: ~/.memoir
    ```
"""

from __future__ import annotations

import base64
import functools
import logging
import os
import platform
import stat
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import keyring
import keyring.errors
import yaml
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings

# Never log secrets through this logger
logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(Exception):
    """Base exception for configuration errors."""


class APIKeyError(ConfigError):
    """Base exception for API key problems."""


class APIKeyNotFoundError(APIKeyError):
    """No API key was found in any configured source."""


class APIKeyInvalidError(APIKeyError):
    """API key failed local format checks.

    This does not mean the provider rejected the key, only that it is the
    wrong length or contains whitespace.
    """


# =============================================================================
# Enums
# =============================================================================


class AIMode(str, Enum):
    """Whether the assistant may call the text-completion provider.

    Attributes:
        DISABLED: No provider calls. Analysis and greetings still work.
        ENABLED: Provider calls allowed; failures surface as errors.
        FALLBACK_ONLY: Provider calls allowed; when one fails the assistant
            replies with a local follow-up question instead of an error.
    """

    DISABLED = "disabled"
    ENABLED = "enabled"
    FALLBACK_ONLY = "fallback_only"


class KeySource(str, Enum):
    """Where the API key was found, or where to store it."""

    ENVIRONMENT = "environment"
    KEYRING = "keyring"
    ENCRYPTED_FILE = "encrypted_file"
    NONE = "none"


# =============================================================================
# Configuration Models
# =============================================================================


class AIConfig(BaseModel):
    """Text-completion and transcription provider settings.

    Attributes:
        mode: Provider activation mode.
        model_name: Gemini model used for chat and story revisions.
        transcription_model: Gemini model used for audio transcription.
        temperature: Sampling temperature (0 deterministic, 2 creative).
        max_output_tokens: Maximum tokens in one response.
        timeout_seconds: Per-request timeout passed to the SDK.
        max_retries: Retry attempts for transient failures.
        retry_base_delay: Base delay for exponential backoff, in seconds.

    Example:
        >>> AIConfig(mode=AIMode.DISABLED).is_enabled()
        False
    """

    mode: AIMode = Field(default=AIMode.ENABLED, description="Provider activation mode.")
    model_name: str = Field(default="gemini-1.5-flash", description="Chat model name.")
    transcription_model: str = Field(
        default="gemini-1.5-flash", description="Model used for audio transcription."
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=1000, ge=16, le=32000)
    timeout_seconds: int = Field(default=60, ge=5, le=600)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0.0, le=10.0)

    def is_enabled(self) -> bool:
        return self.mode != AIMode.DISABLED


class ChatConfig(BaseModel):
    """Chat session and assistant behaviour.

    Attributes:
        debounce_seconds: Quiet period before edited content is re-analyzed.
        min_analysis_length: Content shorter than this is not re-analyzed.
        content_change_threshold: Length change below which content counts
            as unchanged when a session is re-initialized.
        update_window: Number of trailing messages used for story revisions.
        assistant_name: Persona name used in the greeting.
    """

    debounce_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    min_analysis_length: int = Field(default=50, ge=0)
    content_change_threshold: int = Field(default=100, ge=0)
    update_window: int = Field(default=5, ge=1, le=50)
    assistant_name: str = Field(default="Muse", min_length=1)


class ContextConfig(BaseModel):
    cache_ttl_seconds: float = Field(
        default=300.0, ge=0.0, description="Context cache freshness window."
    )


class StorageConfig(BaseModel):
    backend: Literal["json", "memory"] = Field(
        default="json", description="Document store used by the CLI."
    )


class PathsConfig(BaseModel):
    """Filesystem locations.

    Attributes:
        config_dir: Base directory. Default ``~/.memoir``.
        data_dir: Document store directory. Default ``config_dir/data``.
        log_dir: Log directory. Default ``config_dir/logs``.
        encrypted_key_file: Encrypted API key. Default ``config_dir/.api_key.enc``.
    """

    config_dir: Path = Field(default_factory=lambda: Path.home() / ".memoir")
    data_dir: Path | None = None
    log_dir: Path | None = None
    encrypted_key_file: Path | None = None

    @field_validator("config_dir", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Any:
        """Expand ~ and resolve the base directory."""
        if isinstance(v, (str, Path)):
            return Path(v).expanduser().resolve()
        return v

    @model_validator(mode="after")
    def resolve_defaults(self) -> "PathsConfig":
        """Derive unset paths from config_dir."""
        defaults = {
            "data_dir": self.config_dir / "data",
            "log_dir": self.config_dir / "logs",
            "encrypted_key_file": self.config_dir / ".api_key.enc",
        }
        for name, default in defaults.items():
            value = getattr(self, name)
            resolved = default if value is None else Path(value).expanduser().resolve()
            object.__setattr__(self, name, resolved)
        return self


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Example:
        >>> config = AppConfig()
        >>> config.chat.update_window
        5
    """

    ai: AIConfig = Field(default_factory=AIConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    debug: bool = Field(default=False, description="Enable debug logging.")
    verbose: bool = Field(default=False, description="Enable verbose console output.")

    model_config = {
        "env_prefix": "MEMOIR_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def is_ai_available(self) -> bool:
        """Return True when AI is enabled and an API key can be found."""
        if not self.ai.is_enabled():
            return False
        try:
            return APIKeyManager(paths_config=self.paths).get_key() is not None
        except Exception:
            return False


# =============================================================================
# API Key Management
# =============================================================================


class APIKeyManager:
    """Finds and stores the Gemini API key.

    Sources are tried in order: environment variable, system keyring,
    encrypted file. The key is wrapped in SecretStr and cached after the first
    successful lookup. The key value never appears in logs or exception
    messages.

    Example:
        >>> manager = APIKeyManager()
        >>> key = manager.get_key()
        >>> manager.get_key_source()
        <KeySource.ENVIRONMENT: 'environment'>
    """

    KEYRING_SERVICE = "memoir-ai"
    KEYRING_USERNAME = "gemini"
    ENV_VAR_NAME = "GEMINI_API_KEY"
    KDF_SALT = b"memoir-ai-key-salt-v1"

    def __init__(self, paths_config: PathsConfig | None = None) -> None:
        self._paths_config = paths_config or PathsConfig()
        self._cached_key: SecretStr | None = None
        self._key_source: KeySource = KeySource.NONE

    def get_key(self) -> SecretStr | None:
        """Return the first valid key found, or None."""
        if self._cached_key is not None:
            return self._cached_key

        readers = (
            (KeySource.ENVIRONMENT, self._read_from_environment),
            (KeySource.KEYRING, self._read_from_keyring),
            (KeySource.ENCRYPTED_FILE, self._read_from_encrypted_file),
        )
        for source, reader in readers:
            key = reader()
            if key and self.validate_key_format(key):
                self._cached_key = SecretStr(key)
                self._key_source = source
                logger.debug(f"API key loaded from {source.value}")
                return self._cached_key

        self._key_source = KeySource.NONE
        logger.debug("No API key found in any source")
        return None

    def get_key_source(self) -> KeySource:
        return self._key_source

    def store_key(self, key: str, destination: KeySource) -> bool:
        """Store a key in the keyring or the encrypted file.

        Raises:
            APIKeyInvalidError: If the key fails format checks.
            ConfigError: If the destination cannot hold a key or the write fails.
        """
        key = key.strip()
        if not self.validate_key_format(key):
            raise APIKeyInvalidError(
                "API key format validation failed. Key must be 20-100 characters with no whitespace."
            )

        if destination == KeySource.KEYRING:
            try:
                keyring.set_password(self.KEYRING_SERVICE, self.KEYRING_USERNAME, key)
            except keyring.errors.KeyringError as e:
                raise ConfigError(f"Failed to store key in keyring: {type(e).__name__}") from e
        elif destination == KeySource.ENCRYPTED_FILE:
            try:
                self._encrypt_to_file(key, self._paths_config.encrypted_key_file)
            except OSError as e:
                raise ConfigError(f"Failed to store key in encrypted file: {type(e).__name__}") from e
        else:
            raise ConfigError(
                f"Cannot store API key in {destination.value}. "
                f"Set {self.ENV_VAR_NAME} manually for environment use."
            )

        self._cached_key = None
        self._key_source = KeySource.NONE
        logger.info(f"API key stored in {destination.value}")
        return True

    def delete_key(self, source: KeySource) -> bool:
        """Remove the key from the keyring or the encrypted file.

        Deleting a key that does not exist succeeds.
        """
        if source == KeySource.KEYRING:
            try:
                keyring.delete_password(self.KEYRING_SERVICE, self.KEYRING_USERNAME)
            except keyring.errors.PasswordDeleteError:
                return True
            except keyring.errors.KeyringError as e:
                raise ConfigError(f"Failed to delete key from keyring: {type(e).__name__}") from e
        elif source == KeySource.ENCRYPTED_FILE:
            path = self._paths_config.encrypted_key_file
            if path is not None:
                path.unlink(missing_ok=True)
        else:
            raise ConfigError(f"Cannot delete API key from {source.value}")

        self._cached_key = None
        self._key_source = KeySource.NONE
        return True

    @staticmethod
    def validate_key_format(key: str) -> bool:
        """Check length (20-100) and absence of whitespace, without an API call."""
        if not key:
            return False
        key = key.strip()
        return 20 <= len(key) <= 100 and not any(c.isspace() for c in key)

    def _read_from_environment(self) -> str | None:
        key = os.environ.get(self.ENV_VAR_NAME)
        return key.strip() if key else None

    def _read_from_keyring(self) -> str | None:
        try:
            return keyring.get_password(self.KEYRING_SERVICE, self.KEYRING_USERNAME)
        except keyring.errors.KeyringError as e:
            logger.debug(f"Keyring access failed: {type(e).__name__}")
            return None

    def _read_from_encrypted_file(self) -> str | None:
        path = self._paths_config.encrypted_key_file
        if path is None or not path.exists():
            return None
        try:
            fernet = Fernet(self._derive_encryption_key())
            return fernet.decrypt(path.read_bytes()).decode("utf-8")
        except InvalidToken:
            logger.warning("Failed to decrypt API key file; it may come from another machine")
            return None
        except OSError as e:
            logger.warning(f"Failed to read encrypted key file: {type(e).__name__}")
            return None

    def _encrypt_to_file(self, key: str, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fernet = Fernet(self._derive_encryption_key())
        path.write_bytes(fernet.encrypt(key.encode("utf-8")))
        if platform.system() != "Windows":
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)

    def _derive_encryption_key(self) -> bytes:
        """Derive a Fernet key bound to this machine.

        Files encrypted on one machine cannot be decrypted on another.
        """
        machine_data = [platform.node(), platform.machine(), platform.system()]
        machine_id = Path("/etc/machine-id")
        if machine_id.exists():
            try:
                machine_data.append(machine_id.read_text().strip())
            except OSError:
                pass

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.KDF_SALT,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive("|".join(machine_data).encode("utf-8")))


# =============================================================================
# Module-Level Functions
# =============================================================================

DEFAULT_CONFIG_PATHS: tuple[Path, ...] = (
    Path("./memoir.yaml"),
    Path("./memoir.yml"),
    Path.home() / ".memoir" / "config.yaml",
)


def _read_config_file(path: Path | None) -> dict[str, Any]:
    candidates = [path] if path is not None else list(DEFAULT_CONFIG_PATHS)
    config_file = next((p for p in candidates if p is not None and p.exists()), None)
    if config_file is None:
        return {}

    try:
        loaded = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse config file {config_file}: {e}. Using defaults.")
        return {}
    except OSError as e:
        logger.warning(f"Failed to read config file {config_file}: {type(e).__name__}. Using defaults.")
        return {}

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        logger.warning(f"Config file {config_file} has unexpected format. Using defaults.")
        return {}
    return loaded


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from environment, file and defaults.

    A missing file is not an error. A malformed file, or invalid values in it,
    are logged and the defaults used instead.

    Args:
        path: Explicit config file. If None, the default locations are searched.

    Returns:
        Fully populated AppConfig.
    """
    file_data = _read_config_file(path)
    env_keys = {name.upper() for name in os.environ if name.upper().startswith("MEMOIR_")}

    # Init kwargs outrank env vars in pydantic-settings, so file values that
    # the environment also sets are dropped before construction.
    file_values: dict[str, Any] = {}
    for section, values in file_data.items():
        if section not in AppConfig.model_fields:
            continue
        prefix = f"MEMOIR_{section.upper()}"
        if prefix in env_keys:
            continue
        if isinstance(values, dict):
            file_values[section] = {
                key: value
                for key, value in values.items()
                if f"{prefix}__{str(key).upper()}" not in env_keys
            }
        else:
            file_values[section] = values

    try:
        return AppConfig(**file_values)
    except (ValueError, TypeError) as e:
        logger.warning(f"Error parsing config values: {e}. Using defaults.")
        return AppConfig()


@functools.lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Return the cached configuration."""
    return load_config()


def get_api_key(config: AppConfig | None = None) -> SecretStr:
    """Return the Gemini API key.

    Raises:
        APIKeyNotFoundError: If no source holds a valid key.
    """
    config = config or get_config()
    key = APIKeyManager(paths_config=config.paths).get_key()
    if key is None:
        raise APIKeyNotFoundError(
            "No API key found. Set GEMINI_API_KEY, or run 'memoir config set-key'."
        )
    return key


def reset_config() -> None:
    """Clear the configuration cache (used by tests)."""
    get_config.cache_clear()
