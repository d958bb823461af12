# config.py
# Description: Application settings model and the JSON settings store.
#
# Imports
import base64
import json
import os
import sys
from pathlib import Path
from typing import Optional
#
# 3rd-party Libraries
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError
#
########################################################################################################################
#
# Constants:

APP_DIR_NAME = "VisionGrabber"
SETTINGS_FILE_NAME = "settings.json"
SECRET_KEY_FILE_NAME = "secret.key"
HOME_ENV_VAR = "VISIONGRABBER_HOME"
API_KEY_ENV_VAR = "GEMINI_API_KEY"

DEFAULT_PROMPT = (
    "OCR this image. Format inline equations with single $ signs and display equations with double $$ signs. "
    "Use HTML for tables. Return only the content."
)

_ENV_LOADED = False


def _load_env_files_early() -> None:
    """Load .env files once, before any environment reads.

    override=False keeps explicit environment variables in place.
    """
    global _ENV_LOADED
    if _ENV_LOADED:
        return
    _ENV_LOADED = True
    for candidate in (Path.cwd() / ".env", get_app_dir(create=False) / ".env"):
        try:
            if candidate.is_file():
                load_dotenv(candidate, override=False)
                logger.debug(f"Loaded environment from {candidate}")
        except OSError as e:
            logger.warning(f"Could not read {candidate}: {e}")


def get_app_dir(create: bool = True) -> Path:
    """Return the per-user directory holding settings, history and logs."""
    override = os.getenv(HOME_ENV_VAR)
    if override:
        base = Path(override).expanduser()
    elif sys.platform == "win32":
        base = Path(os.getenv("APPDATA") or Path.home() / "AppData" / "Roaming") / APP_DIR_NAME
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    else:
        base = Path(os.getenv("XDG_CONFIG_HOME") or Path.home() / ".config") / APP_DIR_NAME
    if create:
        base.mkdir(parents=True, exist_ok=True)
    return base


class AppSettings(BaseModel):
    """Application configuration.

    Field names match the keys of the persisted settings file. Ports are kept
    as strings because they are edited as free text and validated where used.
    """

    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    # "Local", "Gemini", "Remote" or "Relay"
    DefaultBackend: str = "Gemini"

    # Local llama-server
    LocalLlamaPath: str = ""
    LocalModelPath: str = ""
    LocalMmprojPath: str = ""
    LocalLlamaPort: str = "8081"
    LocalContextSize: str = "2048"
    StartLlamaOnStartup: bool = False

    # Cloud
    CloudModelId: str = "gemini-2.0-flash-lite"
    CloudApiKey: str = ""

    # Remote llama-server
    RemoteLlamaAddress: str = "http://127.0.0.1:8081"

    # Relay
    RelayServerEnabled: bool = False
    RelayServerPort: str = "8082"
    DisplayRelayResults: bool = True
    RelayClientAddress: str = "http://127.0.0.1:8082"

    IsConfigured: bool = False

    # Hotkey, consumed by the desktop shell
    ShortcutKey: str = "T"
    ShortcutAlt: bool = True
    ShortcutShift: bool = True
    ShortcutCtrl: bool = False
    ShortcutWin: bool = False

    CustomPrompt: str = DEFAULT_PROMPT


class SecretBox:
    """AES-GCM protection for secrets stored in the settings file.

    The key lives in a per-install file next to the settings, readable only by
    the current user.
    """

    def __init__(self, key_path: Path):
        self.key_path = Path(key_path)
        self._key: Optional[bytes] = None

    def _load_key(self) -> bytes:
        if self._key is not None:
            return self._key
        if self.key_path.is_file():
            self._key = base64.b64decode(self.key_path.read_bytes())
        else:
            self.key_path.parent.mkdir(parents=True, exist_ok=True)
            key = AESGCM.generate_key(bit_length=256)
            self.key_path.write_bytes(base64.b64encode(key))
            try:
                os.chmod(self.key_path, 0o600)
            except OSError:
                pass
            self._key = key
        return self._key

    def protect(self, clear_text: str) -> str:
        nonce = os.urandom(12)
        ct = AESGCM(self._load_key()).encrypt(nonce, clear_text.encode("utf-8"), associated_data=None)
        return base64.b64encode(nonce + ct).decode("ascii")

    def unprotect(self, protected_text: str) -> str:
        raw = base64.b64decode(protected_text)
        nonce, ct = raw[:12], raw[12:]
        return AESGCM(self._load_key()).decrypt(nonce, ct, associated_data=None).decode("utf-8")


class SettingsManager:
    """Loads and saves ``AppSettings`` as JSON.

    ``current`` always holds a usable settings object; a missing or corrupt
    file yields defaults.
    """

    def __init__(self, path: Optional[Path] = None, secret_box: Optional[SecretBox] = None):
        self.path = Path(path) if path else get_app_dir() / SETTINGS_FILE_NAME
        self.secret_box = secret_box or SecretBox(self.path.parent / SECRET_KEY_FILE_NAME)
        self.current = AppSettings()

    def load(self) -> AppSettings:
        _load_env_files_early()
        settings = AppSettings()
        if self.path.is_file():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                settings = AppSettings.model_validate(data)
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Settings file {self.path} is unreadable, using defaults: {e}")
                settings = AppSettings()
            else:
                if settings.CloudApiKey:
                    try:
                        settings.CloudApiKey = self.secret_box.unprotect(settings.CloudApiKey)
                    except (InvalidTag, ValueError, OSError) as e:
                        # Written by another install or user
                        logger.warning(f"Stored API key could not be decrypted and was reset: {e}")
                        settings.CloudApiKey = ""

        env_key = os.getenv(API_KEY_ENV_VAR)
        if env_key and not settings.CloudApiKey:
            settings.CloudApiKey = env_key

        self.current = settings
        return settings

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Serialize a copy so the in-memory key stays in clear text
        to_save = self.current.model_copy()
        if self.current.CloudApiKey:
            to_save.CloudApiKey = self.secret_box.protect(self.current.CloudApiKey)
        self.path.write_text(json.dumps(to_save.model_dump(), indent=2), encoding="utf-8")
        logger.debug(f"Settings saved to {self.path}")

    def update(self, **changes) -> AppSettings:
        """Apply field changes through validation and persist them."""
        for key, value in changes.items():
            if key not in AppSettings.model_fields:
                raise KeyError(f"Unknown setting: {key}")
            setattr(self.current, key, value)
        self.save()
        return self.current

#
# End of config.py
########################################################################################################################
