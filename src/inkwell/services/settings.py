"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.client import ANTHROPIC_MIN_THINKING_BUDGET, ClientSettings
from ..ai.orchestration.budget import BudgetConfig

__all__ = [
    "PROVIDER_CHOICES",
    "Settings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".inkwell"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_API_KEY": "api_key",
    "INKWELL_PROVIDER": "provider",
    "INKWELL_BASE_URL": "base_url",
    "INKWELL_MODEL": "model",
    "INKWELL_BETAS": "betas",
    "INKWELL_SAVE_DIR": "save_dir",
    "INKWELL_LOG_DIR": "log_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_REQUEST_TIMEOUT": "request_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_MAX_RETRIES": "max_retries",
    "INKWELL_CONTEXT_WINDOW": "context_window",
    "INKWELL_THINKING_BUDGET": "thinking_budget_tokens",
    "INKWELL_MAX_THINKING_BUDGET": "max_thinking_budget",
    "INKWELL_DESIRED_OUTPUT_TOKENS": "desired_output_tokens",
    "INKWELL_MIN_VISIBLE_OUTPUT_TOKENS": "minimum_visible_output_tokens",
}
_FALLBACK_KEY_ENV = "ANTHROPIC_API_KEY"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"
PROVIDER_CHOICES: tuple[str, ...] = ("anthropic", "openai")
DEFAULT_SYSTEM_PROMPT = (
    "NO Markdown formatting! Never use headers, bullets, numbering, asterisks, hyphens, "
    "or any formatting symbols. Plain text only."
)


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    provider: str = "anthropic"
    base_url: str | None = None
    api_key: str = ""
    model: str = "claude-3-7-sonnet-20250219"
    betas: str = "output-128k-2025-02-19"
    organization: str | None = None
    request_timeout: float = 300.0
    max_retries: int = 1
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    context_window: int = 200_000
    thinking_budget_tokens: int = 32_000
    max_thinking_budget: int = 32_000
    desired_output_tokens: int = 12_000
    minimum_visible_output_tokens: int = 4_000
    output_token_ceiling: int | None = 128_000
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    save_dir: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    log_dir: str | None = None

    def budget_config(self) -> BudgetConfig:
        """Return the token limits used by the budget calculator."""

        config = BudgetConfig(
            context_window=int(self.context_window),
            desired_output_tokens=int(self.desired_output_tokens),
            configured_thinking_budget=int(self.thinking_budget_tokens),
            max_thinking_budget=int(self.max_thinking_budget),
            minimum_visible_output_tokens=int(self.minimum_visible_output_tokens),
            output_token_ceiling=(
                int(self.output_token_ceiling) if self.output_token_ceiling is not None else None
            ),
        )
        if self.provider == "anthropic":
            _check_anthropic_limits(config)
        return config

    def client_settings(self) -> ClientSettings:
        """Return the connection settings for the configured model client."""

        return ClientSettings(
            api_key=self.api_key,
            model=self.model,
            base_url=self.base_url,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=max(0, int(self.max_retries)),
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            betas=tuple(beta.strip() for beta in (self.betas or "").split(",") if beta.strip()),
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        key_path = self._path.with_suffix(".key")
        self._vault = vault or SecretVault(key_path=key_path)

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def vault(self) -> SecretVault:
        """Return the secret vault managing API key encryption."""

        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            plaintext_key, migrated = self._decrypt_api_key(
                payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None)
            )
            needs_migration = migrated
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if plaintext_key:
                settings = replace(settings, api_key=plaintext_key)

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - read-only settings dir
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        if not settings.api_key:
            fallback_key = os.environ.get(_FALLBACK_KEY_ENV, "").strip()
            if fallback_key:
                settings = replace(settings, api_key=fallback_key)
        if settings.provider not in PROVIDER_CHOICES:
            LOGGER.warning("Unknown provider '%s'; defaulting to anthropic.", settings.provider)
            settings = replace(settings, provider="anthropic")
        LOGGER.debug("Settings loaded from %s (provider=%s, model=%s)", self._path, settings.provider, settings.model)
        return settings

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        ciphertext = self._encrypt_api_key(api_key)
        if ciphertext:
            data[_API_KEY_FIELD] = ciphertext
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            return json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _encrypt_api_key(self, api_key: str) -> str | None:
        if not api_key:
            return None
        try:
            return self._vault.encrypt(api_key)
        except (OSError, ValueError) as exc:  # pragma: no cover - unwritable key file
            LOGGER.warning("Failed to encrypt API key: %s", exc)
            return None

    def _decrypt_api_key(
        self, ciphertext: str | None, legacy_plaintext: str | None
    ) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected plaintext API key; migrating to encrypted storage.")
            return legacy_plaintext, True
        return "", False


class SecretVault:
    """Encrypts and decrypts sensitive strings with a Fernet key stored on disk."""

    prefix = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{self.prefix}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload or prefix != self.prefix:
            raise ValueError(f"Unknown secret token prefix {prefix!r}")
        try:
            raw = self._get_fernet().decrypt(payload.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


def _check_anthropic_limits(config: BudgetConfig) -> None:
    thinking = min(config.configured_thinking_budget, config.max_thinking_budget)
    if thinking <= 0:
        return
    if thinking < ANTHROPIC_MIN_THINKING_BUDGET:
        raise ValueError(
            f"Anthropic thinking budgets must be 0 or at least {ANTHROPIC_MIN_THINKING_BUDGET} tokens, got {thinking}"
        )
    if config.minimum_visible_output_tokens < 1:
        raise ValueError("minimum_visible_output_tokens must be at least 1 when thinking is enabled")


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
