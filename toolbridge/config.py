"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < explicit overrides

Nothing here builds a provider at import time; callers pass a loaded
``BridgeConfig`` to ``provider_from_config``.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import httpx
import yaml

from toolbridge.llm.providers import Provider, create_provider


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderConfig:
    kind: str = "openai"
    model: str = "gpt-4o-mini"
    api_base: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    max_tokens: int = 4_000
    temperature: float | None = None
    timeout_seconds: float = 30.0
    repair_arguments: bool = True
    headers: dict[str, str] = field(default_factory=dict)


def _openai_defaults() -> ProviderConfig:
    return ProviderConfig()


def _openrouter_defaults() -> ProviderConfig:
    return ProviderConfig(
        kind="openrouter",
        model="openai/gpt-4o-mini",
        api_key_env="OPENROUTER_API_KEY",
    )


def _google_defaults() -> ProviderConfig:
    return ProviderConfig(
        kind="gemini",
        model="gemini-2.0-flash",
        api_key_env="GOOGLE_API_KEY",
        temperature=0.7,
    )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

PROVIDER_SECTIONS = ("openai", "openrouter", "google")


@dataclass
class BridgeConfig:
    openai: ProviderConfig = field(default_factory=_openai_defaults)
    openrouter: ProviderConfig = field(default_factory=_openrouter_defaults)
    google: ProviderConfig = field(default_factory=_google_defaults)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    default_provider: str = "openai"
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- explicit overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set an override using dot notation (e.g. 'openrouter.model')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def provider_section(self, name: str) -> ProviderConfig:
        if name not in PROVIDER_SECTIONS:
            raise KeyError(f"No provider section {name!r}")
        return getattr(self, name)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise AttributeError(f"Unknown config key {dotpath!r}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _build_section(default: Any, raw: dict) -> Any:
    """Overlay a raw dict onto a default section, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(default)}
    merged = asdict(default)
    merged.update({k: v for k, v in raw.items() if k in valid_fields})
    return type(default)(**merged)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_PROVIDER_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "KIND":        ("kind", str),
    "MODEL":       ("model", str),
    "API_BASE":    ("api_base", str),
    "API_KEY_ENV": ("api_key_env", str),
    "MAX_TOKENS":  ("max_tokens", int),
    "TEMPERATURE": ("temperature", float),
    "TIMEOUT":     ("timeout_seconds", float),
    "REPAIR":      ("repair_arguments", bool),
}

_ENV_MAP: dict[str, tuple[str, type]] = {
    f"TOOLBRIDGE_{section.upper()}_{suffix}": (f"{section}.{attr}", target)
    for section in PROVIDER_SECTIONS
    for suffix, (attr, target) in _PROVIDER_ENV_FIELDS.items()
}
_ENV_MAP.update({
    "TOOLBRIDGE_DEFAULT_PROVIDER": ("default_provider", str),
    "TOOLBRIDGE_LOG_LEVEL":        ("logging.level", str),
    "TOOLBRIDGE_LOG_JSON":         ("logging.json", bool),
})


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> BridgeConfig:
    """
    Build a BridgeConfig by layering sources in precedence order:

        defaults  <  config file  <  profile  <  env vars  <  overrides

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    overrides : dict of dotpath -> value overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile:
        profile_data = (raw.get("profiles") or {}).get(profile)
        if profile_data is None:
            raise KeyError(f"Unknown config profile {profile!r}")
        raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    defaults = BridgeConfig()
    cfg = BridgeConfig(
        openai=_build_section(defaults.openai, raw.get("openai") or {}),
        openrouter=_build_section(defaults.openrouter, raw.get("openrouter") or {}),
        google=_build_section(defaults.google, raw.get("google") or {}),
        logging=_build_section(defaults.logging, raw.get("logging") or {}),
        default_provider=raw.get("default_provider", defaults.default_provider),
        profiles=raw.get("profiles") or {},
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. Explicit overrides ---
    if overrides:
        for dotpath, value in overrides.items():
            cfg.set_override(dotpath, value)

    return cfg


# ---------------------------------------------------------------------------
# Provider construction
# ---------------------------------------------------------------------------

def provider_from_config(
    cfg: BridgeConfig,
    name: str | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Provider:
    """
    Build the provider described by section *name* (default:
    ``cfg.default_provider``).  The API key is read from the environment
    variable named by ``api_key_env``.
    """
    section = cfg.provider_section(name or cfg.default_provider)
    kwargs: dict[str, Any] = {
        "model": section.model,
        "api_key": os.environ.get(section.api_key_env, "") if section.api_key_env else "",
        "max_tokens": section.max_tokens,
        "temperature": section.temperature,
        "timeout": float(section.timeout_seconds),
        "repair_arguments": section.repair_arguments,
        "transport": transport,
    }
    if section.api_base:
        kwargs["url"] = section.api_base
    if section.headers:
        if section.kind == "gemini":
            raise ValueError("The gemini provider does not accept extra headers")
        kwargs["headers"] = dict(section.headers)
    return create_provider(section.kind, **kwargs)
