import os
from dataclasses import dataclass, field
from typing import Dict

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised on Python < 3.11
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError

MODEL_TYPES: tuple[str, ...] = ("basic", "local", "openai", "gemini", "xai")

DEFAULT_CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config")


def parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def config_dir_from_env() -> str:
    return os.environ.get("LIGHTUP_CONFIG_DIR", DEFAULT_CONFIG_DIR)


@dataclass
class ProviderDef:
    name: str
    type: str
    base_url: str
    model: str
    timeout: float = 60.0
    chunk_words: int = 20
    chunk_delay_ms: float = 5.0


@dataclass(frozen=True)
class RateLimitSettings:
    requests_per_minute: int = 60
    requests_per_hour: int = 1000
    sweep_interval_s: float = 300.0


@dataclass(frozen=True)
class GatewayDefaults:
    max_tokens: int = 2048
    temperature: float = 0.5


@dataclass
class GatewayConfig:
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    batch_interval_ms: float = 5.0
    defaults: GatewayDefaults = field(default_factory=GatewayDefaults)
    metrics_dir: str | None = None


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    gateway: GatewayConfig
    config_dir: str | None = None


class _RateLimitModel(BaseModel):
    requests_per_minute: PositiveInt = Field(default=60)
    requests_per_hour: PositiveInt = Field(default=1000)
    sweep_interval_s: PositiveFloat = Field(default=300.0)

    model_config = ConfigDict(extra="forbid")


class _BatchingModel(BaseModel):
    interval_ms: float = Field(default=5.0, ge=0)

    model_config = ConfigDict(extra="forbid")


class _DefaultsModel(BaseModel):
    max_tokens: PositiveInt = Field(default=2048)
    temperature: float = Field(default=0.5, ge=0, le=2)

    model_config = ConfigDict(extra="forbid")


class _GatewayModel(BaseModel):
    rate_limit: _RateLimitModel = Field(default_factory=_RateLimitModel)
    batching: _BatchingModel = Field(default_factory=_BatchingModel)
    defaults: _DefaultsModel = Field(default_factory=_DefaultsModel)
    metrics_dir: str | None = None

    model_config = ConfigDict(extra="forbid")


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def _read_positive_int(name: str, key: str, raw_value: object) -> int:
    value = int(raw_value)
    if value < 1:
        raise ValueError(
            "Provider '{name}' defines invalid {key} {value}; must be >= 1.".format(
                name=name,
                key=key,
                value=value,
            )
        )
    return value


def parse_providers(prov_data: dict) -> Dict[str, ProviderDef]:
    providers: Dict[str, ProviderDef] = {}
    for name, d in prov_data.items():
        if name not in MODEL_TYPES:
            raise ValueError(
                "Unknown model type '{name}' in providers configuration. Expected one of: {expected}".format(
                    name=name,
                    expected=", ".join(MODEL_TYPES),
                )
            )
        providers[name] = ProviderDef(
            name=name,
            type=d.get("type", name),
            base_url=d.get("base_url", ""),
            model=d.get("model", ""),
            timeout=float(d.get("timeout", 60.0)),
            chunk_words=_read_positive_int(name, "chunk_words", d.get("chunk_words", 20)),
            chunk_delay_ms=float(d.get("chunk_delay_ms", 5.0)),
        )
    return providers


def parse_gateway(gdata: dict | None) -> GatewayConfig:
    try:
        parsed = _GatewayModel.model_validate(gdata or {})
    except ValidationError as exc:
        raise ValueError(_format_validation_error(exc)) from exc
    return GatewayConfig(
        rate_limit=RateLimitSettings(
            requests_per_minute=int(parsed.rate_limit.requests_per_minute),
            requests_per_hour=int(parsed.rate_limit.requests_per_hour),
            sweep_interval_s=float(parsed.rate_limit.sweep_interval_s),
        ),
        batch_interval_ms=float(parsed.batching.interval_ms),
        defaults=GatewayDefaults(
            max_tokens=int(parsed.defaults.max_tokens),
            temperature=float(parsed.defaults.temperature),
        ),
        metrics_dir=parsed.metrics_dir,
    )


def load_config(config_dir: str) -> LoadedConfig:
    prov_path = os.path.join(config_dir, "providers.toml")
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers = parse_providers(prov_data)
    gateway_path = os.path.join(config_dir, "gateway.yaml")
    gdata: dict | None = None
    if os.path.exists(gateway_path):
        with open(gateway_path, "r", encoding="utf-8") as f:
            gdata = yaml.safe_load(f) or {}
    gateway = parse_gateway(gdata)
    if gateway.metrics_dir and not os.path.isabs(gateway.metrics_dir):
        gateway.metrics_dir = os.path.join(config_dir, gateway.metrics_dir)
    return LoadedConfig(providers=providers, gateway=gateway, config_dir=config_dir)
