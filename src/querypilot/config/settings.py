#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
from pydantic import (
    Field,
    HttpUrl,
    AfterValidator,
    BaseModel,
    ConfigDict,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Union, Annotated, Self, List, Dict, Any
from enum import auto, StrEnum
from pathlib import Path
from yaml import safe_load, add_representer, dump
from contextvars import ContextVar
from os import environ
from importlib.util import find_spec

DEFAULT_SYNONYMS = [
    ["customer", "customers", "client", "clients", "account", "accounts", "user", "users", "member", "members", "profile", "profiles", "buyer", "buyers"],
    ["order", "orders", "purchase", "purchases", "transaction", "transactions", "sale", "sales"],
    ["product", "products", "item", "items", "sku", "skus", "goods", "inventory", "catalog"],
    ["payment", "payments", "invoice", "invoices", "billing", "charge", "charges"],
    ["employee", "employees", "staff", "worker", "workers", "personnel"],
    ["event", "events", "log", "logs", "activity", "activities"],
    ["review", "reviews", "rating", "ratings", "feedback"],
]


def _resolve_token_file(key: Optional[str]) -> Optional[str]:
    if key is None:
        return None
    return (
        Path(key[1:]).expanduser().read_text().strip() if key.startswith("@") else key
    )


def _strip_uri(uri: Optional[Union[str, HttpUrl]]) -> Optional[str]:
    return str(uri).rstrip("/") if uri is not None else None


class Model(StrEnum):
    ollama = auto()
    openai = auto()


class ResolverWeights(BaseModel):
    """Relative weights of the target scoring components"""

    substring: float = Field(default=0.45, ge=0)
    overlap: float = Field(default=0.30, ge=0)
    synonym: float = Field(default=0.20, ge=0)
    recency: float = Field(default=0.05, ge=0)
    model_config = ConfigDict(validate_assignment=True)


class Resolver(BaseModel):
    min_confidence: float = Field(
        default=25.0,
        ge=0,
        le=100,
        description="Top candidates scoring below this are reported as ambiguous",
    )
    alternative_delta: float = Field(
        default=15.0,
        ge=0,
        description="Candidates within this many points of the top are alternatives",
    )
    max_alternatives: int = Field(default=3, ge=0, le=3)
    fuzzy_threshold: float = Field(default=0.85, ge=0, le=1)
    weights: ResolverWeights = Field(default_factory=ResolverWeights)
    synonyms: List[List[str]] = Field(default_factory=lambda: DEFAULT_SYNONYMS)
    stopwords: List[str] = Field(default_factory=list)
    recent_window: int = Field(
        default=10, ge=0, description="How many recent executions count for recency"
    )
    model_config = ConfigDict(validate_assignment=True)


class Catalog(BaseModel):
    ttl_seconds: float = Field(default=3600.0, gt=0)
    model_config = ConfigDict(validate_assignment=True)


class Llm(BaseModel):
    provider: Optional[Model] = Model.openai
    model: Optional[str] = Field(default="gpt-4o-mini")
    api_key: Annotated[Optional[str], AfterValidator(_resolve_token_file)] = None
    base_url: Annotated[Optional[str], AfterValidator(_strip_uri)] = None
    org: Optional[str] = Field(default=None)
    temperature: float = Field(default=0.0, ge=0, le=2)
    max_tokens: int = Field(default=1000, gt=0)
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(
        default=1, ge=0, le=1, description="Retries on transient model failures"
    )
    context_turns: int = Field(
        default=4, ge=0, description="Prior conversation turns sent with a question"
    )
    model_config = ConfigDict(validate_assignment=True)

    @property
    def endpoint(self) -> str:
        if self.base_url:
            return self.base_url
        match self.provider:
            case Model.ollama:
                return "http://localhost:11434"
        return "https://api.openai.com/v1"


class SafetyWeights(BaseModel):
    """Maximum contribution of each cost factor to the 0..1 cost score"""

    unindexed_filter: float = Field(default=0.3, ge=0)
    missing_limit: float = Field(default=0.8, ge=0)
    aggregation_stage: float = Field(default=0.2, ge=0)
    join: float = Field(default=0.15, ge=0)
    model_config = ConfigDict(validate_assignment=True)


class Safety(BaseModel):
    large_table_threshold: int = Field(default=100_000, ge=0)
    cardinality_ceiling: int = Field(default=10_000_000, gt=1)
    confirmation_threshold: float = Field(default=0.7, ge=0, le=1)
    max_pipeline_stages: int = Field(default=10, gt=0)
    weights: SafetyWeights = Field(default_factory=SafetyWeights)
    model_config = ConfigDict(validate_assignment=True)


class Execution(BaseModel):
    preview_rows: int = Field(default=5, gt=0)
    max_rows: int = Field(default=10_000, gt=0)
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_concurrent_per_connection: int = Field(default=4, gt=0)
    stored_preview_rows: int = Field(default=50, ge=0)
    result_cache_ttl_seconds: float = Field(default=1800.0, ge=0)
    allow_dml: Optional[bool] = False
    mask_sensitive_columns: Optional[bool] = True
    sensitive_columns: List[str] = Field(
        default_factory=lambda: [
            "password",
            "ssn",
            "credit_card",
            "api_key",
            "secret",
            "token",
        ]
    )
    model_config = ConfigDict(validate_assignment=True)

    @field_validator("sensitive_columns")
    @classmethod
    def _lower(cls, v: List[str]) -> List[str]:
        return [c.lower() for c in v]


class History(BaseModel):
    retention_seconds: float = Field(default=86_400.0, gt=0)
    default_page_size: int = Field(default=50, gt=0, le=500)
    model_config = ConfigDict(validate_assignment=True)


class Settings(BaseSettings):
    resolver: Optional[Resolver] = Field(default_factory=Resolver)
    catalog: Optional[Catalog] = Field(default_factory=Catalog)
    llm: Optional[Llm] = Field(default_factory=Llm)
    safety: Optional[Safety] = Field(default_factory=Safety)
    execution: Optional[Execution] = Field(default_factory=Execution)
    history: Optional[History] = Field(default_factory=History)
    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="QUERYPILOT_",
        extra="ignore",
        use_enum_values=True,
    )

    def with_overrides(self, overrides: Dict[str, Any]) -> Self:
        def set_values(aparts: List[str], value: Any, obj: Any):
            if len(aparts) == 1 and hasattr(obj, aparts[0]):
                setattr(obj, aparts[0], value)
            elif hasattr(obj, aparts[0]):
                set_values(aparts[1:], value, getattr(obj, aparts[0]))

        for aparts, value in [
            (attr.split("."), value)
            for attr, value in overrides.items()
            if value is not None
        ]:
            set_values(aparts, value, self)

        return self


_settings: ContextVar[Settings] = ContextVar("settings", default=None)


# the default config is ~/.config/querypilot/config.yaml, use it if it exists
def default_config() -> Path:
    _top = "querypilot"
    if (_spec := find_spec(__name__)) and _spec.name:
        _top = _spec.name.split(".")[0]
    return (
        Path(environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        / _top
        / "config.yaml"
    )


# configures the settings using the given config file and overwrites the current
# settings instance if force is True
def configure(cfg: Union[str, Path] = None, force=False) -> ContextVar[Settings]:
    global _settings
    if force and isinstance(_settings.get(), Settings):
        old = _settings.get()
        try:
            _settings.set(None)
            configure(cfg, force=False)
        except Exception:
            # keep the old settings if the new ones do not validate
            _settings.set(old)
            raise
        return _settings

    if isinstance(cfg, str):
        cfg = Path(cfg)

    if cfg is None:
        cfg = default_config()

    if not cfg.exists():
        cfg.parent.mkdir(parents=True, exist_ok=True)
        cfg.touch()

    with cfg.open() as f:
        s = safe_load(f)
        _settings.set(Settings.model_validate(s if s else {}))

    return _settings


# Get the current settings instance if one has been configured. If not try
# to configure it using the default config file. If that fails, create a new
# settings instance from defaults and environment.
def instance() -> Settings:
    global _settings
    if not isinstance(_settings.get(), Settings):
        try:
            configure()
        except (FileNotFoundError, PermissionError):
            _settings.set(Settings())
    return _settings.get()


def write_settings(
    cfg: Path = None, inst: Settings = None, dry_run: bool = False
) -> str | None:
    if cfg is None:
        cfg = default_config()

    if not isinstance(inst, Settings):
        inst = instance()

    d = inst.model_dump(
        exclude_none=True, mode="json", exclude_unset=True, by_alias=True
    )
    add_representer(
        str,
        lambda dumper, data: dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style=('"' if "@" in data else None)
        ),
    )
    if dry_run:
        return dump(d)

    if not cfg.exists() or not cfg.parent.exists():
        cfg.parent.mkdir(parents=True, exist_ok=True)

    with cfg.open("w") as f:
        dump(d, f)
