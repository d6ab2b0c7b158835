"""
chatdesk settings: config/app.yaml overlaid with the environment.
String values may reference ${VAR} or ${VAR:default}.
"""
import dataclasses
import os
import re
import typing
import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv

load_dotenv()

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


def _resolve_env(value: Any) -> Any:
    if isinstance(value, str):
        def replacer(m):
            var, default = m.group(1), m.group(2)
            return os.environ.get(var, default if default is not None else "")
        resolved = _ENV_PATTERN.sub(replacer, value)
        if resolved.isdigit():
            return int(resolved)
        if resolved.replace(".", "", 1).isdigit():
            return float(resolved)
        if resolved.lower() in ("true", "false"):
            return resolved.lower() == "true"
        return resolved
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    return value


def _env(*names: str, default: str = "") -> str:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return default


@dataclass
class AppConfig:
    name: str = "Chatdesk"
    version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8080
    env: str = "production"
    log_level: str = "INFO"
    json_logs: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class AuthConfig:
    jwt_secret: str = field(default_factory=lambda: _env("JWT_SECRET", default="dev_secret_key_change_in_prod"))
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 7 * 24 * 60
    bcrypt_rounds: int = 10
    min_password_length: int = 6
    # OAuth client id that Google ID tokens must be issued for; empty disables Google sign-in
    google_client_id: str = field(default_factory=lambda: _env("GOOGLE_CLIENT_ID"))


@dataclass
class DatabaseConfig:
    url: str = field(default_factory=lambda: _env("DATABASE_URL", default="sqlite+aiosqlite:///./data/chatdesk.db"))
    echo: bool = False


@dataclass
class GeminiConfig:
    api_key: str = field(default_factory=lambda: _env("GEMINI_API_KEY", "API_KEY"))
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    chat_model: str = "gemini-2.5-flash"
    vision_model: str = "gemini-2.5-flash"
    max_output_tokens: int = 8192
    thinking_budget: int = 1024
    timeout_seconds: int = 120
    enable_search: bool = False


@dataclass
class OpenAIConfig:
    api_key: str = field(default_factory=lambda: _env("OPENAI_API_KEY"))
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: int = 120


@dataclass
class DeepSeekConfig:
    api_key: str = field(default_factory=lambda: _env("DEEPSEEK_API_KEY"))
    base_url: str = "https://api.deepseek.com/v1"
    timeout_seconds: int = 120


@dataclass
class RoutingConfig:
    # Checked in order; first matching prefix wins.
    prefixes: Dict[str, str] = field(default_factory=lambda: {
        "gemini-": "gemini",
        "gpt-": "openai",
        "o1": "openai",
        "o3": "openai",
        "o4": "openai",
        "deepseek-": "deepseek",
    })
    default_provider: str = "gemini"


@dataclass
class ChatConfig:
    system_instruction: str = (
        "Você é um assistente de IA prestativo e amigável. Responda em português do Brasil "
        "e formate as respostas usando Markdown."
    )
    title_instruction: str = (
        "Você é um assistente especializado em criar títulos concisos e relevantes para "
        "conversas. Sua única tarefa é fornecer o título solicitado, sem nenhum texto adicional."
    )
    default_title: str = "Nova Conversa"
    fallback_title: str = "Conversa"
    interrupted_text: str = "Essa mensagem foi interrompida"
    error_text: str = "Desculpe, encontrei um erro. Por favor, tente novamente."
    cancel_on_navigate: bool = False
    # one <owner>.json per browser in the web UI
    history_dir: str = "./data/history"


@dataclass
class EndpointLimitsConfig:
    auth_login: str = "10/minute"
    auth_register: str = "5/hour"
    chat: str = "30/minute"


@dataclass
class RateLimitConfig:
    enabled: bool = True
    storage: str = "memory"
    redis_url: str = field(default_factory=lambda: _env("REDIS_URL"))
    default_limit: str = "200/minute"
    endpoints: EndpointLimitsConfig = field(default_factory=EndpointLimitsConfig)


@dataclass
class UIConfig:
    enabled: bool = True
    theme: str = "dark"
    title: str = "Chatdesk"
    sidebar_width: int = 280
    storage_secret: str = field(default_factory=lambda: _env("UI_STORAGE_SECRET", default="chatdesk-ui"))


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    deepseek: DeepSeekConfig = field(default_factory=DeepSeekConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    ui: UIConfig = field(default_factory=UIConfig)


def _dict_to_dataclass(cls, data: Dict[str, Any]):
    """Recursively convert a dict to nested dataclasses, ignoring unknown keys."""
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        ft = hints.get(f.name)
        if dataclasses.is_dataclass(ft) and isinstance(value, dict):
            value = _dict_to_dataclass(ft, value)
        kwargs[f.name] = value
    return cls(**kwargs)


_CONFIG: Optional[Config] = None


def load_config(config_path: Optional[str] = None) -> Config:
    """Read the YAML file (first existing candidate) and cache the result."""
    global _CONFIG
    if _CONFIG is not None:
        return _CONFIG

    if config_path is None:
        config_path = os.environ.get("CHATDESK_CONFIG")
    if config_path is None:
        candidates = [
            Path("config/app.yaml"),
            Path(__file__).parent.parent.parent / "config" / "app.yaml",
            Path.home() / ".chatdesk" / "app.yaml",
        ]
        for c in candidates:
            if c.exists():
                config_path = str(c)
                break

    raw = {}
    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _CONFIG = _dict_to_dataclass(Config, _resolve_env(raw))
    return _CONFIG


def get_config() -> Config:
    """The active Config, loaded on first use."""
    if _CONFIG is None:
        return load_config()
    return _CONFIG


def set_config(cfg: Config) -> None:
    """Replace the cached config (used by tests and embedding applications)."""
    global _CONFIG
    _CONFIG = cfg


def reset_config() -> None:
    global _CONFIG
    _CONFIG = None
