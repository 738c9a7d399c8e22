import os
import logging
import yaml
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"

# Client-facing model names -> NVIDIA NIM model ids
DEFAULT_MODEL_MAPPING: Dict[str, str] = {
    "gpt-3.5-turbo": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
    "gpt-4": "qwen/qwen3-235b-a22b",
    "gpt-4-turbo": "deepseek-ai/deepseek-r1-0528",
    "gpt-4o": "deepseek-ai/deepseek-v3",
    "gpt-4o-mini": "meta/llama-3.3-70b-instruct",
    "claude-3-opus": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
    "claude-3-sonnet": "qwen/qwen3-235b-a22b",
    "claude-3-haiku": "deepseek-ai/deepseek-r1-distill-qwen-32b",
    "gemini-pro": "deepseek-ai/deepseek-r1-0528",
}


class ModelCapabilities(BaseModel):
    # Reasons on its own, nothing to add to the request
    native_reasoning: bool = False
    # Needs chat_template_kwargs.enable_thinking
    template_thinking: bool = False
    # Needs the magic system prompt
    system_prompt_thinking: bool = False


DEFAULT_CAPABILITIES: Dict[str, Dict[str, bool]] = {
    "deepseek-ai/deepseek-r1-0528": {"native_reasoning": True},
    "deepseek-ai/deepseek-r1-distill-qwen-32b": {"native_reasoning": True},
    "deepseek-ai/deepseek-r1-distill-qwen-14b": {"native_reasoning": True},
    "deepseek-ai/deepseek-r1-distill-llama-8b": {"native_reasoning": True},
    "qwen/qwen3-235b-a22b": {"template_thinking": True},
    "qwen/qwen3-coder-480b-a35b-instruct": {"template_thinking": True},
    "nvidia/llama-3.1-nemotron-ultra-253b-v1": {"system_prompt_thinking": True},
}


def _default_capabilities() -> Dict[str, ModelCapabilities]:
    return {k: ModelCapabilities(**v) for k, v in DEFAULT_CAPABILITIES.items()}


class AppConfig(BaseModel):
    nim_api_base: str = "https://integrate.api.nvidia.com/v1"
    api_key: Optional[str] = None
    show_reasoning: bool = True
    enable_thinking_mode: bool = True
    default_temperature: float = 0.6
    default_max_tokens: int = 16384
    timeout: float = 120.0
    thinking_system_prompt: str = "detailed thinking on"
    model_mapping: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_MODEL_MAPPING))
    capabilities: Dict[str, ModelCapabilities] = Field(default_factory=_default_capabilities)

    def map_model(self, model: str) -> str:
        return self.model_mapping.get(model, model)

    def capabilities_for(self, nim_model: str) -> ModelCapabilities:
        return self.capabilities.get(nim_model) or ModelCapabilities()


def _resolve_env(obj: Any) -> Any:
    """Recursively resolve ${ENV_VAR} placeholders; entries left unset are dropped"""
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        return os.getenv(obj[2:-1])
    if isinstance(obj, dict):
        resolved = {k: _resolve_env(v) for k, v in obj.items()}
        return {k: v for k, v in resolved.items() if v is not None}
    if isinstance(obj, list):
        return [v for v in (_resolve_env(item) for item in obj) if v is not None]
    return obj


def _env_flag(name: str) -> Optional[bool]:
    """Anything except the literal 'false' switches a flag on"""
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() != "false"


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    if os.getenv("NIM_API_BASE"):
        raw["nim_api_base"] = os.environ["NIM_API_BASE"]
    if os.getenv("NIM_API_KEY"):
        raw["api_key"] = os.environ["NIM_API_KEY"]
    for env_name, key in (("SHOW_REASONING", "show_reasoning"), ("ENABLE_THINKING_MODE", "enable_thinking_mode")):
        flag = _env_flag(env_name)
        if flag is not None:
            raw[key] = flag
    return raw


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration"""
    path = path or os.getenv("NIM_PROXY_CONFIG", DEFAULT_CONFIG_PATH)
    raw: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path) as fh:
            raw = yaml.safe_load(fh) or {}
    else:
        logger.info("Config file %s not found, using built-in defaults", path)
    resolved = _resolve_env(raw)
    return AppConfig(**_apply_env_overrides(resolved))
