import pathlib
import yaml
import os

PP_TOOL_VERSION = "1.0"
CONFIG_FILENAME = ".productionportal.yml"
DATAREPO_CONFIG_FILENAME = "ppdatarepo.yml"

DEFAULT_TIMEZONE = "Asia/Dhaka"

# -------------------------------
# Repository defaults (ppdatarepo.yml)
# -------------------------------
# billing:
#   portal_url: <base url used in billing emails>
#   granted_free_access: { <email>: <tier> }
# assistant:
#   embedding_provider: openai|ollama
#   chat_provider: anthropic|ollama
DATAREPO_DEFAULTS = {
    "timezone": DEFAULT_TIMEZONE,
    "billing": {
        "portal_url": "https://productionportal.app",
        "granted_free_access": {},
    },
    "assistant": {
        "embedding_provider": "openai",
        "chat_provider": "anthropic",
    },
}


def _resolve_config_path() -> pathlib.Path:
    """Resolve the path to .productionportal.yml with environment overrides.

    Precedence:
      1) PP_CONFIG_FILE = absolute or relative path to the config file
      2) PP_CONFIG_DIR = directory containing the config file
      3) PP_DATA_PATH  = parent data path (config at $PP_DATA_PATH/.productionportal.yml)
      4) Fallback to CWD: ./.productionportal.yml
    """
    env_file = os.environ.get("PP_CONFIG_FILE")
    if env_file:
        return pathlib.Path(env_file).expanduser().resolve()
    env_dir = os.environ.get("PP_CONFIG_DIR") or os.environ.get("PP_DATA_PATH")
    if env_dir:
        return pathlib.Path(env_dir).expanduser().resolve() / CONFIG_FILENAME
    return pathlib.Path(CONFIG_FILENAME).expanduser().resolve()


def ensure_config() -> pathlib.Path:
    """Ensure local .productionportal.yml exists; create with defaults if missing."""
    config_path = _resolve_config_path()
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump({"default_datarepo": None}, f)
    return config_path


def load_config() -> dict:
    config_path = ensure_config()
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def save_config(config: dict) -> None:
    config_path = _resolve_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(config, f)


def get_datarepo_path() -> pathlib.Path:
    config = load_config()
    datarepo = config.get("default_datarepo")
    if not datarepo:
        raise RuntimeError(
            f"[productionPortal] Error: default_datarepo not set in {CONFIG_FILENAME}. Run 'init' or set it manually."
        )
    return pathlib.Path(datarepo).expanduser().resolve()


def load_datarepo_config(repo_path: pathlib.Path | None = None) -> dict:
    """Read repository-level configuration from ppdatarepo.yml."""
    if repo_path is None:
        repo_path = get_datarepo_path()
    config_file = repo_path / DATAREPO_CONFIG_FILENAME
    if not config_file.exists():
        return {}
    with open(config_file) as f:
        return yaml.safe_load(f) or {}


def get_factory_timezone(repo_path: pathlib.Path | None = None, factory: dict | None = None) -> str:
    """Timezone for a factory: its own record first, then the repo default."""
    if factory and factory.get("timezone"):
        return str(factory["timezone"])
    tz = load_datarepo_config(repo_path).get("timezone")
    return str(tz) if tz else DEFAULT_TIMEZONE


def get_billing_settings(repo_path: pathlib.Path | None = None) -> dict:
    """Return the billing block with defaults filled in.

    Shape: { portal_url: str, granted_free_access: { email: tier } }
    """
    block = load_datarepo_config(repo_path).get("billing")
    if not isinstance(block, dict):
        block = {}
    granted = block.get("granted_free_access")
    if not isinstance(granted, dict):
        granted = {}
    return {
        "portal_url": str(block.get("portal_url") or DATAREPO_DEFAULTS["billing"]["portal_url"]).rstrip("/"),
        # Emails compare case-insensitively
        "granted_free_access": {str(k).strip().lower(): str(v) for k, v in granted.items() if k},
    }


def get_assistant_settings(repo_path: pathlib.Path | None = None) -> dict:
    block = load_datarepo_config(repo_path).get("assistant")
    if not isinstance(block, dict):
        block = {}
    out = dict(DATAREPO_DEFAULTS["assistant"])
    out.update({k: v for k, v in block.items() if v})
    # Env wins over the repo file
    if os.environ.get("PP_EMBEDDING_PROVIDER"):
        out["embedding_provider"] = os.environ["PP_EMBEDDING_PROVIDER"].strip().lower()
    if os.environ.get("PP_CHAT_PROVIDER"):
        out["chat_provider"] = os.environ["PP_CHAT_PROVIDER"].strip().lower()
    return out


# -------------------------------
# Provider credentials (env only)
# -------------------------------

def get_stripe_secret_key() -> str | None:
    return os.environ.get("PP_STRIPE_SECRET_KEY") or None


def get_resend_api_key() -> str | None:
    return os.environ.get("PP_RESEND_API_KEY") or None


def get_openai_api_key() -> str | None:
    return os.environ.get("PP_OPENAI_API_KEY") or None


def get_anthropic_api_key() -> str | None:
    return os.environ.get("PP_ANTHROPIC_API_KEY") or None


def get_service_key() -> str | None:
    """Shared secret that lets trusted jobs call service-only endpoints."""
    return os.environ.get("PP_SERVICE_KEY") or None


def get_ollama_base_url() -> str:
    """Return the Ollama base URL from env, defaulting to localhost:11434.

    Env var: PP_OLLAMA_BASE_URL
    """
    return os.environ.get("PP_OLLAMA_BASE_URL", "http://localhost:11434")


def get_ollama_chat_model() -> str:
    """Env var: PP_OLLAMA_CHAT_MODEL; default: llama3.1:8b"""
    return os.environ.get("PP_OLLAMA_CHAT_MODEL", "llama3.1:8b")


def get_ollama_embedding_model() -> str:
    """Env var: PP_OLLAMA_EMBED_MODEL; default: nomic-embed-text"""
    return os.environ.get("PP_OLLAMA_EMBED_MODEL", "nomic-embed-text")


def get_state_dir() -> pathlib.Path:
    """Directory for client-side state (offline queue, remembered session).

    Env var: PP_STATE_DIR; default: ~/.productionportal
    """
    return pathlib.Path(os.environ.get("PP_STATE_DIR", "~/.productionportal")).expanduser().resolve()
