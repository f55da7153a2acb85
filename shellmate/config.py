import os
import json
import sys
from pathlib import Path

from cryptography.fernet import Fernet
from dotenv import load_dotenv
from prompt_toolkit import prompt
from rich.console import Console
from simple_term_menu import TerminalMenu

from .shell import default_shell

# --- Constants ---
CONFIG_DIR = Path.home() / ".shellmate"
CONFIG_FILE = CONFIG_DIR / "config.encrypted"
KEY_FILE = CONFIG_DIR / "config.key"

PROVIDERS = {
    "openrouter": "https://openrouter.ai/api/v1/chat/completions",
    "openai": "https://api.openai.com/v1/chat/completions",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
    "custom": "",
}

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant running in the user's terminal.\n"
    "You can run shell commands with the `Shell` tool; every command is shown to the user and only runs after they confirm it. "
    "Prefer short, safe commands and explain what a command does before relying on its output.\n"
    "Use `WebFetch`, `CurlFetch` and `WebSearch` (when available) to look things up on the web. "
    "When you have what you need, answer the user directly."
)

DEFAULT_CONFIG = {
    "provider": "openrouter",
    "api_base": PROVIDERS["openrouter"],
    "api_key": None,
    "model": None,
    "system_prompt": DEFAULT_SYSTEM_PROMPT,
    "tools_enabled": True,
    "max_turns": 50,
    "max_retries": 3,
    "retry_wait": 5,
    "request_timeout": 120,
    "shell": None,
    "tools_auth": {"brave_search": {"api_key": None}},
    "log_level": "WARNING",
}

ENV_OVERRIDES = {
    "SHELLMATE_API_KEY": "api_key",
    "SHELLMATE_API_BASE": "api_base",
    "SHELLMATE_MODEL": "model",
}

# --- Key Management ---

def _ensure_config_dir():
    """Ensures the configuration directory exists."""
    CONFIG_DIR.mkdir(exist_ok=True)

def _load_key() -> bytes:
    """Loads the encryption key, or generates it if it doesn't exist."""
    if KEY_FILE.exists():
        return KEY_FILE.read_bytes()

    _ensure_config_dir()
    key = Fernet.generate_key()
    KEY_FILE.write_bytes(key)
    # Set restrictive permissions for the key file
    os.chmod(KEY_FILE, 0o600)
    return key

# --- Configuration Load/Save ---

def load_config() -> dict:
    """Loads and decrypts the configuration from the config file."""
    if not CONFIG_FILE.exists():
        return {}

    key = _load_key()
    fernet = Fernet(key)

    try:
        encrypted_data = CONFIG_FILE.read_bytes()
        decrypted_data = fernet.decrypt(encrypted_data)
        return json.loads(decrypted_data)
    except Exception as e:
        print(f"Warning: Could not load configuration. It might be corrupted. {e}", file=sys.stderr)
        return {}

def save_config(config: dict):
    """Encrypts and saves the configuration to the config file."""
    _ensure_config_dir()
    key = _load_key()
    fernet = Fernet(key)

    config_data = json.dumps(config).encode("utf-8")
    encrypted_data = fernet.encrypt(config_data)

    CONFIG_FILE.write_bytes(encrypted_data)

def effective_config(stored: dict) -> dict:
    """Stored settings over defaults, then environment (and .env) overrides on top."""
    load_dotenv()
    cfg = json.loads(json.dumps(DEFAULT_CONFIG))
    for key, value in (stored or {}).items():
        if isinstance(value, dict) and isinstance(cfg.get(key), dict):
            cfg[key] = {**cfg[key], **value}
        elif value is not None:
            cfg[key] = value

    for env_name, key in ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            cfg[key] = os.environ[env_name]
    if os.environ.get("BRAVE_SEARCH_API_KEY"):
        cfg["tools_auth"].setdefault("brave_search", {})["api_key"] = os.environ["BRAVE_SEARCH_API_KEY"]

    if not cfg.get("shell"):
        cfg["shell"] = default_shell()
    return cfg

# --- Interactive setup ---

def _prompt_for_provider(config_to_edit: dict):
    """Selects the chat-completions provider and its endpoint."""
    console = Console()
    providers = list(PROVIDERS)
    current = config_to_edit.get("provider", "openrouter")
    menu = TerminalMenu(
        providers,
        title="Select a provider",
        cursor_index=providers.index(current) if current in providers else 0,
    )
    selected_index = menu.show()
    if selected_index is None:
        return

    provider = providers[selected_index]
    config_to_edit["provider"] = provider
    api_base = PROVIDERS[provider]
    if not api_base:
        api_base = prompt(
            "Chat completions URL: ", default=config_to_edit.get("api_base") or ""
        ).strip()
    config_to_edit["api_base"] = api_base
    console.print(f"[green]✔ Provider set to {provider}.[/green]")

def _prompt_for_model(config_to_edit: dict):
    """Asks for the model name and the API key."""
    model = prompt("Model name: ", default=config_to_edit.get("model") or "").strip()
    if model:
        config_to_edit["model"] = model
    api_key = prompt("API key (leave empty to keep current): ", is_password=True).strip()
    if api_key:
        config_to_edit["api_key"] = api_key

def _prompt_for_tools_settings(config_to_edit: dict):
    """Toggles tool calling and sets the web search key."""
    console = Console()
    enabled = config_to_edit.get("tools_enabled", True)
    menu = TerminalMenu(["Enabled", "Disabled"], title="Tool calling", cursor_index=0 if enabled else 1)
    choice = menu.show()
    if choice is not None:
        config_to_edit["tools_enabled"] = choice == 0

    brave_key = prompt("Brave Search API key (leave empty to keep current): ", is_password=True).strip()
    if brave_key:
        config_to_edit.setdefault("tools_auth", {}).setdefault("brave_search", {})["api_key"] = brave_key
    console.print("[green]✔ Tool settings updated.[/green]")

def _prompt_for_system_prompt(config_to_edit: dict):
    """Edits the system prompt sent with every request."""
    current = config_to_edit.get("system_prompt") or DEFAULT_SYSTEM_PROMPT
    text = prompt("System prompt (Esc+Enter to finish):\n", default=current, multiline=True).strip()
    config_to_edit["system_prompt"] = text or DEFAULT_SYSTEM_PROMPT

def prompt_for_config() -> dict:
    """Interactively edits and saves the configuration."""
    console = Console()
    config_to_edit = load_config()

    options = {
        "Provider": _prompt_for_provider,
        "Model and API key": _prompt_for_model,
        "Tools": _prompt_for_tools_settings,
        "System prompt": _prompt_for_system_prompt,
    }
    entries = list(options) + ["Save and exit", "Exit without saving"]

    while True:
        console.clear()
        console.print(f"[bold]Provider:[/] {config_to_edit.get('provider', '-')}  [bold]Model:[/] {config_to_edit.get('model') or '-'}")
        selected_index = TerminalMenu(entries, title="shellmate configuration").show()
        if selected_index is None or entries[selected_index] == "Exit without saving":
            return load_config()
        if entries[selected_index] == "Save and exit":
            save_config(config_to_edit)
            console.print("[bold green]✔ Configuration saved.[/bold green]")
            return config_to_edit
        options[entries[selected_index]](config_to_edit)
