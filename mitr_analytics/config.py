import yaml
import os
import copy
import logging

logger = logging.getLogger(__name__)

if os.environ.get("MITR_APPDATA_DIR"):
    CONFIG_DIR = os.environ["MITR_APPDATA_DIR"]
elif os.name == 'nt':
    CONFIG_DIR = os.path.join(os.environ['APPDATA'], 'Mitr')
else:
    CONFIG_DIR = os.path.join(os.path.expanduser('~'), '.mitr')

if not os.path.exists(CONFIG_DIR):
    os.makedirs(CONFIG_DIR, exist_ok=True)

CONFIG_PATH = os.path.join(CONFIG_DIR, "config.yaml")

DEFAULT_CONFIG = {
    "extraction": {
        "provider": "openrouter",  # "openrouter" | "openai" | "anthropic" | "ollama" | "heuristic"
        "model": "openai/gpt-4o-mini",
        "fallback_model": "anthropic/claude-3-haiku",
        "api_base_url": "",
        "api_key": "",
        "app_url": "http://localhost:3000",
        "app_title": "MITR Analytics",
        "temperature": 0.3,
        "max_tokens": 1000,
        "timeout_seconds": 30.0,
        "confidence_threshold": 0.5,
        "interest_level_policy": "latest",  # "latest" | "max"
    },
    "trigger": {
        "message_threshold": 3,
        "recent_message_window": 5,
        "check_scheme_keywords": True,
        "check_business_keywords": True,
    },
    "job_queue": {
        "enabled": True,
        "batch_size": 10,
        "max_retries": 3,
        "retry_delay_ms": 1000,
        "retry_backoff_multiplier": 2,
        "poll_interval_seconds": 5.0,
        "retention_days": 30,
    },
    "analytics_cache": {
        "ttl_seconds": 300,
        "cleanup_interval_seconds": 60,
    },
    "scheduler": {
        "purge_interval_hours": 24,
    },
}

_SECTIONS = ("extraction", "trigger", "job_queue", "analytics_cache", "scheduler")

_config_cache = None


def _merge_defaults(original: dict) -> dict:
    merged = {**DEFAULT_CONFIG, **original}
    for section in _SECTIONS:
        current = original.get(section)
        merged[section] = {**DEFAULT_CONFIG.get(section, {}), **(current if isinstance(current, dict) else {})}
    return merged


def load_config(force_reload: bool = False) -> dict:
    global _config_cache
    if _config_cache and not force_reload:
        return _config_cache

    if not os.path.exists(CONFIG_PATH):
        _config_cache = copy.deepcopy(DEFAULT_CONFIG)
        try:
            save_config(_config_cache)
        except Exception as e:
            logger.warning(f"Could not write default config to {CONFIG_PATH}: {e}")
        return _config_cache

    with open(CONFIG_PATH, "r") as f:
        loaded = yaml.safe_load(f) or copy.deepcopy(DEFAULT_CONFIG)

    original = loaded if isinstance(loaded, dict) else {}
    merged = _merge_defaults(original)
    needs_save = merged != original
    _config_cache = merged

    if needs_save:
        try:
            save_config(_config_cache)
        except Exception:
            # Runtime config stays usable even if the file is read-only.
            pass

    return _config_cache


def save_config(config: dict):
    global _config_cache
    merged = _merge_defaults(config if isinstance(config, dict) else {})
    _config_cache = merged
    with open(CONFIG_PATH, "w") as f:
        yaml.dump(merged, f, default_flow_style=False, allow_unicode=True)


def get_section(name: str) -> dict:
    cfg = load_config()
    section = cfg.get(name, {})
    return dict(section) if isinstance(section, dict) else dict(DEFAULT_CONFIG.get(name, {}))


def get_extraction_settings() -> dict:
    """Extraction section with environment overrides applied."""
    settings = get_section("extraction")
    env_key = os.environ.get("OPENROUTER_API_KEY", "")
    if not str(settings.get("api_key") or "").strip() and env_key:
        settings["api_key"] = env_key
    if os.environ.get("EXTRACTION_MODEL"):
        settings["model"] = os.environ["EXTRACTION_MODEL"]
    if os.environ.get("EXTRACTION_FALLBACK_MODEL"):
        settings["fallback_model"] = os.environ["EXTRACTION_FALLBACK_MODEL"]
    raw_threshold = os.environ.get("EXTRACTION_CONFIDENCE_THRESHOLD")
    if raw_threshold:
        try:
            settings["confidence_threshold"] = float(raw_threshold)
        except ValueError:
            logger.warning(f"Ignoring invalid EXTRACTION_CONFIDENCE_THRESHOLD={raw_threshold!r}")
    return settings
