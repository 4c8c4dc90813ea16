import os
import toml
from dotenv import load_dotenv


def _project_root():
    # creastudio/config/config.py -> creastudio/config -> creastudio -> repo root
    return os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def get_default_config():
    """Get default configuration"""
    project_root = _project_root()

    return {
        # Generative API
        "api_key": "",
        "text_model": "gemini-2.5-pro",
        "fast_text_model": "gemini-2.5-flash",
        "image_model": "imagen-4.0-generate-001",
        "image_edit_model": "gemini-2.5-flash-image",
        "tts_model": "gemini-2.5-flash-preview-tts",
        "video_model": "veo-3.1-fast-generate-preview",
        "video_resolution": "720p",

        # Video job polling
        "poll_interval_sec": 10,
        "max_poll_sec": 0,  # 0 keeps polling until the job reports done
        "download_timeout_sec": 60,  # connect and per-read timeout for the result download

        # Paths
        "storage_path": os.path.join(project_root, "data/studio.db"),
        "results_dir": os.path.join(project_root, "results"),
        "catalog_file": os.path.join(project_root, "creastudio/config/tools.yaml"),
        "log_file": os.path.join(project_root, "logs/studio.log"),
        "log_level": "INFO",
        "log_console": False,
        "log_max_bytes": 5_000_000,  # rotate the log file past this size
        "log_backup_count": 3,

        # HTTP server
        "server_host": "0.0.0.0",
        "server_port": 8000,
    }


def _as_bool(value):
    lowered = value.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(value)


# Environment variable -> (config key, type)
ENV_OVERRIDES = {
    "STUDIO_TEXT_MODEL": ("text_model", str),
    "STUDIO_FAST_TEXT_MODEL": ("fast_text_model", str),
    "STUDIO_IMAGE_MODEL": ("image_model", str),
    "STUDIO_IMAGE_EDIT_MODEL": ("image_edit_model", str),
    "STUDIO_TTS_MODEL": ("tts_model", str),
    "STUDIO_VIDEO_MODEL": ("video_model", str),
    "STUDIO_VIDEO_RESOLUTION": ("video_resolution", str),
    "STUDIO_POLL_INTERVAL_SEC": ("poll_interval_sec", float),
    "STUDIO_MAX_POLL_SEC": ("max_poll_sec", float),
    "STUDIO_DOWNLOAD_TIMEOUT_SEC": ("download_timeout_sec", float),
    "STUDIO_STORAGE_PATH": ("storage_path", str),
    "STUDIO_RESULTS_DIR": ("results_dir", str),
    "STUDIO_CATALOG_FILE": ("catalog_file", str),
    "STUDIO_LOG_FILE": ("log_file", str),
    "STUDIO_LOG_LEVEL": ("log_level", str),
    "STUDIO_LOG_CONSOLE": ("log_console", _as_bool),
    "STUDIO_SERVER_HOST": ("server_host", str),
    "STUDIO_SERVER_PORT": ("server_port", int),
}

PATH_KEYS = ["storage_path", "results_dir", "catalog_file", "log_file"]


def apply_env_overrides(config, env_vars):
    """
    Override config values from environment variables.
    GEMINI_API_KEY wins over the generic API_KEY.
    """
    api_key = env_vars.get("GEMINI_API_KEY") or env_vars.get("API_KEY")
    if api_key:
        config["api_key"] = api_key.strip()

    for env_name, (key, cast) in ENV_OVERRIDES.items():
        raw = env_vars.get(env_name)
        if raw is None or not str(raw).strip():
            continue
        try:
            config[key] = cast(str(raw).strip())
        except ValueError:
            print(f"Warning: ignoring invalid value for {env_name}: {raw!r}")
    return config


def _resolve_paths(config):
    project_root = _project_root()
    for key in PATH_KEYS:
        value = os.path.expanduser(str(config.get(key) or ""))
        if value and not os.path.isabs(value):
            value = os.path.join(project_root, value)
        config[key] = value
    return config


def load_config(config_file=None, env=None):
    """Load configuration from TOML file or create with defaults if it doesn't exist"""
    config_file = config_file or os.path.join(_project_root(), "creastudio/config/config.toml")
    os.makedirs(os.path.dirname(config_file), exist_ok=True)

    defaults = get_default_config()
    if not os.path.exists(config_file):
        config = dict(defaults)
        with open(config_file, "w", encoding="utf-8") as f:
            toml.dump(config, f)
    else:
        with open(config_file, "r", encoding="utf-8") as f:
            config = toml.load(f)
        # Merge with defaults to ensure all required fields exist
        for key, value in defaults.items():
            if key not in config:
                config[key] = value

    if env is None:
        load_dotenv(dotenv_path=os.path.join(_project_root(), ".env"), override=False)
        env = os.environ

    apply_env_overrides(config, env)
    _resolve_paths(config)
    return config_file, config


CONFIG_FILE, config = load_config()
