import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "cache-dropin"

DROPIN_FILENAME = "object-cache.php"

FORCE_DISABLED_KEY = "CACHE_DROPIN_DISABLED"
DISALLOW_FILE_MODS_KEY = "DISALLOW_FILE_MODS"
DISABLE_AUTOUPDATE_KEY = "CACHE_DROPIN_DISABLE_AUTOUPDATE"
DISABLE_DROPIN_CHECK_KEY = "CACHE_DROPIN_DISABLE_DROPIN_CHECK"
DISABLE_BANNERS_KEY = "CACHE_DROPIN_DISABLE_BANNERS"
MANAGER_CAPABILITY_KEY = "CACHE_DROPIN_MANAGER_CAPABILITY"
CONTENT_DIR_KEY = "CACHE_DROPIN_CONTENT_DIR"
PLUGIN_DIR_KEY = "CACHE_DROPIN_PLUGIN_DIR"
STATE_DIR_KEY = "CACHE_DROPIN_STATE_DIR"
MULTISITE_KEY = "CACHE_DROPIN_MULTISITE"
SECRET_KEY_KEY = "CACHE_DROPIN_SECRET_KEY"
SETTINGS_URL_KEY = "CACHE_DROPIN_SETTINGS_URL"
REDIS_URL_KEY = "CACHE_DROPIN_REDIS_URL"
METRICS_MAX_TIME_KEY = "CACHE_DROPIN_METRICS_MAX_TIME"
PRINCIPALS_KEY = "CACHE_DROPIN_PRINCIPALS"
FS_METHOD_KEY = "FS_METHOD"
FTP_HOST_KEY = "FTP_HOST"
FTP_USER_KEY = "FTP_USER"
FTP_PASS_KEY = "FTP_PASS"
FTP_CONTENT_DIR_KEY = "FTP_CONTENT_DIR"

# Ships a header-only placeholder; point CACHE_DROPIN_PLUGIN_DIR at the real
# drop-in before enabling the cache on a live host.
PACKAGED_BUNDLE_DIR = Path(__file__).resolve().parent / "bundle"


@dataclass
class Config:
    config_dir: Path
    content_dir: Path
    plugin_dir: Path
    state_dir: Path
    force_disabled: bool = False
    disallow_file_mods: bool = False
    disable_autoupdate: bool = False
    disable_dropin_check: bool = False
    disable_banners: bool = False
    manager_capability: str = ""
    multisite: bool = False
    secret_key: str = ""
    settings_url: str = "/settings"
    redis_url: str = ""
    metrics_max_time: int = 3600
    principals: str = ""
    fs_method: str = ""
    ftp_host: str = ""
    ftp_user: str = ""
    ftp_pass: str = ""
    ftp_content_dir: str = ""

    @property
    def target_path(self) -> Path:
        return self.content_dir / DROPIN_FILENAME

    @property
    def bundled_path(self) -> Path:
        return self.plugin_dir / "includes" / DROPIN_FILENAME


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except Exception as exc:
        logger.warning("Failed to read .env %s: %s", path, exc)
    return data


def get_env_value(key: str, env_file: Dict[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def _env_flag_enabled(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _read_int(value: Optional[str], default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _read_path(value: Optional[str], default: Path) -> Path:
    raw = (value or "").strip()
    if not raw:
        return default
    return Path(raw).expanduser().resolve()


def load_config(config_dir: Path, overrides: Optional[Dict[str, str]] = None) -> Config:
    """Build the runtime configuration.

    Precedence: explicit overrides > process env > ``<config_dir>/.env`` > defaults.
    """
    config_dir = Path(config_dir).expanduser().resolve()
    env_file = load_env_file(get_env_path(config_dir))
    explicit = dict(overrides or {})

    def value(key: str) -> Optional[str]:
        if key in explicit:
            return explicit[key]
        return get_env_value(key, env_file)

    content_dir = _read_path(value(CONTENT_DIR_KEY), Path.cwd() / "wp-content")
    plugin_dir = _read_path(value(PLUGIN_DIR_KEY), PACKAGED_BUNDLE_DIR)
    state_dir = _read_path(value(STATE_DIR_KEY), config_dir / "state")

    return Config(
        config_dir=config_dir,
        content_dir=content_dir,
        plugin_dir=plugin_dir,
        state_dir=state_dir,
        force_disabled=_env_flag_enabled(value(FORCE_DISABLED_KEY)),
        disallow_file_mods=_env_flag_enabled(value(DISALLOW_FILE_MODS_KEY)),
        disable_autoupdate=_env_flag_enabled(value(DISABLE_AUTOUPDATE_KEY)),
        disable_dropin_check=_env_flag_enabled(value(DISABLE_DROPIN_CHECK_KEY)),
        disable_banners=_env_flag_enabled(value(DISABLE_BANNERS_KEY)),
        manager_capability=(value(MANAGER_CAPABILITY_KEY) or "").strip(),
        multisite=_env_flag_enabled(value(MULTISITE_KEY)),
        secret_key=(value(SECRET_KEY_KEY) or "").strip(),
        settings_url=(value(SETTINGS_URL_KEY) or "/settings").strip() or "/settings",
        redis_url=(value(REDIS_URL_KEY) or "").strip(),
        metrics_max_time=max(60, _read_int(value(METRICS_MAX_TIME_KEY), 3600)),
        principals=(value(PRINCIPALS_KEY) or "").strip(),
        fs_method=(value(FS_METHOD_KEY) or "").strip().lower(),
        ftp_host=(value(FTP_HOST_KEY) or "").strip(),
        ftp_user=(value(FTP_USER_KEY) or "").strip(),
        ftp_pass=value(FTP_PASS_KEY) or "",
        ftp_content_dir=(value(FTP_CONTENT_DIR_KEY) or "").strip(),
    )
