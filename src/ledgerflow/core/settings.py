import os

from dotenv import find_dotenv, load_dotenv

from ledgerflow.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_BASE_URL",
    "AUTO_APPLY_THRESHOLD",
    "AI_AUTO_APPLY_THRESHOLD",
    "MEMORY_THRESHOLD",
    "TFIDF_THRESHOLD",
    "RECONCILIATION_MIN_CONFIDENCE",
    "RECONCILIATION_AMOUNT_TOLERANCE",
    "FINALIZE_UNMATCHED_TOLERANCE",
    "RECONCILIATION_WINDOW_DAYS",
    "AKAHU_BASE_URL",
    "AKAHU_APP_TOKEN",
    "API_TOKENS",
)

DEFAULT_AUTO_APPLY_THRESHOLD = 0.95
DEFAULT_AI_AUTO_APPLY_THRESHOLD = 0.99
DEFAULT_MEMORY_THRESHOLD = 90.0
DEFAULT_TFIDF_THRESHOLD = 0.5
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_RECONCILIATION_MIN_CONFIDENCE = 0.5
DEFAULT_RECONCILIATION_AMOUNT_TOLERANCE = 5.0
DEFAULT_FINALIZE_UNMATCHED_TOLERANCE = 0.05
DEFAULT_RECONCILIATION_WINDOW_DAYS = 3
DEFAULT_AKAHU_BASE_URL = "https://api.akahu.io/v1"


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def _clean_value(raw_value: str) -> str:
    value = raw_value.strip()
    # Unquoted values may carry a trailing comment.
    if value[:1] not in {'"', "'"} and " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        value = value[1:-1]
    return value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read flat ``key: value`` pairs, ignoring blanks and comment lines."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            value = _clean_value(raw_value)
            if key and value:
                values[key] = value
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def ensure_dirs(*paths: str | None) -> None:
    for path in paths:
        if path and path not in {".", "./"}:
            os.makedirs(path, exist_ok=True)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(name: str, default: float = 0.0) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default


def get_env_list(name: str) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return []
    items: list[str] = []
    for part in raw.split(","):
        item = part.strip()
        if item and item not in items:
            items.append(item)
    return items


def get_api_tokens() -> dict[str, str]:
    """Parse ``API_TOKENS`` (``token=user,token=user``) into a token lookup."""
    tokens: dict[str, str] = {}
    for entry in get_env_list("API_TOKENS"):
        token, sep, user_id = entry.partition("=")
        if not sep or not token.strip() or not user_id.strip():
            logger.warning("[ENV] Ignoring malformed API_TOKENS entry.")
            continue
        tokens[token.strip()] = user_id.strip()
    return tokens


def auto_apply_threshold() -> float:
    return get_env_float("AUTO_APPLY_THRESHOLD", DEFAULT_AUTO_APPLY_THRESHOLD)


def ai_auto_apply_threshold() -> float:
    return get_env_float("AI_AUTO_APPLY_THRESHOLD", DEFAULT_AI_AUTO_APPLY_THRESHOLD)


_SENSITIVE_ENV_KEYS = ("KEY", "TOKEN", "SECRET", "PASSWORD", "AUTH")


def _mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    sensitive = any(marker in name.upper() for marker in _SENSITIVE_ENV_KEYS)
    if not sensitive and not sanitized.startswith(("sk-", "Bearer ")):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else _mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

ensure_dirs(DATA_DIR, LOG_DIR, CONFIG_DIR)
