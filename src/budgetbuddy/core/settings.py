import os

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel

from budgetbuddy.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_VALUES: dict[str, str] = {}

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "YNAB_TOKEN",
    "YNAB_BUDGET_ID",
    "YNAB_ACCOUNT_ID",
    "YNAB_BASE_URL",
    "YNAB_CATEGORIES_TTL",
    "COMDIRECT_CLIENT_ID",
    "COMDIRECT_CLIENT_SECRET",
    "COMDIRECT_USERNAME",
    "COMDIRECT_PASSWORD",
    "COMDIRECT_ACCOUNT_ID",
    "COMDIRECT_BASE_URL",
    "SYNC_DAYS_TO_FETCH",
    "DUPLICATE_PAYEE_THRESHOLD",
    "IMPORT_CALL_TIMEOUT",
)

DEFAULT_DAYS_TO_FETCH = 30
MAX_DAYS_TO_FETCH = 90
DEFAULT_DUPLICATE_PAYEE_THRESHOLD = 80.0
DEFAULT_IMPORT_CALL_TIMEOUT = 30.0


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


def _unquote_value(raw_value: str) -> str:
    if len(raw_value) >= 2 and raw_value[0] == raw_value[-1] and raw_value[0] in "\"'":
        return raw_value[1:-1]
    return raw_value


def read_config_file(path: str | None) -> dict[str, str]:
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
            value = _unquote_value(raw_value.strip())
            if key and value:
                values[key] = value
    return values


def load_environment() -> None:
    global _CONFIG_FILE_VALUES

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _CONFIG_FILE_VALUES = read_config_file(_resolve_config_path())

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def ensure_dir(path: str | None) -> None:
    if path and path not in {".", "./"}:
        os.makedirs(path, exist_ok=True)


def get_env_int(
    name: str,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if (min_value is not None and value < min_value) or (max_value is not None and value > max_value):
        logger.warning(
            "[ENV] %s='%s' outside [%s, %s], using default %s.",
            name,
            raw,
            min_value,
            max_value,
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
        logger.warning("[ENV] Invalid %s='%s', using default %.2f.", name, raw, default)
        return default


_SENSITIVE_ENV_KEYS = (
    "KEY",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "PASS",
    "AUTH",
)


def _should_mask_env_value(name: str, value: str) -> bool:
    upper_name = name.upper()
    if any(marker in upper_name for marker in _SENSITIVE_ENV_KEYS):
        return True
    if value.startswith("Bearer ") or value.startswith("bearer "):
        return True
    return False


def mask_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    if not _should_mask_env_value(name, sanitized):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else mask_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


class BankCredentials(BaseModel):
    client_id: str
    client_secret: str
    username: str
    password: str

    def __repr__(self) -> str:
        return f"BankCredentials(client_id={self.client_id!r}, username={self.username!r})"


class SyncConfig(BaseModel):
    credentials: BankCredentials | None = None
    bank_account_id: str | None = None
    budget_id: str | None = None
    budget_account_id: str | None = None
    days_to_fetch: int = DEFAULT_DAYS_TO_FETCH
    import_call_timeout: float = DEFAULT_IMPORT_CALL_TIMEOUT


def load_sync_config() -> SyncConfig:
    credentials = None
    client_id = os.getenv("COMDIRECT_CLIENT_ID")
    client_secret = os.getenv("COMDIRECT_CLIENT_SECRET")
    username = os.getenv("COMDIRECT_USERNAME")
    password = os.getenv("COMDIRECT_PASSWORD")
    if client_id and client_secret and username and password:
        credentials = BankCredentials(
            client_id=client_id,
            client_secret=client_secret,
            username=username,
            password=password,
        )
    else:
        logger.warning("[ENV] Comdirect credentials incomplete. Bank sync will fail until configured.")

    return SyncConfig(
        credentials=credentials,
        bank_account_id=os.getenv("COMDIRECT_ACCOUNT_ID") or None,
        budget_id=os.getenv("YNAB_BUDGET_ID") or None,
        budget_account_id=os.getenv("YNAB_ACCOUNT_ID") or None,
        days_to_fetch=get_env_int(
            "SYNC_DAYS_TO_FETCH",
            DEFAULT_DAYS_TO_FETCH,
            min_value=1,
            max_value=MAX_DAYS_TO_FETCH,
        ),
        import_call_timeout=get_env_float("IMPORT_CALL_TIMEOUT", DEFAULT_IMPORT_CALL_TIMEOUT),
    )


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")

ensure_dir(DATA_DIR)
ensure_dir(LOG_DIR)

DUPLICATE_PAYEE_THRESHOLD = get_env_float("DUPLICATE_PAYEE_THRESHOLD", DEFAULT_DUPLICATE_PAYEE_THRESHOLD)
