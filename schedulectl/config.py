from .models import DEFAULTS
from .storage import config_get, config_set


def max_retries() -> int:
    return int(config_get("max_retries", str(DEFAULTS["max_retries"])))


def backoff_base() -> float:
    return float(config_get("backoff_base", str(DEFAULTS["backoff_base"])))


def poll_interval() -> float:
    return float(config_get("poll_interval", str(DEFAULTS["poll_interval"])))


def log_level() -> str:
    return config_get("log_level", DEFAULTS["log_level"]).upper()


def shutdown_requested() -> bool:
    return config_get("shutdown", "false") == "true"


def request_shutdown(flag: bool = True) -> None:
    config_set("shutdown", "true" if flag else "false")
