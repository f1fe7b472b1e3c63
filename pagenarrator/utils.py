import json
import logging
import os
import re
from functools import lru_cache
from typing import Any, Dict

from dotenv import find_dotenv, load_dotenv


def _load_environment() -> None:
    explicit_path = os.environ.get("PAGENARRATOR_ENV_FILE")
    if explicit_path:
        load_dotenv(explicit_path, override=False)
        return
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)


_load_environment()


def ensure_directory(path):
    resolved = os.path.abspath(os.path.expanduser(str(path)))
    os.makedirs(resolved, exist_ok=True)
    return resolved


@lru_cache(maxsize=1)
def get_user_settings_dir():
    override = os.environ.get("PAGENARRATOR_SETTINGS_DIR")
    if override:
        return ensure_directory(override)

    from platformdirs import user_config_dir

    config_dir = user_config_dir("pagenarrator", appauthor=False, roaming=True, ensure_exists=True)
    return ensure_directory(config_dir)


def get_user_config_path():
    return os.path.join(get_user_settings_dir(), "config.json")


@lru_cache(maxsize=1)
def get_user_cache_root():
    override = os.environ.get("PAGENARRATOR_CACHE_DIR")
    if override:
        return ensure_directory(override)

    from platformdirs import user_cache_dir

    return ensure_directory(user_cache_dir("pagenarrator", appauthor=False))


def get_user_cache_path(folder=None):
    root = get_user_cache_root()
    if folder:
        return ensure_directory(os.path.join(root, folder))
    return root


def load_config() -> Dict[str, Any]:
    try:
        with open(get_user_config_path(), "r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as exc:
        logging.getLogger(__name__).warning("Ignoring unreadable config file: %s", exc)
        return {}
    return payload if isinstance(payload, dict) else {}


def save_config(config: Dict[str, Any]) -> None:
    try:
        with open(get_user_config_path(), "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
    except OSError as exc:
        logging.getLogger(__name__).warning("Unable to save config file: %s", exc)



def clean_text(text, *, replace_single_newlines=False):
    # Collapse all whitespace (excluding newlines) into single spaces per line and trim edges
    lines = [re.sub(r"[^\S\n]+", " ", line).strip() for line in (text or "").splitlines()]
    text = "\n".join(lines)
    # Standardize paragraph breaks (multiple newlines become exactly two) and trim overall whitespace
    text = re.sub(r"\n{3,}", "\n\n", text).strip()
    if replace_single_newlines:
        text = re.sub(r"(?<!\n)\n(?!\n)", " ", text)
    return text
