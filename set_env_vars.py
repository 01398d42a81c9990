"""Load the tutor's settings from ``.env`` / ``.env.local`` at the repo root.

Run directly to see which of the required settings were found:
  python set_env_vars.py
"""
from __future__ import annotations

import json
import os
import pathlib

ROOT = pathlib.Path(__file__).resolve().parent

SETTINGS = (
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_DEFAULT_MODEL",
    "GEMINI_BASE_URL",
    "GEMINI_TIMEOUT_S",
    "MONGO_URI",
    "MONGO_DB",
    "LOG_LEVEL",
    "PORT",
)


def read_dotenv(path: pathlib.Path) -> dict[str, str]:
    """``KEY=value`` pairs from ``path``; quotes and ``export`` are stripped."""
    if not path.is_file():
        return {}
    pairs: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip().removeprefix("export ").strip()
        key, sep, val = line.partition("=")
        key, val = key.strip(), val.strip()
        if line.startswith("#") or not sep or not key:
            continue
        if len(val) >= 2 and val[0] == val[-1] and val[0] in "\"'":
            val = val[1:-1]
        pairs[key] = val
    return pairs


def initialize_env_vars(*, dotenv_paths: list[str] | None = None, override_existing: bool = False) -> dict[str, bool]:
    # Later files win, so .env.local overrides .env.
    files = [pathlib.Path(p).expanduser() for p in dotenv_paths or []] + [ROOT / ".env", ROOT / ".env.local"]
    loaded: dict[str, str] = {}
    for path in files:
        loaded.update(read_dotenv(path))

    for key in SETTINGS:
        value = loaded.get(key)
        if value and (override_existing or not os.environ.get(key)):
            os.environ[key] = value

    # The Gemini client accepts either name.
    gemini_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
    if gemini_key:
        os.environ.setdefault("GEMINI_API_KEY", gemini_key)

    return {
        "gemini_api_key_set": bool(gemini_key),
        "mongo_uri_set": bool(os.environ.get("MONGO_URI")),
        "mongo_db_set": bool(os.environ.get("MONGO_DB")),
    }


if __name__ == "__main__":
    print(json.dumps(initialize_env_vars(), indent=2))
