"""Single source of truth for all configuration and secrets.

Only the CLI imports from here; library code receives explicit settings
objects and never reads os.environ.

Values come from secrets/jenn.env (or secrets/jenn.env.enc through SOPS when
JENN_USE_SOPS=true), then the process environment, then defaults. A missing
plain .env file is not an error.
"""

import json
import os
import subprocess
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values

from jenn.schemas.mail import MailAccountConfig

PROJECT_ROOT = Path(__file__).resolve().parent.parent

USE_SOPS = os.environ.get("JENN_USE_SOPS", "false").lower() == "true"


def load_env_values(path: str | Path, *, sops: bool = False) -> dict[str, str | None]:
    """Key-value pairs of a dotenv file, decrypted through SOPS when ``sops``.

    A missing plain file yields no values. A missing encrypted file is an
    error because SOPS mode was asked for explicitly.

    Raises:
        FileNotFoundError: ``sops`` is set and the encrypted file is missing.
        RuntimeError: The sops binary is missing or could not decrypt the file.
    """
    path = Path(path)
    if not path.exists():
        if sops:
            raise FileNotFoundError(f"Encrypted secrets file not found: {path}")
        return {}
    if not sops:
        return dict(dotenv_values(path))

    try:
        result = subprocess.run(
            ["sops", "--decrypt", "--input-type", "dotenv", "--output-type", "dotenv", str(path)],
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as exc:
        raise RuntimeError("sops is not installed; install it or set JENN_USE_SOPS=false") from exc
    except subprocess.CalledProcessError as exc:
        raise RuntimeError(f"sops could not decrypt {path}: {exc.stderr.strip()}") from exc
    return dict(dotenv_values(stream=StringIO(result.stdout)))


def _load() -> dict[str, str | None]:
    if USE_SOPS:
        return load_env_values(PROJECT_ROOT / "secrets/jenn.env.enc", sops=True)
    return load_env_values(PROJECT_ROOT / "secrets/jenn.env")


_values = _load()


def _get(key: str, default: str = "") -> str:
    value = _values.get(key)
    if value is None:
        value = os.environ.get(key)
    return default if value is None else value


# --- Model providers ---
OLLAMA_BASE_URL: str = _get("OLLAMA_BASE_URL", "http://localhost:11434")
OPENAI_BASE_URL: str = _get("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY: str = _get("OPENAI_API_KEY")
ANTHROPIC_API_KEY: str = _get("ANTHROPIC_API_KEY")
LLM_TIMEOUT_S: float = float(_get("LLM_TIMEOUT_S", "120"))
LLM_MAX_RETRIES: int = int(_get("LLM_MAX_RETRIES", "2"))

# --- Execution plan ("provider:model") ---
PRIMARY_MODEL: str = _get("JENN_PRIMARY_MODEL", "ollama:llama3.1:8b")
BACKUP_MODEL: str = _get("JENN_BACKUP_MODEL")
FALLBACK_MODELS: list[str] = [
    m.strip() for m in _get("JENN_FALLBACK_MODELS").split(",") if m.strip()
]

# --- Storage ---
CURSOR_DB_PATH: str = _get("CURSOR_DB_PATH", str(PROJECT_ROOT / "data" / "cursors.db"))
USAGE_LOG_PATH: str = _get("USAGE_LOG_PATH", str(PROJECT_ROOT / "data" / "usage.jsonl"))
ERROR_NOTICE_DB_PATH: str = _get(
    "ERROR_NOTICE_DB_PATH", str(PROJECT_ROOT / "data" / "error_notices.db")
)
CONNECTION_DB_PATH: str = _get(
    "CONNECTION_DB_PATH", str(PROJECT_ROOT / "data" / "connections.db")
)
CREDENTIAL_KEY: str = _get("JENN_CREDENTIAL_KEY")

# --- Mail sync ---
ACCOUNTS_PATH: str = _get("ACCOUNTS_PATH", str(PROJECT_ROOT / "secrets" / "accounts.json"))
SYNC_BATCH_LIMIT: int = int(_get("SYNC_BATCH_LIMIT", "0"))
SYNC_NOW_LIMIT: int = int(_get("SYNC_NOW_LIMIT", "100"))


def load_accounts(path: str | Path = ACCOUNTS_PATH) -> list[MailAccountConfig]:
    """Mailbox configurations from a JSON list. A missing file means no accounts."""
    path = Path(path)
    if not path.exists():
        return []
    raw = json.loads(path.read_text())
    return [MailAccountConfig.model_validate(item) for item in raw]
