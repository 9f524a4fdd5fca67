from __future__ import annotations

from dataclasses import asdict, dataclass, fields
import json
from pathlib import Path
import tempfile
from typing import Any

CONFIG_DIR = Path.home() / ".flowrecorder"
CONFIG_PATH = CONFIG_DIR / "config.json"

BROWSERS = ("chromium", "firefox", "webkit")


@dataclass(slots=True)
class RecorderSettings:
    workspace_root: str = ""
    browser: str = "chromium"
    headed: bool = False
    stream_buffer_size: int = 500
    idle_timeout_ms: int = 15000
    install_browsers: bool = True
    remote_username_env: str = "BROWSERSTACK_USERNAME"
    remote_access_key_env: str = "BROWSERSTACK_ACCESS_KEY"
    log_level: str = "INFO"


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return raw if isinstance(raw, bool) else default
    if isinstance(default, int):
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return default
        return value if value > 0 else default
    text = str(raw or "").strip()
    if name == "browser" and text not in BROWSERS:
        return default
    return text or default


def load_settings(config_path: Path | None = None) -> RecorderSettings:
    path = config_path or CONFIG_PATH
    defaults = RecorderSettings()
    if not path.exists() or not path.is_file():
        return defaults

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, TypeError):
        return defaults

    if not isinstance(payload, dict):
        return defaults

    values = {}
    for item in fields(RecorderSettings):
        default = getattr(defaults, item.name)
        values[item.name] = _coerce(item.name, payload.get(item.name, default), default)
    return RecorderSettings(**values)


def save_settings(settings: RecorderSettings, config_path: Path | None = None) -> tuple[bool, str | None]:
    path = config_path or CONFIG_PATH

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        return False, f"Could not create config folder: {exc}"

    payload = json.dumps(asdict(settings), ensure_ascii=True, indent=2, sort_keys=True)
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(payload)
            handle.flush()
            temp_path = Path(handle.name)

        temp_path.replace(path)
    except OSError as exc:
        if temp_path and temp_path.exists():
            temp_path.unlink(missing_ok=True)
        return False, f"Could not write settings: {exc}"
    return True, None
