from __future__ import annotations

from dataclasses import asdict, dataclass
import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Sequence
from urllib.parse import quote

from .errors import MissingCredentialsError, UnknownTargetError
from .jobs import JobHandle, Launcher, SubprocessLauncher

if TYPE_CHECKING:
    from playwright.sync_api import Browser, Playwright

GRID_ENDPOINT = "wss://cdp.browserstack.com/playwright"
DEFAULT_USERNAME_ENV = "BROWSERSTACK_USERNAME"
DEFAULT_ACCESS_KEY_ENV = "BROWSERSTACK_ACCESS_KEY"


@dataclass(frozen=True, slots=True)
class RemoteTarget:
    name: str
    browser: str
    os: str
    os_version: str
    playwright_browser: str = "chromium"
    browser_version: str = "latest"


REMOTE_TARGETS: dict[str, RemoteTarget] = {
    target.name: target
    for target in (
        RemoteTarget("chrome-windows-11", "chrome", "Windows", "11"),
        RemoteTarget("edge-windows-11", "edge", "Windows", "11"),
        RemoteTarget("firefox-windows-11", "playwright-firefox", "Windows", "11", playwright_browser="firefox"),
        RemoteTarget("chrome-macos-sonoma", "chrome", "OS X", "Sonoma"),
        RemoteTarget("webkit-macos-sonoma", "playwright-webkit", "OS X", "Sonoma", playwright_browser="webkit"),
    )
}


def resolve_target(name: str) -> RemoteTarget:
    key = name.strip().lower()
    target = REMOTE_TARGETS.get(key)
    if target is None:
        raise UnknownTargetError(name, sorted(REMOTE_TARGETS))
    return target


def capabilities(target: RemoteTarget, *, build: str, session_name: str) -> dict[str, str]:
    return {
        "browser": target.browser,
        "browser_version": target.browser_version,
        "os": target.os,
        "os_version": target.os_version,
        "name": session_name,
        "build": build,
    }


def missing_credentials(
    environ: Mapping[str, str],
    username_env: str = DEFAULT_USERNAME_ENV,
    access_key_env: str = DEFAULT_ACCESS_KEY_ENV,
) -> list[str]:
    return [name for name in (username_env, access_key_env) if not (environ.get(name) or "").strip()]


def write_remote_config(
    path: Path,
    target: RemoteTarget,
    *,
    build: str,
    session_name: str,
    username_env: str = DEFAULT_USERNAME_ENV,
    access_key_env: str = DEFAULT_ACCESS_KEY_ENV,
) -> Path:
    """Capabilities plus the names of the credential variables; secrets stay in the environment."""
    payload = {
        "target": asdict(target),
        "capabilities": capabilities(target, build=build, session_name=session_name),
        "username_env": username_env,
        "access_key_env": access_key_env,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    return path


def build_endpoint(caps: Mapping[str, Any], username: str, access_key: str) -> str:
    full_caps = dict(caps)
    full_caps["browserstack.username"] = username
    full_caps["browserstack.accessKey"] = access_key
    return f"{GRID_ENDPOINT}?caps={quote(json.dumps(full_caps, sort_keys=True))}"


def connect_remote_browser(playwright: Playwright, config_path: str | Path, environ: Mapping[str, str] | None = None) -> Browser:
    env = environ if environ is not None else os.environ
    payload = json.loads(Path(config_path).read_text(encoding="utf-8"))
    username_env = str(payload.get("username_env") or DEFAULT_USERNAME_ENV)
    access_key_env = str(payload.get("access_key_env") or DEFAULT_ACCESS_KEY_ENV)
    missing = missing_credentials(env, username_env, access_key_env)
    if missing:
        raise MissingCredentialsError(missing)
    endpoint = build_endpoint(payload.get("capabilities") or {}, env[username_env], env[access_key_env])
    browser_name = str((payload.get("target") or {}).get("playwright_browser") or "chromium")
    return getattr(playwright, browser_name).connect(endpoint)


class BrowserStackGrid:
    """Runs the pytest command locally; the browser side of the session lives on the grid."""

    def __init__(
        self,
        launcher: Launcher | None = None,
        username_env: str = DEFAULT_USERNAME_ENV,
        access_key_env: str = DEFAULT_ACCESS_KEY_ENV,
    ) -> None:
        self.launcher = launcher or SubprocessLauncher()
        self.username_env = username_env
        self.access_key_env = access_key_env

    def validate(self, environ: Mapping[str, str] | None = None) -> None:
        missing = missing_credentials(environ if environ is not None else os.environ, self.username_env, self.access_key_env)
        if missing:
            raise MissingCredentialsError(missing)

    def submit(self, target: RemoteTarget, command: Sequence[str], cwd: Path, env: Mapping[str, str]) -> JobHandle:
        self.validate(env)
        return self.launcher.launch(command, cwd, env)
