from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

# các block trong conf/runner.yaml, gộp phẳng vào Settings
_SECTIONS = ("toolchain", "runner", "events", "logging")


class Settings(BaseSettings):
    # ---- build tool ----
    run_command: List[str] = ["cargo", "run"]
    test_command: List[str] = ["cargo", "test"]
    # prefix cho lớp cô lập bên ngoài (vd ["systemd-run", "--scope", "--"])
    command_wrapper: List[str] = []
    env: Dict[str, str] = {"CARGO_TERM_COLOR": "never"}
    probe_timeout_s: float = 10.0

    # ---- workspace / process ----
    workspace_root: Optional[Path] = None   # None -> thư mục temp của hệ thống
    kill_grace_s: float = 2.0
    drain_timeout_s: float = 2.0
    decode_errors: Literal["ignore", "replace", "strict"] = "ignore"

    # ---- events ----
    event_retention_s: float = 300.0
    sse_keepalive_s: float = 15.0

    log_level: str = "INFO"

    # env prefix RUNNER_*
    model_config = SettingsConfigDict(env_prefix="RUNNER_", extra="ignore")

    def command_for(self, mode: str) -> List[str]:
        base = self.test_command if mode == "test" else self.run_command
        return [*self.command_wrapper, *base]


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    if not isinstance(data, dict):
        return {}

    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _SECTIONS and isinstance(value, dict):
            flat.update(value)
        else:
            flat[key] = value
    return flat


def load_settings(**overrides: Any) -> Settings:
    """
    Thứ tự ưu tiên: overrides > env RUNNER_* > conf/runner.yaml (hoặc RUNNER_CONF) > mặc định.
    """
    conf_path = Path(os.environ.get("RUNNER_CONF", "conf/runner.yaml"))
    data = _read_yaml(conf_path)
    # key nào đã có env RUNNER_<KEY> thì bỏ giá trị trong file, để BaseSettings đọc env
    env_keys = {k.upper() for k in os.environ}
    data = {k: v for k, v in data.items() if f"RUNNER_{k}".upper() not in env_keys}
    data.update(overrides)
    return Settings(**data)
