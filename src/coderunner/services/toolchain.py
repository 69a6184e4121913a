from __future__ import annotations
import shutil
import subprocess
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import structlog

from ..core.settings import Settings

log = structlog.get_logger(__name__)


@dataclass
class ToolchainStatus:
    installed: bool
    cargo_version: Optional[str] = None
    rustc_version: Optional[str] = None
    rustup_version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_version(cmd: List[str], timeout: float) -> Optional[str]:
    """Chạy `<tool> --version`, trả về None nếu không có tool hoặc exit != 0."""
    if not shutil.which(cmd[0]):
        return None
    try:
        out = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        log.warning("toolchain_probe_failed", cmd=cmd, error=str(e))
        return None
    if out.returncode != 0:
        return None
    return out.stdout.strip() or None


def probe_toolchain(settings: Settings) -> ToolchainStatus:
    t = settings.probe_timeout_s
    cargo = get_version(["cargo", "--version"], t)
    rustc = get_version(["rustc", "--version"], t)
    rustup = get_version(["rustup", "--version"], t)
    return ToolchainStatus(
        installed=cargo is not None and rustc is not None,
        cargo_version=cargo,
        rustc_version=rustc,
        rustup_version=rustup,
    )
