from __future__ import annotations
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from ..core.errors import WorkspaceError
from ..core.models import RunMode

log = structlog.get_logger(__name__)

MANIFEST_NAME = "Cargo.toml"

MANIFEST_TEMPLATE = """[package]
name = "user_code"
version = "0.1.0"
edition = "2021"

[dependencies]
"""

ENTRY_FILES = {
    RunMode.RUN: "main.rs",
    RunMode.TEST: "lib.rs",
}


@dataclass
class Workspace:
    """
    Project tạm cho một job:
      <tmp>/coderunner-xxxx/
        ├─ Cargo.toml
        └─ src/<main.rs | lib.rs>
    """
    path: Path
    manifest_path: Path
    entry_path: Path

    def exists(self) -> bool:
        return self.path.exists()

    def cleanup(self) -> None:
        # gọi nhiều lần vẫn an toàn
        if not self.path.exists():
            return
        try:
            shutil.rmtree(self.path)
        except OSError as e:
            log.warning("workspace_cleanup_error", path=str(self.path), error=str(e))

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()


class WorkspaceBuilder:
    def __init__(self, root: Optional[Path] = None):
        self.root = root
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)

    def prepare(self, source: str, mode: RunMode) -> Workspace:
        try:
            path = Path(tempfile.mkdtemp(prefix="coderunner-", dir=self.root))
        except OSError as e:
            raise WorkspaceError(f"create_dir_failed:{e}") from e

        ws = Workspace(
            path=path,
            manifest_path=path / MANIFEST_NAME,
            entry_path=path / "src" / ENTRY_FILES[RunMode(mode)],
        )
        try:
            ws.manifest_path.write_text(MANIFEST_TEMPLATE, encoding="utf-8")
            ws.entry_path.parent.mkdir(parents=True, exist_ok=True)
            # ghi nguyên văn, không đổi newline
            with open(ws.entry_path, "w", encoding="utf-8", newline="") as f:
                f.write(source)
        except (OSError, UnicodeEncodeError) as e:
            ws.cleanup()
            raise WorkspaceError(f"write_failed:{e}") from e

        log.debug("workspace_prepared", path=str(path), entry=ws.entry_path.name)
        return ws
