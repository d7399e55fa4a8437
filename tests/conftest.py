from __future__ import annotations

import os
import stat
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from reportconv.config import Config
from server import create_app


INDEX_HTML = b"<!DOCTYPE html><html><body><h1>reportconv</h1></body></html>\n"

# Stands in for pandoc: writes a small "PDF" that records how it was called.
FAKE_PANDOC = r"""#!/bin/sh
out=""
prev=""
for arg in "$@"; do
  if [ "$prev" = "-o" ]; then out="$arg"; fi
  prev="$arg"
done
{
  printf '%%PDF-1.7\n'
  printf 'args: %s\n' "$*"
  printf 'fonts: %s\n' "$TYPST_FONT_PATHS"
  cat "$1"
} > "$out"
"""

FAILING_PANDOC = r"""#!/bin/sh
echo "Error producing PDF. unknown variable team" >&2
exit 3
"""

SILENT_PANDOC = """#!/bin/sh
exit 0
"""

# Leaves a grandchild behind so tests can check the whole process group dies.
HANGING_PANDOC = """#!/bin/sh
sleep 30 &
printf '%s' "$!" > "{pidfile}"
wait
"""


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    (root / "resources" / "static").mkdir(parents=True)
    (root / "resources" / "pandoc" / "fonts").mkdir(parents=True)
    (root / "resources" / "pandoc" / "templates").mkdir(parents=True)
    (root / "resources" / "static" / "index.html").write_bytes(INDEX_HTML)
    (root / "resources" / "pandoc" / "templates" / "typst.template").write_text("$body$\n", encoding="utf-8")
    return root


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], Path]:
    def _write(name: str, body: str) -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(exist_ok=True)
        path.write_text(body, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _write


@pytest.fixture
def fake_pandoc(write_script) -> Path:
    return write_script("pandoc", FAKE_PANDOC)


@pytest.fixture
def config(app_root: Path, scratch_dir: Path, fake_pandoc: Path) -> Config:
    return Config(
        app_root=app_root,
        host="127.0.0.1",
        pandoc_executable=str(fake_pandoc),
        pandoc_timeout=5.0,
        scratch_dir=scratch_dir,
    )


@pytest.fixture
def make_client(config: Config) -> Callable[..., TestClient]:
    def _make(**overrides) -> TestClient:
        return TestClient(create_app(replace(config, **overrides)))

    return _make


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


def is_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    # Orphans may linger as zombies until init reaps them.
    proc_stat = Path(f"/proc/{pid}/stat")
    try:
        state = proc_stat.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


def wait_until_gone(pid: int, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_running(pid):
            return True
        time.sleep(0.05)
    return not is_running(pid)
