from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional


# Layout below the application root.
RESOURCES_DIR_NAME = "resources"
INDEX_SUBPATH = "static/index.html"
PANDOC_FONTS_SUBPATH = "pandoc/fonts"
PANDOC_TYPST_TEMPLATE_SUBPATH = "pandoc/templates/typst.template"
LOGS_DIR_NAME = "logs"
LOG_FILENAME = "les-reportconv.log"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3333
DEFAULT_PANDOC_EXECUTABLE = "pandoc"
DEFAULT_PANDOC_TIMEOUT_SECONDS = 10.0

# Multipart bodies larger than this are refused before parsing.
MAX_REQUEST_BYTES = 32 << 20  # 32MB

# Per-connection bounds handed to the HTTP server.
REQUEST_READ_TIMEOUT_SECONDS = 15.0
RESPONSE_WRITE_TIMEOUT_SECONDS = 15.0
IDLE_TIMEOUT_SECONDS = 60
SHUTDOWN_GRACE_SECONDS = 15

TEAM_NAMES: Mapping[str, str] = MappingProxyType(
    {
        "team-esm": "E-Sport-Management",
        "team-hs": "Hochschulen",
        "team-oea": "Öffentlichkeitsarbeit",
        "team-tech": "Technik",
        "team-vs": "Veranstaltungen",
        "team-vh": "Vereinsheim",
    }
)


class UnknownTeamPolicy(str, Enum):
    """What to do with a team identifier that is not in TEAM_NAMES."""

    REJECT = "reject"
    PLACEHOLDER = "placeholder"


@dataclass(frozen=True)
class Config:
    app_root: Path
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    pandoc_executable: str = DEFAULT_PANDOC_EXECUTABLE
    pandoc_timeout: float = DEFAULT_PANDOC_TIMEOUT_SECONDS
    unknown_team_policy: UnknownTeamPolicy = UnknownTeamPolicy.REJECT
    # None means the system temp directory.
    scratch_dir: Optional[Path] = None
    max_request_bytes: int = MAX_REQUEST_BYTES

    @property
    def resources_dir(self) -> Path:
        return self.app_root / RESOURCES_DIR_NAME

    @property
    def index_path(self) -> Path:
        return self.resources_dir / INDEX_SUBPATH

    @property
    def fonts_path(self) -> Path:
        return self.resources_dir / PANDOC_FONTS_SUBPATH

    @property
    def template_path(self) -> Path:
        return self.resources_dir / PANDOC_TYPST_TEMPLATE_SUBPATH

    @property
    def logs_dir(self) -> Path:
        return self.app_root / LOGS_DIR_NAME

    @property
    def log_file(self) -> Path:
        return self.logs_dir / LOG_FILENAME


def lookup_team_name(team_id: str) -> Optional[str]:
    return TEAM_NAMES.get(team_id)


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers ("10", "2.5") as seconds and Go-style strings such as
    "10s", "500ms" or "1m30s", so existing PANDOC_TIMEOUT values keep working.
    """
    text = (value or "").strip()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total
