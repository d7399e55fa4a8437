"""Error taxonomy for the conversion pipeline.

Every request-scoped error carries the HTTP status it maps to. The message is
for the log only; responses never include it.
"""
from __future__ import annotations

from typing import Optional


class ReportConvError(Exception):
    status_code = 500


class MalformedRequest(ReportConvError):
    pass


class RequestTooLarge(MalformedRequest):
    status_code = 413


class MissingTeam(ReportConvError):
    status_code = 400


class InvalidTeam(ReportConvError):
    status_code = 400

    def __init__(self, team_id: str) -> None:
        super().__init__(f"invalid team identifier: {team_id}")
        self.team_id = team_id


class MissingContent(ReportConvError):
    status_code = 400


class UnreadableUpload(ReportConvError):
    pass


class ScratchFileError(ReportConvError):
    pass


class ConversionTimeout(ReportConvError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"conversion did not finish within {timeout:g}s")
        self.timeout = timeout


class ConversionCancelled(ReportConvError):
    pass


class ConversionFailed(ReportConvError):
    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        diagnostics: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.diagnostics = diagnostics


class ServerStartupError(ReportConvError):
    pass
