"""Turn a multipart upload into a ConversionRequest.

Decoding and materialization happen in one pass: the Markdown payload is
streamed straight into the request's input scratch file instead of being
buffered first, since an uploaded file may be large.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Optional

from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import ClientDisconnect, Request
from starlette.types import Message

from .config import REQUEST_READ_TIMEOUT_SECONDS, Config, UnknownTeamPolicy, lookup_team_name
from .errors import (
    ConversionCancelled,
    InvalidTeam,
    MalformedRequest,
    MissingContent,
    MissingTeam,
    RequestTooLarge,
    ScratchFileError,
    UnreadableUpload,
)
from .workspace import ScratchFile, Workspace


logger = logging.getLogger(__name__)

TEAM_FIELD = "team"
MD_FILE_FIELD = "md-file"
MD_CONTENT_FIELD = "md-content"

UPLOAD_CHUNK_BYTES = 64 * 1024
# Placeholder display name used when unknown teams are let through.
UNKNOWN_TEAM_NAME = ""


class MarkdownSource(str, Enum):
    FILE = "file"
    INLINE = "inline"


@dataclass(frozen=True)
class ConversionRequest:
    team_id: str
    team_name: str
    source: MarkdownSource
    input: ScratchFile


async def decode_request(request: Request, workspace: Workspace, config: Config) -> ConversionRequest:
    form = await _parse_form(request, config)
    try:
        team_id, team_name = _resolve_team(form, config.unknown_team_policy)
        scratch = workspace.acquire("input")
        source = await _materialize_markdown(form, scratch)
    finally:
        await form.close()

    return ConversionRequest(team_id=team_id, team_name=team_name, source=source, input=scratch)


async def _parse_form(request: Request, config: Config) -> FormData:
    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith("multipart/form-data"):
        raise MalformedRequest(f"expected multipart/form-data, got {content_type or 'no content type'}")

    declared = request.headers.get("content-length")
    if declared is not None:
        try:
            size = int(declared)
        except ValueError:
            raise MalformedRequest(f"invalid content length: {declared!r}") from None
        if size > config.max_request_bytes:
            raise RequestTooLarge(f"request body of {size} bytes exceeds {config.max_request_bytes}")

    try:
        return await _read_form(request, config.max_request_bytes, REQUEST_READ_TIMEOUT_SECONDS)
    except ClientDisconnect:
        raise ConversionCancelled("client disconnected while sending the request") from None
    except (MultiPartException, StarletteHTTPException) as exc:
        detail = getattr(exc, "message", None) or getattr(exc, "detail", None) or str(exc)
        raise MalformedRequest(f"failed to parse multipart request body: {detail}") from exc


async def _read_form(request: Request, max_part_size: int, timeout: float) -> FormData:
    """Parse the form, failing once reading the body takes longer than *timeout*.

    The deadline is checked on every receive and surfaces as a
    MultiPartException, so the parser closes the files it spooled so far.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    async def receive() -> Message:
        try:
            return await asyncio.wait_for(request.receive(), timeout=max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            raise MultiPartException(f"timed out reading request body after {timeout:g}s") from None

    return await Request(request.scope, receive).form(max_part_size=max_part_size)


def _resolve_team(form: FormData, policy: UnknownTeamPolicy) -> tuple[str, str]:
    team_id = _text_field(form, TEAM_FIELD)
    if not team_id:
        raise MissingTeam("request has no team identifier")

    team_name = lookup_team_name(team_id)
    if team_name is not None:
        return team_id, team_name

    if policy is UnknownTeamPolicy.REJECT:
        raise InvalidTeam(team_id)

    logger.warning("invalid team identifier: %s, continuing without a team name", team_id)
    return team_id, UNKNOWN_TEAM_NAME


def _text_field(form: FormData, name: str) -> Optional[str]:
    value = form.get(name)
    if isinstance(value, str):
        return value
    return None


def _uploaded_file(form: FormData, name: str) -> Optional[UploadFile]:
    # Browsers send an empty, nameless file part when nothing was picked.
    # That part and a plain text value under the same name both count as absent.
    value = form.get(name)
    if isinstance(value, UploadFile) and value.filename:
        return value
    return None


async def _materialize_markdown(form: FormData, scratch: ScratchFile) -> MarkdownSource:
    upload = _uploaded_file(form, MD_FILE_FIELD)
    if upload is not None:
        await _copy_upload(upload, scratch)
        return MarkdownSource.FILE

    content = _text_field(form, MD_CONTENT_FIELD)
    if not content:
        raise MissingContent(f"neither {MD_FILE_FIELD} nor {MD_CONTENT_FIELD} was provided")

    try:
        scratch.path.write_bytes(content.encode("utf-8"))
    except OSError as exc:
        raise ScratchFileError(f"failed to write contents to temporary file: {exc}") from exc
    return MarkdownSource.INLINE


async def _copy_upload(upload: UploadFile, scratch: ScratchFile) -> None:
    try:
        handle: BinaryIO = scratch.path.open("wb")
    except OSError as exc:
        raise ScratchFileError(f"failed to open temporary file: {exc}") from exc

    with handle:
        while True:
            try:
                chunk = await upload.read(UPLOAD_CHUNK_BYTES)
            except OSError as exc:
                raise UnreadableUpload(f"failed to read file {upload.filename!r}: {exc}") from exc
            if not chunk:
                break
            try:
                handle.write(chunk)
            except OSError as exc:
                raise ScratchFileError(f"failed to write contents to temporary file: {exc}") from exc
