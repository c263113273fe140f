"""Attachment upload side channel.

Images attached to a prompt travel over plain HTTP, not over the session
socket. The upload URL is derived from the session address (same host,
port and secret); the server answers with opaque reference ids which the
prompt frame then carries as ``imagePaths``.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path

import aiohttp

from tether.adapters.addresses import mask_secret, upload_url
from tether.engine.errors import UploadFailure

logger = logging.getLogger(__name__)

UPLOAD_FIELD = "images"


class AttachmentUploader:
    """Uploads local files to the prompt server for one session address."""

    def __init__(
        self,
        address: str,
        *,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._address = address
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    @property
    def url(self) -> str:
        return upload_url(self._address)

    async def upload(self, paths: list[str | Path]) -> list[str]:
        """POST *paths* as multipart ``images``; return server reference ids.

        Raises UploadFailure on any transport, status or payload problem.
        """
        if not paths:
            return []
        url = self.url
        masked = mask_secret(url)

        form = aiohttp.FormData()
        handles = []
        try:
            for path in paths:
                path = Path(path)
                try:
                    handle = open(path, "rb")
                except OSError as exc:
                    raise UploadFailure(masked, f"cannot read {path}: {exc}") from exc
                handles.append(handle)
                content_type = (
                    mimetypes.guess_type(path.name)[0] or "application/octet-stream"
                )
                form.add_field(
                    UPLOAD_FIELD, handle,
                    filename=path.name, content_type=content_type,
                )

            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            logger.info("Uploading %d attachment(s) to %s", len(paths), masked)
            try:
                async with self._session.post(
                    url, data=form,
                    timeout=aiohttp.ClientTimeout(total=self._timeout),
                ) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise UploadFailure(
                            masked, f"HTTP {resp.status}: {body[:200]}",
                        )
                    payload = await resp.json(content_type=None)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError, ValueError) as exc:
                raise UploadFailure(masked, str(exc) or type(exc).__name__) from exc
        finally:
            for handle in handles:
                handle.close()

        refs = payload.get("paths") if isinstance(payload, dict) else None
        if not isinstance(refs, list) or not all(isinstance(r, str) for r in refs):
            raise UploadFailure(masked, f"unexpected response: {payload!r}")
        logger.info("Uploaded %d attachment(s)", len(refs))
        return refs

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
