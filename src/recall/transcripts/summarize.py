"""Remote summarization of transcripts through the Recall API.

Summaries are a nice-to-have: every failure here is logged and reported as
``None`` so the caller can fall back to the local template summary.
"""

import logging
from typing import Any

import httpx
from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from recall.context.extractor import extract_session, truncate
from recall.context.models import StructuredSession
from recall.crypto.keys import AuthSession
from recall.transcripts.parser import Transcript

logger = logging.getLogger(__name__)

SUMMARIZE_ENDPOINT = "/summarize"
MAX_TRANSCRIPT_CHARS = 200_000

# Provenance comes from the caller, never from the remote summary
PROVENANCE = {"id", "timestamp", "user", "tool", "source"}


def _snake_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {to_snake(k): _snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_snake_keys(v) for v in value]
    return value


def session_from_response(data: dict, **defaults) -> StructuredSession | None:
    """Turn a /summarize response body into a session, or None if unusable.

    Two shapes are understood: a structured session with camelCase keys, and the
    legacy ``{"small": ..., "medium": ...}`` pair of markdown documents.
    """
    if "small" in data or "medium" in data:
        small = data.get("small") if isinstance(data.get("small"), str) else ""
        medium = data.get("medium") if isinstance(data.get("medium"), str) else ""
        session = extract_session(medium, **defaults)
        if session is None and (small.strip() or medium.strip()):
            session = StructuredSession(
                **defaults,
                title=truncate(small or medium, 80),
                short_summary=truncate(small or medium, 200),
                long_summary=medium.strip(),
            )
        return session

    fields = {k: v for k, v in _snake_keys(data).items() if k not in PROVENANCE}
    try:
        session = StructuredSession.model_validate({**fields, **defaults})
    except ValidationError as e:
        logger.warning("Discarding malformed summary: %s", e)
        return None
    return None if session.is_empty() else session


class Summarizer:
    def __init__(
        self,
        session: AuthSession,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 20.0,
    ):
        self.session = session
        self._transport = transport
        self._timeout = timeout

    async def summarize(self, transcript: Transcript, project: str, **defaults) -> StructuredSession | None:
        if not self.session.token:
            return None
        payload = {
            "projectName": project,
            "source": transcript.source,
            "transcript": transcript.render()[-MAX_TRANSCRIPT_CHARS:],
        }
        url = f"{self.session.api_url}{SUMMARIZE_ENDPOINT}"
        headers = {"Authorization": f"Bearer {self.session.token}"}
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(url, headers=headers, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Remote summarization failed, using local summary: %s", e)
            return None

        if not isinstance(data, dict):
            logger.warning("Remote summarization returned a non-object body")
            return None
        if data.get("warning"):
            logger.info("Summarizer: %s", data["warning"])
        return session_from_response(data, **defaults)
