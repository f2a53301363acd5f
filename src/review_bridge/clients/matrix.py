"""Matrix client-server API client acting as an application service.

Only the calls the bridge needs: puppet registration, joining rooms as a
puppet, sending review messages and bot notices. Transaction ids for review
messages are derived from the review id, so a retried delivery is
deduplicated by the homeserver instead of producing a second message.
"""

import html
import logging
import uuid
from typing import Any
from urllib.parse import quote

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from review_bridge.errors import PermanentDeliveryError, TransientDeliveryError
from review_bridge.storage.models import ReviewRecord

logger = logging.getLogger(__name__)

CLIENT_API = "/_matrix/client/v3"


def escape_localpart(value: str) -> str:
    """Map an arbitrary id onto the Matrix user-id grammar.

    Lowercase letters, digits and ``-.=/`` are kept, ``_`` becomes ``__``,
    uppercase letters become ``_`` plus the lowercase letter and anything
    else is ``=xx`` hex encoded, so distinct review ids never collide.
    """
    out = []
    for char in value:
        if char == "_":
            out.append("__")
        elif "A" <= char <= "Z":
            out.append(f"_{char.lower()}")
        elif char.isascii() and (char.isdigit() or "a" <= char <= "z" or char in "-.=/"):
            out.append(char)
        else:
            out.append("".join(f"={b:02x}" for b in char.encode("utf-8")))
    return "".join(out)


def format_review(review: ReviewRecord) -> tuple[str, str]:
    """Plain-text and HTML bodies for a review message."""
    stars = "★" * review.star_rating + "☆" * (5 - review.star_rating)
    details = [v for v in (review.device, review.app_version_name and f"v{review.app_version_name}") if v]
    lines = [f"{stars} {review.author_name}"]
    if review.text:
        lines.append(review.text)
    if details:
        lines.append(" | ".join(details))
    lines.append(f"Review {review.review_id}{' (edited)' if review.is_update else ''}")
    body = "\n".join(lines)

    html_parts = [f"<p><strong>{stars}</strong> {html.escape(review.author_name)}</p>"]
    if review.text:
        html_parts.append(f"<blockquote>{html.escape(review.text)}</blockquote>")
    if details:
        html_parts.append(f"<p><em>{html.escape(' | '.join(details))}</em></p>")
    html_parts.append(f"<p><code>{html.escape(review.review_id)}</code></p>")
    return body, "".join(html_parts)


def _raise_for_status(response: httpx.Response) -> dict:
    try:
        payload = response.json() if response.content else {}
    except ValueError:
        payload = {}
    if response.is_success:
        return payload
    errcode = payload.get("errcode", "")
    message = f"HTTP {response.status_code} {errcode}: {payload.get('error', response.text[:200])}"
    if response.status_code == 429 or response.status_code >= 500 or errcode == "M_LIMIT_EXCEEDED":
        retry_after_ms = payload.get("retry_after_ms")
        raise TransientDeliveryError(
            message,
            "matrix",
            status_code=response.status_code,
            retry_after=retry_after_ms / 1000 if retry_after_ms else None,
        )
    raise PermanentDeliveryError(message, "matrix", response.status_code, errcode=errcode or None)


class MatrixClient:
    """Application-service client for one homeserver."""

    def __init__(
        self,
        homeserver_url: str,
        as_token: str,
        server_name: str,
        puppet_prefix: str = "_googleplay_",
        bot_localpart: str = "googleplaybot",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.homeserver_url = homeserver_url.rstrip("/")
        self.server_name = server_name
        self.puppet_prefix = puppet_prefix
        self.bot_user_id = f"@{bot_localpart}:{server_name}"
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {as_token}"},
            transport=transport,
        )
        self._registered: set[str] = set()
        self._joined: set[tuple[str, str]] = set()

    async def close(self) -> None:
        await self._client.aclose()

    def puppet_user_id(self, review_id: str) -> str:
        return f"@{self.puppet_prefix}{escape_localpart(review_id)}:{self.server_name}"

    def is_puppet(self, user_id: str) -> bool:
        return user_id.startswith(f"@{self.puppet_prefix}") and user_id.endswith(f":{self.server_name}")

    @retry(
        retry=retry_if_exception_type(TransientDeliveryError),
        wait=wait_exponential(multiplier=1, min=2, max=60),
        stop=stop_after_attempt(5),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        *,
        user_id: str | None = None,
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict:
        query = dict(params or {})
        if user_id:
            query["user_id"] = user_id
        try:
            response = await self._client.request(
                method, f"{self.homeserver_url}{CLIENT_API}{path}", json=json, params=query
            )
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"{type(e).__name__}: {e}", "matrix") from e
        return _raise_for_status(response)

    async def create_puppet_user(self, review_id: str, author_name: str) -> str:
        """Register the review's puppet (idempotent) and set its display name."""
        user_id = self.puppet_user_id(review_id)
        if user_id in self._registered:
            return user_id
        localpart = user_id[1:].split(":", 1)[0]
        try:
            await self._request(
                "POST",
                "/register",
                json={"type": "m.login.application_service", "username": localpart},
            )
        except PermanentDeliveryError as e:
            if e.errcode != "M_USER_IN_USE":
                raise
        await self._request(
            "PUT",
            f"/profile/{quote(user_id, safe='')}/displayname",
            user_id=user_id,
            json={"displayname": f"{author_name} (Google Play)"},
        )
        self._registered.add(user_id)
        return user_id

    async def _ensure_joined(self, room_id: str, user_id: str) -> None:
        if (room_id, user_id) in self._joined:
            return
        try:
            await self._request("POST", f"/join/{quote(room_id, safe='')}", user_id=user_id, json={})
        except PermanentDeliveryError as e:
            if e.status_code != 403:
                raise
            await self._request(
                "POST", f"/rooms/{quote(room_id, safe='')}/invite", user_id=self.bot_user_id, json={"user_id": user_id}
            )
            await self._request("POST", f"/join/{quote(room_id, safe='')}", user_id=user_id, json={})
        self._joined.add((room_id, user_id))

    async def _send(self, room_id: str, txn_id: str, content: dict[str, Any], user_id: str) -> str:
        data = await self._request(
            "PUT",
            f"/rooms/{quote(room_id, safe='')}/send/m.room.message/{quote(txn_id, safe='')}",
            user_id=user_id,
            json=content,
        )
        return data["event_id"]

    async def deliver_review(self, review: ReviewRecord, room_id: str) -> str:
        """Post the review as its puppet and return the event id."""
        user_id = self.puppet_user_id(review.review_id)
        await self._ensure_joined(room_id, user_id)
        body, formatted = format_review(review)
        content = {
            "msgtype": "m.text",
            "body": body,
            "format": "org.matrix.custom.html",
            "formatted_body": formatted,
            "com.googleplay.review": {
                "review_id": review.review_id,
                "app_id": review.app_id,
                "star_rating": review.star_rating,
            },
        }
        event_id = await self._send(room_id, f"review-{review.review_id}", content, user_id)
        logger.debug(f"Delivered review {review.review_id} to {room_id} as {event_id}")
        return event_id

    async def send_notice(self, room_id: str, body: str) -> str:
        content = {"msgtype": "m.notice", "body": body}
        return await self._send(room_id, f"notice-{uuid.uuid4().hex}", content, self.bot_user_id)
