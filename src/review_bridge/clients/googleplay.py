"""Google Play Developer API (reviews) client with retry logic."""

import logging
from datetime import datetime, timezone
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

DEFAULT_BASE_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3"
PAGE_SIZE = 100


def _timestamp(value: dict | None) -> datetime | None:
    """Convert a ``{"seconds": ..., "nanos": ...}`` protobuf timestamp."""
    if not value or "seconds" not in value:
        return None
    seconds = int(value["seconds"]) + int(value.get("nanos", 0)) / 1_000_000_000
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_review(app_id: str, data: dict[str, Any]) -> ReviewRecord | None:
    """Build a ReviewRecord from one entry of ``reviews.list``.

    Returns None for entries without a user comment.
    """
    user_comment: dict[str, Any] | None = None
    developer_comment: dict[str, Any] | None = None
    for comment in data.get("comments", []):
        if "userComment" in comment and user_comment is None:
            user_comment = comment["userComment"]
        elif "developerComment" in comment:
            developer_comment = comment["developerComment"]
    if user_comment is None:
        return None

    modified = _timestamp(user_comment.get("lastModified")) or datetime.now(timezone.utc)
    reply_modified = _timestamp(developer_comment.get("lastModified")) if developer_comment else None
    last_modified = max(modified, reply_modified) if reply_modified else modified
    version_code = user_comment.get("appVersionCode")

    return ReviewRecord(
        review_id=data["reviewId"],
        app_id=app_id,
        author_name=data.get("authorName") or "Anonymous",
        text=(user_comment.get("text") or "").strip() or None,
        star_rating=int(user_comment.get("starRating", 0)) or 1,
        language_code=user_comment.get("reviewerLanguage"),
        device=user_comment.get("device"),
        os_version=str(user_comment["androidOsVersion"]) if "androidOsVersion" in user_comment else None,
        app_version_code=int(version_code) if version_code is not None else None,
        app_version_name=user_comment.get("appVersionName"),
        created_at=modified,
        last_modified_at=last_modified,
        has_reply=developer_comment is not None,
        reply_text=developer_comment.get("text") if developer_comment else None,
        reply_created_at=reply_modified,
        reply_modified_at=reply_modified,
    )


def _raise_for_status(response: httpx.Response) -> None:
    """Map HTTP failures onto transient/permanent delivery errors."""
    if response.is_success:
        return
    detail = response.text[:300]
    if response.status_code == 429 or response.status_code >= 500:
        retry_after = response.headers.get("Retry-After")
        raise TransientDeliveryError(
            f"HTTP {response.status_code}: {detail}",
            "googleplay",
            status_code=response.status_code,
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    raise PermanentDeliveryError(f"HTTP {response.status_code}: {detail}", "googleplay", response.status_code)


class GooglePlayClient:
    """Async client for the Android Publisher reviews API.

    Authentication is a pre-issued OAuth bearer token; obtaining and
    refreshing it is left to the deployment.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        max_pages: int = 50,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_pages = max_pages
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        self._client = httpx.AsyncClient(timeout=timeout, headers=self._headers, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"{type(e).__name__}: {e}", "googleplay") from e
        if response.status_code == 429:
            logger.warning(f"Rate limited by Google Play. Retry-After={response.headers.get('Retry-After')}")
        _raise_for_status(response)
        return response.json() if response.content else {}

    @retry(
        retry=retry_if_exception_type(TransientDeliveryError),
        wait=wait_exponential(multiplier=1, min=2, max=60),
        stop=stop_after_attempt(5),
        reraise=True,
    )
    async def _get(self, path: str, params: dict | None = None) -> dict:
        return await self._request("GET", path, params=params)

    async def fetch_reviews(self, app_id: str, since: datetime, max_results: int) -> list[ReviewRecord]:
        """Reviews modified at or after ``since``, oldest first.

        The API pages newest first, so the whole window is read before the
        oldest ``max_results`` are kept; whatever is left out is newer than
        everything returned and is picked up once the caller's watermark
        reaches it. Google Play only serves the last week of reviews, which
        bounds pagination.
        """
        window: list[ReviewRecord] = []
        token: str | None = None
        path = f"/applications/{quote(app_id, safe='')}/reviews"

        for _ in range(self.max_pages):
            params: dict[str, Any] = {"maxResults": PAGE_SIZE}
            if token:
                params["token"] = token
            data = await self._get(path, params)

            reached_older = False
            for item in data.get("reviews", []):
                review = parse_review(app_id, item)
                if review is None:
                    continue
                if review.last_modified_at < since:
                    reached_older = True
                    continue
                window.append(review)

            token = data.get("tokenPagination", {}).get("nextPageToken")
            if not token or reached_older:
                break
        else:
            logger.warning(f"Stopped paging reviews for {app_id} after {self.max_pages} page(s)")

        window.sort(key=lambda r: r.last_modified_at)
        reviews = window[:max_results]
        logger.debug(
            f"Fetched {len(reviews)} of {len(window)} changed review(s) for {app_id} since {since.isoformat()}"
        )
        return reviews

    async def send_reply(self, app_id: str, review_id: str, text: str) -> None:
        """Reply to a review. Retries are the caller's job."""
        path = f"/applications/{quote(app_id, safe='')}/reviews/{quote(review_id, safe='')}:reply"
        await self._request("POST", path, json={"replyText": text})
        logger.info(f"Posted reply to review {review_id} of {app_id}")
