"""
LineClient - LINE Messaging API calls used by the webhook handler.

Profile and group lookups are best-effort: every failure (network, 4xx/5xx,
unconfigured token) is logged and returns None, so room naming falls back to
a placeholder instead of failing the event.

The aiohttp ClientSession is created in start() inside the running event
loop (lifespan) and closed in close().
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from line_summarizer.config import settings
from line_summarizer.core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class LineProfile:
    user_id: str
    display_name: str
    picture_url: Optional[str] = None


class LineClient:

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.access_token = settings.LINE_CHANNEL_ACCESS_TOKEN if access_token is None else access_token
        self.api_url = (api_url or settings.LINE_API_URL).rstrip("/")
        self.timeout = timeout or settings.LINE_API_TIMEOUT
        self._session: Optional[aiohttp.ClientSession] = None
        self._started = False

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    async def start(self) -> None:
        if self._started:
            logger.warning("line_client_already_started")
            return

        connector = aiohttp.TCPConnector(
            limit=100,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout, connect=min(self.timeout, 5.0)),
            trust_env=False,
            raise_for_status=False,
        )
        self._started = True
        logger.info("line_client_started", api_url=self.api_url, configured=self.configured)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("line_client_http_session_closed")
        self._session = None
        self._started = False

    def _get_session(self) -> aiohttp.ClientSession:
        if not self._started or self._session is None:
            raise RuntimeError(
                "LineClient not started. Call await line_client.start() during app startup (lifespan)."
            )
        if self._session.closed:
            raise RuntimeError("HTTP session is closed. LineClient cannot be used after shutdown.")
        return self._session

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _get_json(self, path: str, **context) -> Optional[Dict[str, Any]]:
        if not self.configured:
            logger.debug("line_lookup_skipped", path=path, reason="not_configured")
            return None

        try:
            session = self._get_session()
            async with session.get(f"{self.api_url}{path}", headers=self._headers) as response:
                if response.status != 200:
                    logger.warning("line_lookup_failed", path=path, status_code=response.status, **context)
                    return None
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as e:
            logger.warning(
                "line_lookup_error",
                path=path,
                error_type=type(e).__name__,
                error=str(e),
                **context,
            )
            return None

    async def get_user_profile(self, user_id: str) -> Optional[LineProfile]:
        data = await self._get_json(f"/v2/bot/profile/{user_id}", user_id=user_id)
        if not data or not data.get("displayName"):
            return None
        return LineProfile(user_id, data["displayName"], data.get("pictureUrl"))

    async def get_group_summary(self, group_id: str) -> Optional[str]:
        """Group name, or None."""
        data = await self._get_json(f"/v2/bot/group/{group_id}/summary", group_id=group_id)
        return data.get("groupName") if data else None

    async def get_group_member_profile(self, group_id: str, user_id: str) -> Optional[LineProfile]:
        data = await self._get_json(
            f"/v2/bot/group/{group_id}/member/{user_id}",
            group_id=group_id,
            user_id=user_id,
        )
        if not data or not data.get("displayName"):
            return None
        return LineProfile(user_id, data["displayName"], data.get("pictureUrl"))

    async def get_room_member_profile(self, room_id: str, user_id: str) -> Optional[LineProfile]:
        data = await self._get_json(
            f"/v2/bot/room/{room_id}/member/{user_id}",
            room_id=room_id,
            user_id=user_id,
        )
        if not data or not data.get("displayName"):
            return None
        return LineProfile(user_id, data["displayName"], data.get("pictureUrl"))

    async def reply_message(self, reply_token: str, texts: List[str]) -> bool:
        """Send up to five text messages as a reply. False on any failure."""
        if not self.configured or not reply_token:
            logger.debug("line_reply_skipped", reason="not_configured" if reply_token else "no_reply_token")
            return False

        body = {
            "replyToken": reply_token,
            "messages": [{"type": "text", "text": text[:5000]} for text in texts[:5]],
        }
        try:
            session = self._get_session()
            async with session.post(
                f"{self.api_url}/v2/bot/message/reply",
                json=body,
                headers=self._headers,
            ) as response:
                if response.status != 200:
                    logger.warning("line_reply_failed", status_code=response.status)
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as e:
            logger.warning("line_reply_error", error_type=type(e).__name__, error=str(e))
            return False

        logger.debug("line_reply_sent", messages=len(body["messages"]))
        return True


_line_client: Optional[LineClient] = None


def get_line_client() -> LineClient:
    global _line_client
    if _line_client is None:
        _line_client = LineClient()
    return _line_client
