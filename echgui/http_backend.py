import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import requests

from .backend import Backend, BackendError
from .types import PushEvent, ServerProfile

logger = logging.getLogger(__name__)


def _decode_profile(data: Any) -> ServerProfile:
    try:
        return ServerProfile.from_dict(data)
    except (KeyError, TypeError, AttributeError) as e:
        raise BackendError(f"无效的服务器配置: {data!r}") from e


class HttpBackend(Backend):
    """Talks to the local backend bridge over HTTP.

    Commands are ``POST {base_url}/invoke/{command}`` with JSON arguments and
    answer ``{"ok": true, "result": ...}`` or ``{"ok": false, "error": "..."}``.
    Push events are long-polled from ``GET {base_url}/events``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5,
        event_poll_timeout: float = 25,
        event_retry_seconds: float = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.event_poll_timeout = event_poll_timeout
        self.event_retry_seconds = event_retry_seconds
        self._session = session or requests.Session()
        self._last_seq = 0
        self._closed = False

    def _invoke_sync(self, command: str, args: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/invoke/{command}"
        try:
            resp = self._session.post(url, json=args, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            raise BackendError(f"{command}: {e}") from e
        except ValueError as e:
            raise BackendError(f"{command}: 无效的响应 ({e})") from e

        if not isinstance(body, dict):
            raise BackendError(f"{command}: 无效的响应")
        if not body.get("ok", False):
            raise BackendError(str(body.get("error") or f"{command} 失败"))
        return body.get("result")

    async def _invoke(self, command: str, **args: Any) -> Any:
        logger.debug("invoke %s %s", command, sorted(args))
        return await asyncio.to_thread(self._invoke_sync, command, args)

    async def list_profiles(self) -> List[ServerProfile]:
        result = await self._invoke("get_servers")
        return [_decode_profile(item) for item in result or []]

    async def get_current_profile_id(self) -> Optional[str]:
        result = await self._invoke("get_current_server_id")
        return str(result) if result else None

    async def get_current_profile(self) -> Optional[ServerProfile]:
        result = await self._invoke("get_current_server")
        return _decode_profile(result) if result else None

    async def set_current_profile(self, profile_id: str) -> None:
        await self._invoke("set_current_server", id=profile_id)

    async def add_profile(self, name: str) -> str:
        result = await self._invoke("add_server", name=name)
        # The bridge answers with the created profile
        if isinstance(result, dict):
            return _decode_profile(result).id
        return str(result)

    async def rename_profile(self, profile_id: str, new_name: str) -> None:
        await self._invoke("rename_server", id=profile_id, newName=new_name)

    async def delete_profile(self, profile_id: str) -> None:
        await self._invoke("delete_server", id=profile_id)

    async def update_profile(self, profile: ServerProfile) -> None:
        await self._invoke("update_server", server=profile.to_dict())

    async def start_process(self) -> str:
        return str(await self._invoke("start_process") or "")

    async def stop_process(self) -> str:
        return str(await self._invoke("stop_process") or "")

    async def is_process_running(self) -> bool:
        return bool(await self._invoke("is_process_running"))

    async def set_system_proxy(self, enabled: bool) -> str:
        return str(await self._invoke("set_system_proxy", enabled=enabled) or "")

    async def get_proxy_status(self) -> bool:
        return bool(await self._invoke("get_proxy_status"))

    async def get_app_version(self) -> str:
        return str(await self._invoke("get_app_version") or "")

    def _poll_sync(self) -> List[PushEvent]:
        try:
            resp = self._session.get(
                f"{self.base_url}/events",
                params={"after": self._last_seq, "timeout": self.event_poll_timeout},
                timeout=self.event_poll_timeout + self.timeout,
            )
            resp.raise_for_status()
            items = resp.json().get("events") or []
            if not isinstance(items, list):
                raise ValueError("events is not a list")
        except requests.RequestException as e:
            raise BackendError(f"events: {e}") from e
        except (ValueError, AttributeError) as e:
            raise BackendError(f"events: 无效的响应 ({e})") from e

        events: List[PushEvent] = []
        for item in items:
            try:
                seq = int(item.get("seq") or 0)
                name = item["event"]
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning("skipping malformed event %r", item)
                if isinstance(item, dict) and isinstance(item.get("seq"), int):
                    self._last_seq = max(self._last_seq, item["seq"])
                continue
            if seq and seq <= self._last_seq:
                continue
            self._last_seq = max(self._last_seq, seq)
            events.append(PushEvent(name=str(name), payload=item.get("payload")))
        return events

    async def events(self) -> AsyncIterator[PushEvent]:
        while not self._closed:
            try:
                batch = await asyncio.to_thread(self._poll_sync)
            except BackendError as e:
                if self._closed:
                    break
                logger.warning("event channel unavailable: %s", e)
                await asyncio.sleep(self.event_retry_seconds)
                continue
            for event in batch:
                yield event

    async def close(self) -> None:
        self._closed = True
        self._session.close()
