from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional

from .types import PushEvent, ServerProfile

EVENT_LOG_OUTPUT = "log-output"
EVENT_PROCESS_STARTED = "process-started"
EVENT_PROCESS_STOPPED = "process-stopped"


class BackendError(Exception):
    """A backend command failed; ``message`` is the backend's own text."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class Backend(ABC):
    """Command and push-event surface of the process/proxy/profile backend.

    Every command raises :class:`BackendError` on failure.
    """

    @abstractmethod
    async def list_profiles(self) -> List[ServerProfile]: ...

    @abstractmethod
    async def get_current_profile_id(self) -> Optional[str]: ...

    @abstractmethod
    async def get_current_profile(self) -> Optional[ServerProfile]: ...

    @abstractmethod
    async def set_current_profile(self, profile_id: str) -> None: ...

    @abstractmethod
    async def add_profile(self, name: str) -> str: ...

    @abstractmethod
    async def rename_profile(self, profile_id: str, new_name: str) -> None: ...

    @abstractmethod
    async def delete_profile(self, profile_id: str) -> None: ...

    @abstractmethod
    async def update_profile(self, profile: ServerProfile) -> None: ...

    @abstractmethod
    async def start_process(self) -> str: ...

    @abstractmethod
    async def stop_process(self) -> str: ...

    @abstractmethod
    async def is_process_running(self) -> bool: ...

    @abstractmethod
    async def set_system_proxy(self, enabled: bool) -> str: ...

    @abstractmethod
    async def get_proxy_status(self) -> bool: ...

    @abstractmethod
    async def get_app_version(self) -> str: ...

    @abstractmethod
    def events(self) -> AsyncIterator[PushEvent]:
        """Push events in arrival order; runs until the backend is closed."""

    async def close(self) -> None:
        pass
