from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_ROUTING_MODE = "bypass_cn"
ROUTING_MODES = ("global", "bypass_cn", "none")

DRAFT_FIELDS = ("server", "listen", "token", "ip", "dns", "ech")


class ProcessState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class ProxyState(Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"


@dataclass
class ServerProfile:
    id: str
    name: str
    server: str = ""
    listen: str = ""
    token: str = ""
    ip: str = ""
    dns: str = ""
    ech: str = ""
    routing_mode: str = DEFAULT_ROUTING_MODE
    # Fields the form does not know about, written back untouched on save
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerProfile":
        known = {"id", "name", "routing_mode", *DRAFT_FIELDS}
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            server=data.get("server") or "",
            listen=data.get("listen") or "",
            token=data.get("token") or "",
            ip=data.get("ip") or "",
            dns=data.get("dns") or "",
            ech=data.get("ech") or "",
            routing_mode=data.get("routing_mode") or DEFAULT_ROUTING_MODE,
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "name": self.name,
                "server": self.server,
                "listen": self.listen,
                "token": self.token,
                "ip": self.ip,
                "dns": self.dns,
                "ech": self.ech,
                "routing_mode": self.routing_mode,
            }
        )
        return data


@dataclass
class FormDraft:
    """Unsaved edits of the current profile's editable fields.

    ``routing_mode`` is None when no routing choice is selected.
    """

    server: str = ""
    listen: str = ""
    token: str = ""
    ip: str = ""
    dns: str = ""
    ech: str = ""
    routing_mode: Optional[str] = DEFAULT_ROUTING_MODE

    @classmethod
    def from_profile(cls, profile: ServerProfile) -> "FormDraft":
        return cls(
            server=profile.server,
            listen=profile.listen,
            token=profile.token,
            ip=profile.ip,
            dns=profile.dns,
            ech=profile.ech,
            routing_mode=profile.routing_mode or DEFAULT_ROUTING_MODE,
        )

    @property
    def effective_routing_mode(self) -> str:
        return self.routing_mode or DEFAULT_ROUTING_MODE

    def merged_onto(self, profile: ServerProfile) -> ServerProfile:
        return replace(
            profile,
            server=self.server,
            listen=self.listen,
            token=self.token,
            ip=self.ip,
            dns=self.dns,
            ech=self.ech,
            routing_mode=self.effective_routing_mode,
            extra=dict(profile.extra),
        )


@dataclass
class PushEvent:
    name: str
    payload: Any = None
