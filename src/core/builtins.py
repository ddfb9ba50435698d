from __future__ import annotations

from dataclasses import dataclass

from core.refs import Builtin


@dataclass(frozen=True)
class BuiltinServer:
    id: str
    name: str
    description: str

    @property
    def ref(self) -> Builtin:
        return Builtin(self.id)

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.ref.key,
            "name": self.name,
            "description": self.description,
            "url": None,
            "status": "active",
            "global": True,
            "builtin": True,
        }


@dataclass(frozen=True)
class BuiltinSource:
    id: str
    name: str
    description: str
    icon: str

    @property
    def ref(self) -> Builtin:
        return Builtin(self.id)

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.ref.key,
            "url_id": self.ref.url_id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "source_type": "builtin",
            "builtin": True,
        }


BUILTIN_SERVERS: tuple[BuiltinServer, ...] = (
    BuiltinServer(
        id="reports",
        name="Reports",
        description="Create and manage structured reports with nested sections",
    ),
)

BUILTIN_SOURCES: tuple[BuiltinSource, ...] = (
    BuiltinSource(
        id="wiki",
        name="Wiki",
        description="Collaborative wiki pages in markdown",
        icon="book-open",
    ),
)


def find_builtin_server(ref: Builtin) -> BuiltinServer | None:
    for server in BUILTIN_SERVERS:
        if server.id == ref.id:
            return server
    return None


def find_builtin_source(ref: Builtin) -> BuiltinSource | None:
    for source in BUILTIN_SOURCES:
        if source.id == ref.id:
            return source
    return None
