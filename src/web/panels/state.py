from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping, Union

NOTICE_INFO = "info"
NOTICE_ERROR = "error"


@dataclass(frozen=True)
class Principal:
    user_id: int
    email: str
    name: str | None = None
    is_admin: bool = False


@dataclass(frozen=True)
class Notice:
    kind: str
    message: str

    @classmethod
    def info(cls, message: str) -> "Notice":
        return cls(NOTICE_INFO, message)

    @classmethod
    def error(cls, message: str) -> "Notice":
        return cls(NOTICE_ERROR, message)

    def to_payload(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass(frozen=True)
class New:
    """Editing marker for an entity that does not exist yet."""

    def to_payload(self) -> str:
        return "new"


@dataclass(frozen=True)
class Existing:
    id: Any

    def to_payload(self) -> Any:
        return self.id


Editing = Union[New, Existing]


def _frozen(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class View:
    """The single live tab of a panel and everything scoped to it."""

    tab: str
    data: Mapping[str, Any] = field(default_factory=dict)
    editing: Mapping[str, Editing] = field(default_factory=dict)
    pending: Mapping[str, Any] = field(default_factory=dict)
    forms: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("data", "editing", "pending", "forms", "params"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    def with_data(self, **changes: Any) -> "View":
        return replace(self, data={**self.data, **changes})

    def start_editing(
        self, kind: str, target: Editing, form: Mapping[str, Any] | None = None
    ) -> "View":
        forms = dict(self.forms)
        if form is None:
            forms.pop(kind, None)
        else:
            forms[kind] = dict(form)
        return replace(self, editing={**self.editing, kind: target}, forms=forms)

    def stop_editing(self, kind: str) -> "View":
        editing = {key: value for key, value in self.editing.items() if key != kind}
        forms = {key: value for key, value in self.forms.items() if key != kind}
        return replace(self, editing=editing, forms=forms)

    def keep_form(self, kind: str, form: Mapping[str, Any]) -> "View":
        return replace(self, forms={**self.forms, kind: dict(form)})

    def request_confirmation(self, kind: str, item_id: Any) -> "View":
        return replace(self, pending={**self.pending, kind: item_id})

    def clear_confirmation(self, kind: str) -> "View":
        pending = {key: value for key, value in self.pending.items() if key != kind}
        return replace(self, pending=pending)


@dataclass(frozen=True)
class PanelState:
    panel: str
    view: View

    @property
    def tab(self) -> str:
        return self.view.tab

    def with_view(self, view: View) -> "PanelState":
        return replace(self, view=view)


@dataclass(frozen=True)
class Redirect:
    panel: str
    tab: str
    notice: Notice | None = None

    def to_payload(self) -> dict[str, str]:
        return {"panel": self.panel, "tab": self.tab}
