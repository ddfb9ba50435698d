from __future__ import annotations

from web.panels import chat, pipeline, profile, sources, studio, tools
from web.panels.panel import Panel

PANELS: dict[str, Panel] = {
    module.panel.name: module.panel
    for module in (profile, studio, pipeline, sources, tools, chat)
}


def get_panel(name: str) -> Panel | None:
    return PANELS.get(name)
