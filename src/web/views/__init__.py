from __future__ import annotations

from . import auth as _auth
from . import panels as _panels
from .shared import bp

_ROUTE_MODULES = (_auth, _panels)

for _module in _ROUTE_MODULES:
    for _name in getattr(_module, "__all__", []):
        globals()[_name] = getattr(_module, _name)

__all__ = ["bp", *(name for module in _ROUTE_MODULES for name in module.__all__)]
