from __future__ import annotations

import importlib
from types import ModuleType
from typing import Any, Optional


def optional_import(name: str) -> Optional[ModuleType]:
    """Try import a module, return None if not available."""
    try:
        return importlib.import_module(name)
    except ImportError:
        return None


def require_module(name: str) -> ModuleType:
    """Import a module, raise a friendly error if missing."""
    mod = optional_import(name)
    if mod is None:
        raise ImportError(
            f"缺少模块: {name}\n"
            "请确认插件模块已安装并在 PYTHONPATH 中，或运行：\n"
            f"  python -m pip install {name.split('.')[0]}\n"
        )
    return mod


def load_object(ref: str) -> Any:
    """Resolve "package.module:attr" to the attribute (instantiated if it is a class)."""
    if ":" not in ref:
        raise ValueError(f"插件引用格式应为 module:attr，实际: {ref}")
    mod_name, attr = ref.split(":", 1)
    mod = require_module(mod_name.strip())
    obj = mod
    for part in attr.strip().split("."):
        if not hasattr(obj, part):
            raise ImportError(f"{mod_name} 中找不到 {attr}")
        obj = getattr(obj, part)
    return obj() if isinstance(obj, type) else obj
