"""能力目录：模式与开关。"""

from exgpt_core.capabilities.registry import (
    DEBUG_TOGGLE,
    TOGGLES,
    Mode,
    Toggle,
    effective_toggles,
    get_toggle,
    is_toggle_available,
    load_modes,
    resolve_mode,
    set_toggle,
)

__all__ = [
    "DEBUG_TOGGLE",
    "TOGGLES",
    "Mode",
    "Toggle",
    "effective_toggles",
    "get_toggle",
    "is_toggle_available",
    "load_modes",
    "resolve_mode",
    "set_toggle",
]
