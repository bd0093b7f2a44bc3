"""模式（Mode）与开关（Toggle）目录。

- Mode：一段提示词模板 + 模型参数，从 modes.yaml 读取，只读。
- Toggle：行为开关，可附带一段提示词片段、拥有一个工具、
  依赖另一个开关，或仅在特权调试标志打开时可用。

本模块只做数据查找，不做任何 I/O 以外的副作用。
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

import yaml

MODES_FILE = Path(__file__).resolve().parent / "modes.yaml"
DEBUG_TOGGLE = "debug"


@dataclass(frozen=True)
class Mode:
    name: str
    display_name: str
    icon: str
    description: str
    prompt: str
    model: str
    max_tokens: int
    extended_thinking: bool = False
    thinking_budget: Optional[int] = None

    @property
    def wants_reasoning(self) -> bool:
        """模式开启了扩展推理且配置了正的推理预算。"""
        return self.extended_thinking and (self.thinking_budget or 0) > 0


@dataclass(frozen=True)
class Toggle:
    name: str
    display_name: str
    icon: str
    prompt: str = ""
    depends_on: Optional[str] = None
    requires_debug: bool = False
    tool: Optional[str] = None


TOGGLES: Sequence[Toggle] = (
    Toggle(
        name="streaming",
        display_name="Streaming",
        icon="ph-lightning",
        prompt="Responses are being streamed to the user in real-time.",
    ),
    Toggle(
        name="markdown",
        display_name="Markdown Rendering",
        icon="ph-text-aa",
        prompt=(
            "Your responses will be rendered as GitHub Flavored Markdown (GFM). Use formatting like "
            "**bold**, *italic*, ~~strikethrough~~, `inline code`, fenced code blocks with language "
            "hints, tables, task lists, and other GFM features."
        ),
    ),
    Toggle(name="timestamps", display_name="Show Timestamps", icon="ph-clock"),
    Toggle(
        name="livehtml",
        display_name="Live HTML",
        icon="ph-eyeglasses",
        prompt=(
            "You can output live HTML previews using a special code block. Use ```live followed by a "
            "COMPLETE, properly formatted HTML document starting with <!DOCTYPE html> and including "
            "<html>, <head>, and <body> tags. The HTML will be rendered in a live preview frame. "
            "The document must be fully self-contained and valid."
        ),
        depends_on="markdown",
    ),
    Toggle(
        name="syntaxhighlight",
        display_name="Syntax Highlighting",
        icon="ph-highlighter-circle",
        depends_on="markdown",
    ),
    Toggle(name="darkmode", display_name="Dark Mode", icon="ph-moon"),
    Toggle(
        name="webfetch",
        display_name="Web Fetch",
        icon="ph-globe-simple",
        prompt=(
            "You can fetch web pages with the web_fetch tool. Use it when the user gives you a URL "
            "or when current information from a specific page would help, and cite the URL you used."
        ),
        tool="web_fetch",
    ),
    Toggle(
        name="wolfram",
        display_name="Wolfram Alpha",
        icon="ph-function",
        prompt=(
            "You can send computational, mathematical, scientific and factual data queries to "
            "Wolfram Alpha with the wolfram_alpha tool. Prefer it over mental arithmetic."
        ),
        tool="wolfram_alpha",
    ),
    Toggle(
        name=DEBUG_TOGGLE,
        display_name="Debug Context",
        icon="ph-bug",
        requires_debug=True,
    ),
)

_TOGGLES_BY_NAME: Mapping[str, Toggle] = {t.name: t for t in TOGGLES}


def load_modes(path: Optional[Path | str] = None) -> List[Mode]:
    """从 YAML 读取模式目录；文件缺失或格式错误时返回空列表。"""

    modes_path = Path(path) if path else MODES_FILE
    try:
        data = yaml.safe_load(modes_path.read_text(encoding="utf-8")) or []
    except (OSError, yaml.YAMLError):
        return []
    modes: List[Mode] = []
    for item in data:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        modes.append(
            Mode(
                name=str(item["name"]),
                display_name=str(item.get("display_name") or item["name"]),
                icon=str(item.get("icon") or ""),
                description=str(item.get("description") or ""),
                prompt=str(item.get("prompt") or ""),
                model=str(item.get("model") or ""),
                max_tokens=int(item.get("max_tokens") or 0),
                extended_thinking=bool(item.get("extended_thinking", False)),
                thinking_budget=int(item["thinking_budget"]) if item.get("thinking_budget") else None,
            )
        )
    return modes


def resolve_mode(name: Optional[str], modes: Sequence[Mode]) -> Optional[Mode]:
    """按名称查找模式，找不到时回退到目录中的第一个。"""

    for mode in modes:
        if mode.name == name:
            return mode
    return modes[0] if modes else None


def get_toggle(name: str) -> Optional[Toggle]:
    return _TOGGLES_BY_NAME.get(name)


def is_toggle_available(toggle: Toggle, enabled_names: Iterable[str], debug_features: bool) -> bool:
    """开关控件是否可操作：依赖已启用，且调试开关需要特权标志。"""

    if toggle.requires_debug and not debug_features:
        return False
    if toggle.depends_on and toggle.depends_on not in set(enabled_names):
        return False
    return True


def effective_toggles(enabled_names: Iterable[str], debug_features: bool) -> List[Toggle]:
    """计算真正生效的开关（按目录顺序）。

    存储中的开关列表可能已经过期（例如依赖项被关掉后没有级联清理），
    这里重新校验：依赖未生效的开关一律剔除，直到不再变化（支持依赖链）。
    """

    requested = set(enabled_names)
    active = {
        t.name
        for t in TOGGLES
        if t.name in requested and (debug_features or not t.requires_debug)
    }
    changed = True
    while changed:
        changed = False
        for name in list(active):
            dep = _TOGGLES_BY_NAME[name].depends_on
            if dep and dep not in active:
                active.discard(name)
                changed = True
    return [t for t in TOGGLES if t.name in active]


def set_toggle(enabled_names: Iterable[str], name: str, on: bool) -> List[str]:
    """设置界面切换开关后的新列表。

    打开时要求依赖已启用（否则不变）；关闭时级联关闭依赖它的开关。
    """

    current = [n for n in enabled_names]
    toggle = _TOGGLES_BY_NAME.get(name)
    if toggle is None:
        return current
    if on:
        if toggle.depends_on and toggle.depends_on not in current:
            return current
        if name not in current:
            current.append(name)
        return current
    removed = {name}
    changed = True
    while changed:
        changed = False
        for t in TOGGLES:
            if t.depends_on in removed and t.name not in removed:
                removed.add(t.name)
                changed = True
    return [n for n in current if n not in removed]
