"""请求组装。

根据用户设置（所选模式、启用的开关）与运行配置，计算出一次对话
所需的全部请求参数（RequestPlan）：

1. 解析模式（找不到时回退到目录中的第一个）与真正生效的开关。
2. 系统提示词 = 身份说明 + 模式提示词 + 各开关的提示词片段，以空行分隔；
   调试开关不参与拼接，而是在最后追加一段运行参数快照。
3. 生效开关所拥有的工具随请求发送。
4. 模式开启扩展推理且预算为正时请求推理；同时有工具时必须走 interleaved。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from exgpt_core.capabilities.registry import (
    DEBUG_TOGGLE,
    Mode,
    Toggle,
    effective_toggles,
    resolve_mode,
)
from exgpt_core.config.settings import settings as default_settings
from exgpt_core.domain.models import ChatRequest, Message
from exgpt_core.infrastructure.storage.settings_store import UserSettings
from exgpt_core.prompts import load_identity_prompt
from exgpt_core.tools.definitions import ToolDef

STREAMING_TOGGLE = "streaming"


@dataclass
class RequestPlan:
    mode: Mode
    toggles: List[Toggle]
    system: str
    model: str
    max_tokens: int
    tools: List[ToolDef] = field(default_factory=list)
    thinking_budget: Optional[int] = None
    interleaved: bool = False
    streaming: bool = True

    @property
    def toggle_names(self) -> List[str]:
        return [t.name for t in self.toggles]

    def request(self, messages: List[Dict[str, Any]]) -> ChatRequest:
        return ChatRequest(
            model=self.model,
            max_tokens=self.max_tokens,
            system=self.system,
            messages=messages,
            tools=list(self.tools) or None,
            thinking_budget=self.thinking_budget,
            interleaved=self.interleaved,
        )


def _fallback_mode(cfg) -> Mode:
    return Mode(
        name="default",
        display_name="Default",
        icon="",
        description="",
        prompt="",
        model=cfg.default_model,
        max_tokens=cfg.default_max_tokens,
    )


def build_plan(
    user_settings: UserSettings,
    modes: Sequence[Mode],
    tool_defs: Iterable[ToolDef],
    cfg=None,
) -> RequestPlan:
    cfg = cfg or default_settings
    mode = resolve_mode(user_settings.selected_mode, modes) or _fallback_mode(cfg)
    toggles = effective_toggles(user_settings.enabled_toggles, user_settings.debug_features)
    active = {t.name for t in toggles}

    tools = [tool for tool in tool_defs if tool.toggle in active]
    thinking_budget = mode.thinking_budget if mode.wants_reasoning else None

    plan = RequestPlan(
        mode=mode,
        toggles=toggles,
        system="",
        model=mode.model or cfg.default_model,
        max_tokens=mode.max_tokens or cfg.default_max_tokens,
        tools=tools,
        thinking_budget=thinking_budget,
        interleaved=bool(tools) and thinking_budget is not None,
        streaming=STREAMING_TOGGLE in active,
    )

    parts = [load_identity_prompt(), mode.prompt]
    parts.extend(t.prompt for t in toggles if t.name != DEBUG_TOGGLE)
    system = "\n\n".join(p for p in parts if p)
    if DEBUG_TOGGLE in active:
        system = f"{system}\n\n{debug_snapshot(plan, user_settings)}"
    plan.system = system
    return plan


def debug_snapshot(plan: RequestPlan, user_settings: UserSettings) -> str:
    """配置值与实际生效值的对照，供调试开关注入系统提示词。"""

    def _names(values: Iterable[str]) -> str:
        items = list(values)
        return ", ".join(items) if items else "(none)"

    lines = [
        "[Debug context]",
        f"configured_mode: {user_settings.selected_mode}",
        f"effective_mode: {plan.mode.name}",
        f"configured_toggles: {_names(user_settings.enabled_toggles)}",
        f"effective_toggles: {_names(plan.toggle_names)}",
        f"model: {plan.model}",
        f"max_tokens: {plan.max_tokens}",
        f"thinking_budget: {plan.thinking_budget if plan.thinking_budget is not None else 'off'}",
        f"tools: {_names(t.name for t in plan.tools)}",
        f"streaming: {str(plan.streaming).lower()}",
        f"interleaved: {str(plan.interleaved).lower()}",
    ]
    return "\n".join(lines)


def history_messages(messages: Iterable[Message]) -> List[Dict[str, Any]]:
    """已提交的消息以 role + 纯文本 content 的形式发送。"""

    return [{"role": m.role, "content": m.content} for m in messages]
