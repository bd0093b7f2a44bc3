"""统一的消息、请求与流式事件数据模型。

本模块定义了在 Orchestrator、Provider 与存储之间共享的标准数据结构：

- Message / ToolInvocation: 持久化到会话中的一条消息。
- ChatRequest / ChatResult: 发给推理端点的请求与一次性（非流式）响应。
- TextDelta / ReasoningDelta / BlockComplete / StreamEnd: 端点流式响应
  被 Provider 解析后的有序事件。

Provider 适配器只依赖这些模型，并负责在端点 JSON 与这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Optional, Any, Dict, List, Tuple, Union, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from exgpt_core.tools.definitions import ToolDef


Role = Literal["user", "assistant"]

# 端点给出的终止原因，常见取值：end_turn / tool_use / max_tokens / stop_sequence
StopReason = str


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class ToolInvocation:
    """模型在生成某条消息时调用过的一个工具（名称 + 输入）。"""

    name: str
    input: Dict[str, Any]


@dataclass
class Message:
    """会话中的一条消息。

    - reasoning: 仅在助手消息使用了扩展推理时存在，按到达顺序排列。
    - tool_invocations: 生成该消息期间执行过的工具调用，按到达顺序排列。

    两个列表用 tuple 保存，提交后不可再修改。
    """

    role: Role
    content: str
    reasoning: Optional[Tuple[str, ...]] = None
    tool_invocations: Optional[Tuple[ToolInvocation, ...]] = None
    created_at: Optional[datetime] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.reasoning:
            payload["reasoning"] = list(self.reasoning)
        if self.tool_invocations:
            payload["tool_invocations"] = [
                {"name": inv.name, "input": inv.input} for inv in self.tool_invocations
            ]
        if self.created_at is not None:
            payload["created_at"] = format_timestamp(self.created_at)
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Message":
        reasoning = data.get("reasoning") or None
        invocations = data.get("tool_invocations") or None
        created_at = data.get("created_at")
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            reasoning=tuple(reasoning) if reasoning else None,
            tool_invocations=tuple(
                ToolInvocation(name=item.get("name", ""), input=item.get("input") or {})
                for item in invocations
            )
            if invocations
            else None,
            created_at=parse_timestamp(created_at) if created_at else None,
        )


@dataclass
class ChatRequest:
    """一次完整的端点请求。

    messages 已经是端点的消息格式（role + content 字符串或内容块列表），
    因为工具循环需要把带签名的 thinking 块、tool_use 块原样回传。
    """

    model: str
    max_tokens: int
    system: str
    messages: List[Dict[str, Any]]
    tools: Optional[List["ToolDef"]] = None
    # 扩展推理预算；None 表示不开启
    thinking_budget: Optional[int] = None
    # 同时开启工具与扩展推理时必须走 interleaved thinking 接口
    interleaved: bool = False


@dataclass
class ChatUsage:
    """端点返回的 token 统计信息。"""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ChatResult:
    """一次非流式调用的结果（标题生成、非流式模式使用）。"""

    model: str
    content: List[Dict[str, Any]]
    stop_reason: Optional[StopReason] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        return "".join(block.get("text", "") for block in self.content if block.get("type") == "text")


# ---- 流式事件 ----


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class BlockComplete:
    """一个内容块结束。

    kind: "text" / "thinking" / "redacted_thinking" / "tool_use"。
    payload: 完整的内容块（端点格式），thinking 块带 signature，
    tool_use 块带 id/name/input。
    """

    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamEnd:
    stop_reason: Optional[StopReason]
    usage: Optional[ChatUsage] = None


StreamEvent = Union[TextDelta, ReasoningDelta, BlockComplete, StreamEnd]
