"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给模型（ToolDef / ToolParam）。
- 在 ExchangeEngine 中保存和执行模型触发的工具调用（ToolCall / ToolResult）。

每个 ToolDef 归属于一个开关（toggle），只有该开关生效时才会随请求发送。
"""

from dataclasses import dataclass
from typing import Dict, Any


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供模型调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam]
    # 拥有该工具的开关名
    toggle: str = ""


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求（tool_use 块）。"""

    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ToolResult:
    """工具执行结果的封装（文本形式）。"""

    call_id: str
    content: str
