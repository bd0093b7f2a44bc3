"""ExGPT Core 顶层包。

该包提供桌面聊天客户端的核心实现，
包括配置加载、领域模型、推理端点适配、工具系统、
对话交换引擎、Markdown 增量渲染与持久化存储等能力。
"""

from exgpt_core.api.service import ChatService, create_default_service

__all__ = ["ChatService", "create_default_service"]
