"""领域层模型与协议。

包含：
- models: Message / ChatRequest / ChatResult 以及端点流式事件。
- conversation: 会话模型及 ConversationStore 协议。
- events: Orchestrator 发给展示层的通知事件与 EventChannel。
- exceptions: 业务异常类型定义。
"""
