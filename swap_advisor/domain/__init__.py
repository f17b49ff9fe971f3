"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatHandle / 流式载荷模型。
- session: 用户 -> 会话 ID 映射的 SessionStore 抽象。
- exceptions: 业务异常类型定义。
"""
