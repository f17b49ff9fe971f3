"""上游 Chat 服务的端点配置。

把 base_url 与各个端点路径集中在一处，客户端只按“用途”取 URL，
切换私有部署或国际站时只需修改 base_url。"""

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class EndpointConfig:
    """一个上游服务的全部端点。"""

    name: str
    base_url: str
    chat_path: str = "/v3/chat"
    create_conversation_path: str = "/v1/conversation/create"
    retrieve_path: str = "/v3/chat/retrieve"
    message_list_path: str = "/v3/chat/message/list"

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}{self.chat_path}"

    @property
    def create_conversation_url(self) -> str:
        return f"{self.base_url}{self.create_conversation_path}"

    @property
    def retrieve_url(self) -> str:
        return f"{self.base_url}{self.retrieve_path}"

    @property
    def message_list_url(self) -> str:
        return f"{self.base_url}{self.message_list_path}"

    def with_base_url(self, base_url: str) -> "EndpointConfig":
        return replace(self, base_url=base_url.rstrip("/"))


COZE_CONFIG = EndpointConfig(name="coze", base_url="https://api.coze.cn")
