"""DeepSeek adapter (OpenAI-compatible chat, content generation only)."""

from pinworks.core.models import Stage
from pinworks.core.providers.base import provider_registry
from pinworks.core.providers.openai import ChatCompletionsAdapter


class DeepSeekAdapter(ChatCompletionsAdapter):
    provider_type = "deepseek"
    description = "DeepSeek chat completions (no vision, no images)"
    stages = frozenset({Stage.CONTENT})
    default_models = {Stage.CONTENT: "deepseek-chat"}

    @property
    def base_url(self) -> str:
        return self.config.deepseek_base_url.rstrip("/")


provider_registry.register(DeepSeekAdapter)
