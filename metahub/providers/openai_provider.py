from metahub.providers.common import OpenAICompatibleProvider


class OpenAIProvider(OpenAICompatibleProvider):
    provider_type = "OpenAI"
    default_model = "gpt-4o-mini"
    _default_base_url = "https://api.openai.com/v1"
