from __future__ import annotations

from typing import Any

from metahub.providers.base import Prompt, ProviderReply
from metahub.providers.common import PricedProvider


class AnthropicProvider(PricedProvider):
    provider_type = "Anthropic"
    default_model = "claude-3-5-haiku-latest"

    def _request(self, prompt: Prompt) -> ProviderReply:
        base_url = self.config.get("api_base", "https://api.anthropic.com").rstrip("/")
        model = self._model(prompt)

        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": prompt.max_tokens or 500,
            "messages": list(prompt.history) + [{"role": "user", "content": prompt.message}],
        }
        if prompt.system:
            payload["system"] = prompt.system
        if prompt.temperature is not None:
            payload["temperature"] = prompt.temperature

        headers = {
            "x-api-key": self.config["api_key"],
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }
        with self._client() as client:
            response = client.post(f"{base_url}/v1/messages", headers=headers, json=payload)
            response.raise_for_status()
            data = response.json()

        # First text block; thinking blocks are skipped
        text_content = ""
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_content = block["text"]
                break

        usage = data.get("usage") or {}
        return ProviderReply(
            text=text_content.strip(),
            tokens_in=usage.get("input_tokens"),
            tokens_out=usage.get("output_tokens"),
            model=data.get("model", model),
        )
