from __future__ import annotations

from typing import Any

from metahub.providers.base import Prompt, ProviderError, ProviderReply, ServiceProvider


class PricedProvider(ServiceProvider):
    default_model: str = ""

    def validate_config(self) -> None:
        if not self.config.get("api_key"):
            raise ProviderError(f"{self.name}: api_key is required")

    def _model(self, prompt: Prompt) -> str:
        return prompt.model or self.config.get("default_model") or self.default_model

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        model = self.config.get("default_model") or self.default_model
        model_cfg = (self.config.get("models") or {}).get(model, {})
        input_price_1m = float(
            model_cfg.get("cost_per_1m_input", model_cfg.get("cost_per_1k_input", 0) * 1000)
        )
        output_price_1m = float(
            model_cfg.get("cost_per_1m_output", model_cfg.get("cost_per_1k_output", 0) * 1000)
        )
        return (input_tokens / 1_000_000 * input_price_1m) + (
            output_tokens / 1_000_000 * output_price_1m
        )


class OpenAICompatibleProvider(PricedProvider):
    """
    Shared implementation for any provider that exposes an OpenAI-compatible
    /chat/completions endpoint.
    """

    _default_base_url: str = "https://api.openai.com/v1"

    def _base_url(self) -> str:
        return self.config.get("api_base", self._default_base_url).rstrip("/")

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config['api_key']}"}

    def _build_messages(self, prompt: Prompt) -> list[dict]:
        messages = []
        if prompt.system:
            messages.append({"role": "system", "content": prompt.system})
        messages.extend(prompt.history)
        messages.append({"role": "user", "content": prompt.message})
        return messages

    def _request(self, prompt: Prompt) -> ProviderReply:
        model = self._model(prompt)
        payload: dict[str, Any] = {
            "model": model,
            "messages": self._build_messages(prompt),
            "max_tokens": prompt.max_tokens or 500,
        }
        if prompt.temperature is not None:
            payload["temperature"] = prompt.temperature

        headers = {"Content-Type": "application/json", **self._auth_headers()}
        with self._client() as client:
            response = client.post(f"{self._base_url()}/chat/completions", headers=headers, json=payload)
            response.raise_for_status()
            data = response.json()

        content = data["choices"][0]["message"]["content"] or ""
        usage = data.get("usage") or {}
        return ProviderReply(
            text=content.strip(),
            tokens_in=usage.get("prompt_tokens"),
            tokens_out=usage.get("completion_tokens"),
            model=data.get("model", model),
        )
