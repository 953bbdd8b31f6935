from openai import AsyncOpenAI

from storytime.services.prompts import SYSTEM_PROMPT

class OpenAIClient:
    """generate_text(prompt, max_tokens) -> str. base_url позволяет ходить в OpenAI-совместимых провайдеров."""

    def __init__(self, api_key: str, model: str, base_url: str | None = None, timeout: float = 60.0):
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or None,
            timeout=timeout,
            max_retries=0,
        )
        self.model = model

    async def generate_text(self, prompt: str, *, max_tokens: int) -> str:
        params = {
            "model": self.model,
            "instructions": SYSTEM_PROMPT,
            "input": prompt,
            "max_output_tokens": max_tokens,
        }

        resp = await self.client.responses.create(**params)
        out = resp.output_text or ""
        if out.strip():
            return out

        # one retry for empty responses with a plain-text fallback request
        params_retry = dict(params)
        params_retry["instructions"] = f"{SYSTEM_PROMPT}\n\nWrite the story now, as plain text."
        resp_retry = await self.client.responses.create(**params_retry)
        return resp_retry.output_text or ""
