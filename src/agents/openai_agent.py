"""OpenAIAgent - AgentHandler backed by the OpenAI chat completions API."""

import json
import os
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from .base import AgentHandler, AgentRequest, AgentResponse, AgentUsage


class OpenAIAgent(AgentHandler):
    """
    Agent that sends the step prompt and context to an OpenAI model.

    The step context is appended to the user prompt as JSON. When
    ``json_output`` is set the model is asked for a JSON object and the
    parsed object becomes the completion.

    Example:
        registry.register(OpenAIAgent(name="writer", json_output=True))
    """

    version = "1.0.0"
    description = "Chat completion via the OpenAI API"

    def __init__(
        self,
        name: str = "openai",
        model: Optional[str] = None,
        json_output: bool = False,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        super().__init__()
        self.name = name
        self.json_output = json_output

        if client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError(
                    "OPENAI_API_KEY environment variable must be set to use OpenAIAgent"
                )
            client = AsyncOpenAI(api_key=api_key)
        self.client = client
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    def build_messages(self, request: AgentRequest) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})

        content = request.user_prompt
        if request.context:
            content += "\n\nContext:\n" + json.dumps(request.context, default=str)
        messages.append({"role": "user", "content": content})
        return messages

    async def complete(self, request: AgentRequest) -> AgentResponse:
        kwargs: Dict[str, Any] = {
            "model": request.model or self.model,
            "messages": self.build_messages(request),
            "max_tokens": request.max_tokens,
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if self.json_output:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(**kwargs)

        raw = response.choices[0].message.content or ""
        completion: Any = raw
        if self.json_output:
            try:
                completion = json.loads(raw or "{}")
            except json.JSONDecodeError as e:
                raise ValueError(f"Failed to parse LLM response: {e}") from e

        usage = AgentUsage()
        if response.usage is not None:
            usage = AgentUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )

        return AgentResponse(completion=completion, usage=usage)
