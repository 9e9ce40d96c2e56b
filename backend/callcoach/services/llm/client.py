import json
import asyncio
from typing import Any, Dict, List, Optional, Union
from zhipuai import ZhipuAI
from callcoach.core.config import settings
from callcoach.core.errors import ParseError, UpstreamError
from callcoach.core.logging import get_logger

logger = get_logger("llm_client")

class LLMClient:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or settings.LLM_API_KEY
        self.model = model or settings.LLM_MODEL
        self.total_tokens = 0
        self._client: Optional[ZhipuAI] = None

    @property
    def client(self) -> ZhipuAI:
        if self._client is None:
            self._client = ZhipuAI(api_key=self.api_key)
        return self._client

    @staticmethod
    def clean_json_string(content: str) -> str:
        """
        Extract the JSON payload from a model answer.
        Handles fenced blocks (```json ... ```) and prose around the object.
        """
        content = content.strip()

        # Remove markdown code blocks
        if content.startswith("```"):
            newline_idx = content.find("\n")
            if newline_idx != -1:
                content = content[newline_idx+1:]
            if content.endswith("```"):
                content = content[:-3]
        elif "```" in content:
            # Fenced block in the middle of prose
            start = content.find("```")
            newline_idx = content.find("\n", start)
            end = content.find("```", newline_idx + 1) if newline_idx != -1 else -1
            if newline_idx != -1 and end != -1:
                content = content[newline_idx+1:end]

        content = content.strip()

        first_curly = content.find("{")
        first_square = content.find("[")

        start = -1
        end = -1

        # If both exist, take the earlier one
        if first_curly != -1 and first_square != -1:
            if first_curly < first_square:
                start = first_curly
                end = content.rfind("}")
            else:
                start = first_square
                end = content.rfind("]")
        elif first_curly != -1:
            start = first_curly
            end = content.rfind("}")
        elif first_square != -1:
            start = first_square
            end = content.rfind("]")

        if start != -1 and end != -1:
            return content[start:end+1]

        return content

    def chat_completion(
        self,
        messages: List[Dict[str, str]],
        expect_json: bool = False,
        temperature: float = settings.LLM_TEMPERATURE,
    ) -> Union[Dict[str, Any], List[Any], str]:
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": settings.LLM_MAX_TOKENS,
        }

        try:
            response = self.client.chat.completions.create(**kwargs)
        except Exception as e:
            logger.error(f"LLM Call failed: {e}")
            raise UpstreamError(f"Scoring service call failed: {e}") from e

        if hasattr(response, 'usage') and response.usage:
            self.total_tokens += response.usage.total_tokens

        content = response.choices[0].message.content or ""

        if not expect_json:
            return content

        try:
            return json.loads(self.clean_json_string(content))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode JSON: {content[:500]}")
            raise ParseError(f"Scoring output is not valid JSON: {e}") from e

    async def achat_completion(
        self,
        messages: List[Dict[str, str]],
        expect_json: bool = False,
        temperature: float = settings.LLM_TEMPERATURE,
    ) -> Union[Dict[str, Any], List[Any], str]:
        """Async wrapper for chat_completion using asyncio.to_thread"""
        return await asyncio.to_thread(
            self.chat_completion,
            messages=messages,
            expect_json=expect_json,
            temperature=temperature,
        )

llm_client = LLMClient()
