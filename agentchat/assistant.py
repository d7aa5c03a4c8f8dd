from openai import OpenAI
import openai
from dataclasses import dataclass
from typing import List, Dict, Optional
import logging
import statsd

from agentchat.config import ProviderConfig
from agentchat.errors import ErrorCode, ProviderError

logger = logging.getLogger(__name__)

@dataclass
class Completion:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: Optional[str] = None

    def token_usage(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def build_messages(system_prompt: str, history: List[Dict], user_message: str) -> List[Dict[str, str]]:
    """
    The persona prompt is the only system message sent upstream. System turns
    already stored in the conversation are dropped, not merged, so the prompt
    never repeats however long the session runs.
    """
    messages = [{"role": "system", "content": system_prompt}]
    for turn in history:
        if turn.get("role") == "system":
            continue
        messages.append({"role": turn.get("role", "user"), "content": turn.get("content", "")})
    messages.append({"role": "user", "content": user_message})
    return messages


class LLMAssistant:
    def __init__(self, metrics: statsd.StatsClient, config: ProviderConfig):
        self.metrics = metrics
        self.config = config
        self.model_version = config.model

    # this method should be overriden in the implementation
    def get_completion(self, messages: List[Dict[str, str]]) -> Completion:
        raise NotImplementedError

    def send(self, system_prompt: str, history: List[Dict], user_message: str) -> Completion:
        messages = build_messages(system_prompt, history, user_message)
        logger.info("sending %d messages to %s", len(messages), self.model_version)

        try:
            completion = self.get_completion(messages)
        except ProviderError as e:
            self.metrics.incr("errors.generate_response")
            logger.error("completion failed: %s (%s)", e.message, e.code.value)
            raise

        self.metrics.incr("success.generate_response")
        return completion


class ChatGPTAssistant(LLMAssistant):
    def __init__(self, metrics: statsd.StatsClient, config: ProviderConfig, client: Optional[OpenAI] = None):
        super().__init__(metrics=metrics, config=config)
        # one attempt per send, the caller decides whether to retry
        self.openai_client = client or OpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )

    def get_completion(self, messages):
        try:
            response = self.openai_client.chat.completions.create(
                model=self.model_version,
                messages=messages,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                presence_penalty=self.config.presence_penalty,
                frequency_penalty=self.config.frequency_penalty,
            )
        except openai.APIStatusError as e:
            raise ProviderError(
                ErrorCode.OPENAI_ERROR,
                f"OpenAI API error: {e.message}",
                upstream_status=e.status_code,
            ) from e
        except openai.APIError as e:
            # timeouts and connection failures carry no upstream status
            raise ProviderError(ErrorCode.OPENAI_ERROR, f"OpenAI API error: {e.message}") from e

        text = None
        if response.choices:
            text = response.choices[0].message.content
        if not text:
            raise ProviderError(ErrorCode.AI_AGENT_ERROR, "No response from AI agent")

        usage = response.usage
        return Completion(
            text=text,
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            total_tokens=getattr(usage, "total_tokens", 0) or 0,
            model=getattr(response, "model", None) or self.model_version,
        )
