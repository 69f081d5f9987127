import warnings
from typing import Any

import litellm
from litellm import completion as litellm_completion

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
litellm.drop_params = True

RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    litellm.exceptions.RateLimitError,
    litellm.exceptions.APIConnectionError,
    litellm.exceptions.Timeout,
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.InternalServerError,
    ConnectionError,
    TimeoutError,
)


def completion(
    model: str,
    messages: list[dict],
    stream: bool = False,
    tools: list[dict] | None = None,
    tool_choice: str | None = None,
    temperature: float = 0.0,
    max_tokens: int = 4096,
    timeout: float | None = None,
    **kwargs,
) -> Any:
    params = {
        "model": model,
        "messages": messages,
        "stream": stream,
        "temperature": temperature,
        "max_tokens": max_tokens,
        **kwargs,
    }

    if tools:
        params["tools"] = tools
        params["tool_choice"] = tool_choice or "auto"
    if timeout is not None:
        params["timeout"] = timeout

    return litellm_completion(**params)


def usage_of(response: Any) -> dict:
    usage = getattr(response, "usage", None)
    try:
        cost_usd = float(litellm.completion_cost(response) or 0.0)
    except Exception:
        cost_usd = 0.0
    return {
        "prompt_tokens": int(getattr(usage, "prompt_tokens", 0) or 0),
        "completion_tokens": int(getattr(usage, "completion_tokens", 0) or 0),
        "total_tokens": int(getattr(usage, "total_tokens", 0) or 0),
        "cost_usd": cost_usd,
    }


def is_retryable_error(error: Exception) -> bool:
    return isinstance(error, RETRYABLE_EXCEPTIONS)
