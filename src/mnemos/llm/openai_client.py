from typing import Optional
from openai import OpenAI
from mnemos.config import settings
from mnemos.exceptions import ConfigurationError
from mnemos.logging import logger

_client: Optional[OpenAI] = None

def is_configured() -> bool:
    return settings.OPENAI_API_KEY is not None

def get_client() -> OpenAI:
    """
    Build the OpenAI client on first use.
    settings.OPENAI_API_KEY is SecretStr, so the raw value is unwrapped here.
    """
    global _client
    if _client is None:
        if not is_configured():
            raise ConfigurationError("OPENAI_API_KEY is not set")
        _client = OpenAI(api_key=settings.OPENAI_API_KEY.get_secret_value())
    return _client

def get_chat_completion(
    prompt: str,
    system_prompt: str = "You are a helpful assistant.",
    timeout: Optional[float] = None,
    json_mode: bool = False,
) -> str:
    """
    Call OpenAI Chat model at temperature 0.
    """
    try:
        kwargs = {
            "model": settings.OPENAI_MODEL_STRUCTURED,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt}
            ],
            "temperature": 0,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        client = get_client()
        if timeout is not None:
            client = client.with_options(timeout=timeout, max_retries=0)
        response = client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""
    except Exception as e:
        logger.error(f"OpenAI Chat API call failed: {e}")
        raise
