# sqlassist/llm_wrapper.py
"""
Centralized LLM wrapper. Supports OpenAI (and OpenAI-compatible endpoints) and Anthropic backends.
call_llm returns a standardized dict:
{
  "text": "<assistant text>",
  "model": "<model used>",
  "response_id": "<model response id if available>",
  "raw": <raw response object>
}
stream_llm feeds text deltas to a callback as they arrive and returns the same dict.

Configuration (env vars):
  LLM_PROVIDER=openai|anthropic   (default: auto-detect based on available keys)
  OPENAI_API_KEY=... / LLM_API_KEY=...
  ANTHROPIC_API_KEY=...
  LLM_BASE_URL=...                (OpenAI-compatible endpoint, optional)
  LLM_MODEL=...                   (default: depends on provider)
  LLM_TIMEOUT=120                 (seconds, per call)
  MOCK_LLM=true                   (mock mode for dev/tests)

Provider errors are mapped onto the service taxonomy:
  connection errors -> TransportFailure, timeouts -> GenerationTimeout, anything else -> GenerationFailed
"""

import os
import time
from typing import Dict, Any, Optional, List, Callable

from sqlassist.errors import GenerationFailed, GenerationTimeout, TransportFailure

MOCK_LLM = os.getenv("MOCK_LLM", "true").lower() in ("1", "true", "yes")
OPENAI_API_KEY = (os.getenv("OPENAI_API_KEY") or os.getenv("LLM_API_KEY") or "").strip()
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "").strip()
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "").strip() or None
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))

# Auto-detect provider: explicit > anthropic if key present > openai
_explicit_provider = os.getenv("LLM_PROVIDER", "").strip().lower()
if _explicit_provider in ("anthropic", "claude"):
    LLM_PROVIDER = "anthropic"
elif _explicit_provider in ("openai", "gpt", "deepseek", "openai_compatible"):
    LLM_PROVIDER = "openai"
elif ANTHROPIC_API_KEY:
    LLM_PROVIDER = "anthropic"
elif OPENAI_API_KEY:
    LLM_PROVIDER = "openai"
else:
    LLM_PROVIDER = "openai"  # fallback, will use mock anyway

_ANTHROPIC_DEFAULT = "claude-sonnet-4-20250514"
_OPENAI_DEFAULT = "gpt-4o-mini"

DEFAULT_MODEL = os.getenv(
    "LLM_MODEL",
    _ANTHROPIC_DEFAULT if LLM_PROVIDER == "anthropic" else _OPENAI_DEFAULT
)

TextCallback = Callable[[str], None]
StopCheck = Callable[[], bool]


def _split_system(messages: List[Dict[str, str]]):
    # Anthropic uses a separate system param, not a system message in messages list
    system_text = ""
    chat_messages = []
    for m in messages:
        if m["role"] == "system":
            system_text += m["content"] + "\n"
        else:
            chat_messages.append({"role": m["role"], "content": m["content"]})
    return system_text.strip(), chat_messages


def _map_provider_error(e: Exception) -> Exception:
    """Translate SDK exceptions. Both SDKs derive their timeout error from the connection error."""
    if isinstance(e, (GenerationFailed, TransportFailure)):
        return e
    if LLM_PROVIDER == "anthropic":
        from anthropic import APIConnectionError, APITimeoutError
    else:
        from openai import APIConnectionError, APITimeoutError
    if isinstance(e, APITimeoutError):
        return GenerationTimeout(f"LLM call timed out ({LLM_PROVIDER}): {e}")
    if isinstance(e, APIConnectionError):
        return TransportFailure(f"LLM provider unreachable ({LLM_PROVIDER}): {e}")
    return GenerationFailed(f"LLM call failed ({LLM_PROVIDER}): {e}")


# ---------------------------------------------------------------------------
# Anthropic backend
# ---------------------------------------------------------------------------
def _anthropic_client(timeout: float):
    from anthropic import Anthropic
    return Anthropic(api_key=ANTHROPIC_API_KEY, timeout=timeout, max_retries=0)


def _anthropic_kwargs(messages, model, max_tokens, temperature) -> Dict[str, Any]:
    system_text, chat_messages = _split_system(messages)
    kwargs = {
        "model": model,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": chat_messages,
    }
    if system_text:
        kwargs["system"] = system_text
    return kwargs


def _real_anthropic_chat(messages: List[Dict[str, str]], model: str,
                         max_tokens: int = 4096, temperature: float = 0.0,
                         timeout: float = 30) -> Dict[str, Any]:
    client = _anthropic_client(timeout)
    resp = client.messages.create(**_anthropic_kwargs(messages, model, max_tokens, temperature))

    text = ""
    for block in resp.content:
        if hasattr(block, "text"):
            text += block.text

    rid = getattr(resp, "id", None)
    return {"text": text, "model": model, "response_id": rid, "raw": resp}


def _real_anthropic_stream(messages: List[Dict[str, str]], model: str, on_text: TextCallback,
                           should_stop: StopCheck, max_tokens: int = 4096,
                           temperature: float = 0.0, timeout: float = 30) -> Dict[str, Any]:
    client = _anthropic_client(timeout)
    parts: List[str] = []
    rid = None
    # leaving the context manager closes the HTTP stream
    with client.messages.stream(**_anthropic_kwargs(messages, model, max_tokens, temperature)) as stream:
        for delta in stream.text_stream:
            if should_stop():
                raise GenerationTimeout("LLM stream stopped: deadline exceeded")
            if delta:
                parts.append(delta)
                on_text(delta)
        try:
            rid = stream.get_final_message().id
        except Exception:
            rid = None
    return {"text": "".join(parts), "model": model, "response_id": rid, "raw": None}


# ---------------------------------------------------------------------------
# OpenAI backend
# ---------------------------------------------------------------------------
def _openai_client(timeout: float):
    from openai import OpenAI
    return OpenAI(api_key=OPENAI_API_KEY, base_url=LLM_BASE_URL, timeout=timeout, max_retries=0)


def _real_openai_chat_completion(messages: List[Dict[str, str]], model: str,
                                  max_tokens: int = 4096, temperature: float = 0.0,
                                  timeout: float = 15) -> Dict[str, Any]:
    client = _openai_client(timeout)
    resp = client.chat.completions.create(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature
    )
    choices = getattr(resp, "choices", [])
    text = choices[0].message.content if choices else ""
    rid = getattr(resp, "id", None)
    return {"text": text or "", "model": model, "response_id": rid, "raw": resp}


def _real_openai_stream(messages: List[Dict[str, str]], model: str, on_text: TextCallback,
                        should_stop: StopCheck, max_tokens: int = 4096,
                        temperature: float = 0.0, timeout: float = 15) -> Dict[str, Any]:
    client = _openai_client(timeout)
    stream = client.chat.completions.create(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature,
        stream=True,
    )
    parts: List[str] = []
    rid = None
    try:
        for chunk in stream:
            if should_stop():
                raise GenerationTimeout("LLM stream stopped: deadline exceeded")
            rid = rid or getattr(chunk, "id", None)
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                parts.append(delta)
                on_text(delta)
    finally:
        stream.close()
    return {"text": "".join(parts), "model": model, "response_id": rid, "raw": None}


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------
def _mock_llm(messages: List[Dict[str, str]], model: str, **kwargs) -> Dict[str, Any]:
    """
    Deterministic mock used in dev/tests. Returns the concatenation of user messages as text,
    and a deterministic response_id based on time.
    """
    user_texts = [m["content"] for m in messages if m["role"] == "user"]
    text = ("\n\n").join(user_texts)[:1000]  # truncated
    rid = f"mock-{model}-{int(time.time() * 1000)}"
    return {"text": text, "model": model, "response_id": rid, "raw": {"mock": True}}


def _mock_stream(messages: List[Dict[str, str]], model: str, on_text: TextCallback,
                 should_stop: StopCheck, **kwargs) -> Dict[str, Any]:
    resp = _mock_llm(messages, model)
    text = resp["text"]
    for i in range(0, len(text), 64):
        if should_stop():
            raise GenerationTimeout("LLM stream stopped: deadline exceeded")
        on_text(text[i:i + 64])
    return resp


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def call_llm(messages: List[Dict[str, str]], model: Optional[str] = None,
             max_tokens: int = 4096, temperature: float = 0.0,
             timeout: Optional[float] = None) -> Dict[str, Any]:
    """
    messages: list of {role, content}
    model: override model string
    Returns: dict with keys 'text','model','response_id','raw'
    """
    model = model or DEFAULT_MODEL
    timeout = LLM_TIMEOUT if timeout is None else timeout
    if timeout <= 0:
        raise GenerationTimeout("LLM deadline already exceeded")
    if MOCK_LLM:
        return _mock_llm(messages, model=model, max_tokens=max_tokens,
                         temperature=temperature, timeout=timeout)
    try:
        if LLM_PROVIDER == "anthropic":
            return _real_anthropic_chat(messages, model=model,
                                        max_tokens=max_tokens,
                                        temperature=temperature,
                                        timeout=timeout)
        else:
            return _real_openai_chat_completion(messages, model=model,
                                                max_tokens=max_tokens,
                                                temperature=temperature,
                                                timeout=timeout)
    except Exception as e:
        raise _map_provider_error(e) from e


def stream_llm(messages: List[Dict[str, str]], on_text: TextCallback,
               should_stop: Optional[StopCheck] = None, model: Optional[str] = None,
               max_tokens: int = 4096, temperature: float = 0.0,
               timeout: Optional[float] = None) -> Dict[str, Any]:
    """
    Streaming variant of call_llm. ``on_text`` receives each text delta in order;
    ``should_stop`` is polled between deltas and aborts the stream with GenerationTimeout.
    """
    model = model or DEFAULT_MODEL
    timeout = LLM_TIMEOUT if timeout is None else timeout
    should_stop = should_stop or (lambda: False)
    if timeout <= 0 or should_stop():
        raise GenerationTimeout("LLM deadline already exceeded")
    if MOCK_LLM:
        return _mock_stream(messages, model=model, on_text=on_text, should_stop=should_stop)
    try:
        if LLM_PROVIDER == "anthropic":
            return _real_anthropic_stream(messages, model=model, on_text=on_text,
                                          should_stop=should_stop, max_tokens=max_tokens,
                                          temperature=temperature, timeout=timeout)
        else:
            return _real_openai_stream(messages, model=model, on_text=on_text,
                                       should_stop=should_stop, max_tokens=max_tokens,
                                       temperature=temperature, timeout=timeout)
    except Exception as e:
        raise _map_provider_error(e) from e
