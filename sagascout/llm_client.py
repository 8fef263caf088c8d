"""
OpenAI互換クライアント（既定はGroq）の生成と呼び出し。
Factory and call helper for an OpenAI-compatible client (Groq by default).
"""

import logging
import os
from typing import Any, Dict, List, Optional

import openai

from sagascout.constants import LLM_MODEL_NAME, LLM_TEMPERATURE
from sagascout.errors import BackendFailure

logger = logging.getLogger(__name__)

DEFAULT_LLM_BASE_URL = "https://api.groq.com/openai/v1"

_client: Optional[openai.OpenAI] = None


def get_llm_client() -> openai.OpenAI:
    """
    LLMクライアントを生成・再利用する
    Create and reuse a singleton LLM client.
    """
    global _client
    if _client is None:
        # 初回のみ環境変数を読み込み、クライアントを生成
        # Initialize the client only once
        api_key = os.environ.get("LLM_API_KEY") or os.environ.get("GROQ_API_KEY")
        if not api_key:
            raise RuntimeError("LLM_API_KEY is not set or invalid.")
        base_url = os.environ.get("LLM_BASE_URL", os.environ.get("GROQ_BASE_URL", DEFAULT_LLM_BASE_URL))
        _client = openai.OpenAI(base_url=base_url, api_key=api_key)
    return _client


def _extract_message_content(message: Any) -> str:
    content = getattr(message, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
            if text:
                parts.append(text)
        return "".join(parts)
    return ""


def _invoke_chat_completion(messages: List[Dict[str, str]], model_name: Optional[str] = None) -> str:
    client = get_llm_client()
    completion = client.chat.completions.create(
        model=model_name or LLM_MODEL_NAME,
        messages=messages,
        temperature=LLM_TEMPERATURE,
    )
    return _extract_message_content(completion.choices[0].message)


def complete(prompt: str, model_name: Optional[str] = None) -> str:
    """
    単一プロンプトを送信し、応答テキストを返す
    Send a single prompt and return the raw response text.

    通信・認証・クォータ等の失敗は BackendFailure として送出します。
    Network, auth and quota failures are raised as BackendFailure.
    """
    messages = [{"role": "user", "content": prompt}]
    try:
        return _invoke_chat_completion(messages, model_name=model_name)
    except openai.OpenAIError as err:
        logger.error("LLM request failed: %s", err)
        raise BackendFailure(f"AI backend request failed: {err}") from err
