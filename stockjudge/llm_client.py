"""
Chat-completion providers used by every generative and verification stage.

- primary:   OpenAI chat completions, falling back to Anthropic when only that key is set
- secondary: Gemini, used by the consistency verifiers when configured
- grounding: Perplexity Sonar over plain HTTP, used by the chat pipeline

Each call is a single request with no internal retry; any provider failure
surfaces as LLMCallError and the calling stage decides what it means.
"""

from __future__ import annotations
import logging
from typing import Any, Optional

import httpx
import google.generativeai as genai
from anthropic import Anthropic
from openai import OpenAI

from stockjudge.config import Settings

log = logging.getLogger("stockjudge.llm")


class LLMCallError(Exception):
    def __init__(self, message: str, provider: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


def _openai_text(resp: Any) -> str:
    choices = getattr(resp, "choices", None) or []
    if not choices:
        return ""
    msg = choices[0].message
    if isinstance(msg.content, str):
        return msg.content
    refusal = getattr(msg, "refusal", None)
    return refusal if isinstance(refusal, str) else ""


def _anthropic_text(resp: Any) -> str:
    parts = [getattr(b, "text", "") for b in (getattr(resp, "content", None) or [])]
    return "".join(p for p in parts if isinstance(p, str))


class LLMClient:
    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        self.settings = settings
        self._http = http or httpx.Client(timeout=settings.http_timeout_seconds)
        self._openai: Optional[OpenAI] = None
        self._anthropic: Optional[Anthropic] = None
        self._gemini_configured = False

    @property
    def primary_available(self) -> bool:
        return self.settings.primary_llm_enabled

    @property
    def secondary_available(self) -> bool:
        return self.settings.secondary_llm_enabled

    @property
    def grounding_available(self) -> bool:
        return self.settings.grounding_enabled

    # --- primary ---

    def _openai_client(self) -> OpenAI:
        if self._openai is None:
            self._openai = OpenAI(
                api_key=self.settings.openai_api_key,
                base_url=self.settings.openai_base_url,
                timeout=self.settings.http_timeout_seconds,
                max_retries=0,
            )
        return self._openai

    def _anthropic_client(self) -> Anthropic:
        if self._anthropic is None:
            self._anthropic = Anthropic(
                api_key=self.settings.anthropic_api_key,
                timeout=self.settings.http_timeout_seconds,
                max_retries=0,
            )
        return self._anthropic

    def chat(
        self,
        prompt: str,
        system: str,
        max_tokens: int,
        temperature: float = 0.3,
        model: Optional[str] = None,
    ) -> str:
        """System + user message -> assistant text."""
        s = self.settings
        if s.openai_api_key:
            try:
                resp = self._openai_client().chat.completions.create(
                    model=model or s.openai_model,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=temperature,
                    max_completion_tokens=max_tokens,
                )
            except Exception as e:
                status = getattr(e, "status_code", None)
                log.warning("openai call failed (status=%s): %s", status, e)
                raise LLMCallError(f"OpenAI call failed: {e}", provider="openai", status=status) from e
            return _openai_text(resp)

        if s.anthropic_api_key:
            try:
                resp = self._anthropic_client().messages.create(
                    model=s.anthropic_model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                )
            except Exception as e:
                status = getattr(e, "status_code", None)
                log.warning("anthropic call failed (status=%s): %s", status, e)
                raise LLMCallError(f"Anthropic call failed: {e}", provider="anthropic", status=status) from e
            return _anthropic_text(resp)

        raise LLMCallError("No primary LLM provider configured", provider="none")

    def verifier_chat(self, prompt: str, system: str, max_tokens: int) -> str:
        """Deterministic call on the (cheaper) verifier model."""
        return self.chat(prompt, system, max_tokens, temperature=0.0, model=self.settings.verifier_model)

    # --- secondary ---

    def secondary(self, prompt: str, max_tokens: int = 450) -> str:
        if not self.settings.gemini_api_key:
            raise LLMCallError("GEMINI_API_KEY not set", provider="gemini")
        try:
            if not self._gemini_configured:
                genai.configure(api_key=self.settings.gemini_api_key)
                self._gemini_configured = True
            model = genai.GenerativeModel(self.settings.gemini_model)
            resp = model.generate_content(
                prompt,
                generation_config=genai.types.GenerationConfig(max_output_tokens=max_tokens, temperature=0.0),
            )
            return resp.text or ""
        except Exception as e:
            log.warning("gemini call failed: %s", e)
            raise LLMCallError(f"Gemini call failed: {e}", provider="gemini") from e

    # --- grounding ---

    def grounding(self, prompt: str, system: str, max_tokens: int = 700) -> str:
        s = self.settings
        if not s.perplexity_api_key:
            raise LLMCallError("PERPLEXITY_API_KEY not set", provider="perplexity")
        try:
            resp = self._http.post(
                f"{s.perplexity_base_url}/chat/completions",
                headers={"Authorization": f"Bearer {s.perplexity_api_key}", "Content-Type": "application/json"},
                json={
                    "model": s.perplexity_model,
                    "messages": [
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": 0.0,
                    "max_tokens": max_tokens,
                },
            )
        except httpx.HTTPError as e:
            raise LLMCallError(f"Perplexity request error: {e}", provider="perplexity") from e
        if resp.status_code != 200:
            raise LLMCallError(
                f"Perplexity grounding failed: {resp.status_code} {resp.text[:500]}",
                provider="perplexity",
                status=resp.status_code,
            )
        data = resp.json()
        choices = data.get("choices") or [{}]
        return ((choices[0] or {}).get("message") or {}).get("content") or ""
