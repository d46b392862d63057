from __future__ import annotations

from typing import Any

import requests

from captain.log import get_logger
from captain.models import SENDER_ASSISTANT, AIConfig, ChatMessage, Opportunity

log = get_logger(__name__)


SYSTEM_PROMPT = """You are Captain, a job-search assistant.
You help the user with one job opportunity at a time: interview preparation,
follow-up emails, negotiation and tailoring their resume to the role.
Answer concisely and stay specific to the opportunity described below.
"""

RESUME_PROMPT = """Rewrite the resume below so it targets the job description.
Keep every fact truthful, keep the same sections, and return only the resume text.
"""


class AIClientError(RuntimeError):
    pass


def _opportunity_context(opportunity: Opportunity) -> str:
    lines = [
        f"Company: {opportunity.company}",
        f"Position: {opportunity.position}",
        f"Status: {opportunity.status}",
    ]
    if opportunity.location:
        lines.append(f"Location: {opportunity.location}")
    if opportunity.job_description:
        lines.append(f"Job description:\n{opportunity.job_description}")
    return "\n".join(lines)


def build_chat_messages(
    *,
    opportunity: Opportunity,
    history: list[ChatMessage],
    master_resume: str = "",
) -> list[dict[str, str]]:
    system = f"{SYSTEM_PROMPT}\n{_opportunity_context(opportunity)}"
    resume = opportunity.resume or master_resume
    if resume:
        system = f"{system}\n\nCandidate resume:\n{resume}"
    messages = [{"role": "system", "content": system}]
    for item in history:
        role = "assistant" if item.sender == SENDER_ASSISTANT else "user"
        messages.append({"role": role, "content": item.message})
    return messages


def build_resume_messages(*, opportunity: Opportunity, master_resume: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": RESUME_PROMPT},
        {
            "role": "user",
            "content": f"Job description:\n{opportunity.job_description}\n\nResume:\n{master_resume}",
        },
    ]


class OpenAICompatibleClient:
    def __init__(self, config: AIConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key and self.config.model)

    def _chat_endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    def complete(self, messages: list[dict[str, str]]) -> str:
        if not self.is_configured():
            raise AIClientError("AI config incomplete: base_url/api_key/model required.")
        try:
            response = requests.post(
                self._chat_endpoint(),
                headers=self._headers(),
                json={
                    "model": self.config.model,
                    "messages": messages,
                    "temperature": self.config.temperature,
                    "max_tokens": self.config.max_tokens,
                },
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload: Any = response.json()
        except requests.RequestException as exc:
            log.error("AI completion request failed: %s", exc)
            raise AIClientError(f"{type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise AIClientError("AI response is not valid JSON.") from exc
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AIClientError("AI response has no message content.") from exc
        text = str(content or "").strip()
        if not text:
            raise AIClientError("AI returned an empty response.")
        return text

    def chat(
        self,
        *,
        opportunity: Opportunity,
        history: list[ChatMessage],
        master_resume: str = "",
    ) -> str:
        return self.complete(
            build_chat_messages(opportunity=opportunity, history=history, master_resume=master_resume)
        )

    def tailor_resume(self, *, opportunity: Opportunity, master_resume: str) -> str:
        return self.complete(build_resume_messages(opportunity=opportunity, master_resume=master_resume))

    def test_connectivity(self) -> tuple[bool, str]:
        try:
            content = self.complete([{"role": "user", "content": "Reply with: OK"}])
        except AIClientError as exc:
            return False, str(exc)
        content_text = content.replace("\n", " ")
        return True, f"Connected. Model response: {content_text[:120]}"
