from typing import List, Optional

from .models import ChatMessage, SummaryRequest

SUMMARY_SYSTEM_PROMPT = (
    "You are a reading assistant. Summarize the article you are given: start with a "
    "one-sentence overview, then list the key points as short bullet items. "
    "Do not invent facts that are not in the text."
)


def build_summary_messages(request: SummaryRequest, language: Optional[str] = None) -> List[ChatMessage]:
    system_prompt = SUMMARY_SYSTEM_PROMPT
    if language:
        system_prompt = f"{system_prompt}\nPlease respond in {language}."

    user_prompt = f"Title: {request.title}\n\n{request.content}"
    return [
        ChatMessage(role="system", content=system_prompt),
        ChatMessage(role="user", content=user_prompt),
    ]
