"""
Prompt Pipelines
================

Closed set of prompt templates. Each Pipeline member has exactly one
PipelineTemplate (system + user template, deterministic fallback list).
Templates interpolate fields from the enriched context; missing fields
render as "Not specified".
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from copilot.errors import ValidationError

MAX_SYSTEM_PROMPT_CHARS = 2000
MAX_USER_PROMPT_CHARS = 8000


class Pipeline(str, Enum):
    INTERVIEW = "interview"
    MEETING = "meeting"
    ISSUE_TRACKER = "jira"
    DOCUMENTATION = "confluence"
    CHAT = "chat"

    @classmethod
    def parse(cls, value: Any) -> "Pipeline":
        """
        Resolve a pipeline name.

        Raises:
            ValidationError: unknown pipeline
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown pipeline: {value!r}") from None


@dataclass(frozen=True)
class PipelineTemplate:
    system: str
    user: str
    fallback: List[str]


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str

    def is_valid(self) -> bool:
        if not self.system or not self.user:
            return False
        return len(self.system) <= MAX_SYSTEM_PROMPT_CHARS and len(self.user) <= MAX_USER_PROMPT_CHARS


PIPELINE_TEMPLATES: Dict[Pipeline, PipelineTemplate] = {
    Pipeline.INTERVIEW: PipelineTemplate(
        system=(
            "You are Echo, a discreet, privacy-first copilot for interviews. Generate concise "
            "bullet points (max 4) that directly answer the last question. Prefer the user's "
            "resume/JD context; if unknown, request clarifying detail. Avoid buzzwords; include "
            "one quantified metric/example when available.\n\n"
            "Role: {role}\n"
            "Resume: {resume}\n"
            "Job Description: {job_description}\n"
            "Current Question: {current_question}"
        ),
        user=(
            "Based on the conversation context below, provide 2-4 concise suggestions for "
            "answering the current question:\n\n"
            "Conversation: {transcript}\n"
            "Last Question: {current_question}\n\n"
            "Provide actionable, specific suggestions that help the user give a strong answer."
        ),
        fallback=[
            "Highlight your relevant experience",
            "Provide a specific example",
            "Ask a clarifying question",
            "Connect to the role requirements",
        ],
    ),
    Pipeline.MEETING: PipelineTemplate(
        system=(
            "You are Echo, a meeting copilot. Provide concise, actionable suggestions for "
            "contributing to the meeting discussion. Focus on relevant insights, questions, "
            "or action items.\n\n"
            "Meeting Type: {session_type}\n"
            "Participants: {participants}\n"
            "Topic: {topic}"
        ),
        user=(
            "Based on the meeting context, suggest how to contribute effectively:\n\n"
            "Meeting Discussion: {transcript}\n"
            "Current Topic: {current_topic}\n\n"
            "Provide 2-3 specific suggestions for meaningful participation."
        ),
        fallback=[
            "Share a relevant insight",
            "Ask about next steps",
            "Propose an action item",
            "Clarify expectations",
        ],
    ),
    Pipeline.ISSUE_TRACKER: PipelineTemplate(
        system=(
            "You are Echo, an issue-tracker assistant. Help improve issue descriptions and "
            "acceptance criteria. Make them clear, testable, and actionable.\n\n"
            "Current Issue: {issue_key}\n"
            "Issue Type: {issue_type}"
        ),
        user=(
            "Improve this issue description:\n\n"
            "Current Description: {transcript}\n"
            "Requirements: {requirements}\n\n"
            "Provide an improved description and clear acceptance criteria in Given/When/Then format."
        ),
        fallback=[
            "Add clear acceptance criteria",
            "Include relevant context",
            "Specify completion criteria",
            "Link related issues",
        ],
    ),
    Pipeline.DOCUMENTATION: PipelineTemplate(
        system="You are Echo, a documentation assistant. Help structure and summarize documentation effectively.",
        user=(
            "Based on this page content, provide suggestions for:\n\n"
            "Content: {transcript}\n"
            "Page Type: {page_type}\n\n"
            "Suggest improvements for structure, clarity, and completeness."
        ),
        fallback=[
            "Add a summary section",
            "Include action items",
            "Structure with headings",
            "Add relevant links",
        ],
    ),
    Pipeline.CHAT: PipelineTemplate(
        system="You are Echo, a chat assistant. Provide appropriate, professional responses for various messaging contexts.",
        user=(
            "Suggest a response for this chat context:\n\n"
            "Conversation: {transcript}\n"
            "Tone: {tone}\n"
            "Context: {source_app}\n\n"
            "Provide 2-3 response options with different tones if appropriate."
        ),
        fallback=[
            "Keep it concise",
            "Use appropriate tone",
            "Include relevant context",
            "Ask if clarification needed",
        ],
    ),
}


class _ContextFields(dict):
    """format_map source that renders missing/empty fields as a placeholder."""

    def __missing__(self, key):
        return "Not specified"

    def __getitem__(self, key):
        value = super().get(key)
        if value is None or value == "":
            return self.__missing__(key)
        return value


def get_fallback_suggestions(pipeline: Pipeline) -> List[str]:
    """Deterministic fallback list; a fresh copy on every call."""
    return list(PIPELINE_TEMPLATES[pipeline].fallback)


def build_prompt(pipeline: Pipeline, context: Dict[str, Any]) -> Prompt:
    template = PIPELINE_TEMPLATES[pipeline]
    fields = _ContextFields(context)
    return Prompt(
        system=template.system.format_map(fields),
        user=template.user.format_map(fields),
    )


def extract_current_question(transcript: str) -> str:
    """
    Last question in the transcript, or the last sentence if none ends with '?'.
    """
    if not transcript:
        return ""
    questions = re.findall(r"[^.!?]*\?", transcript)
    if questions:
        return questions[-1].strip()
    sentences = [s.strip() for s in re.split(r"[.!?]+", transcript) if s.strip()]
    return sentences[-1] if sentences else ""
