"""System prompt assembly."""

from sitebot.prompts.assembler import (
    DEFAULT_PROMPT,
    PromptAssembler,
    build_prompt,
    match_override,
    sanitize,
)

__all__ = [
    "DEFAULT_PROMPT",
    "PromptAssembler",
    "build_prompt",
    "match_override",
    "sanitize",
]
