"""
Builds the document context block and the grounding system prompt sent to the LLM.
The prompt wording is part of the answering contract; edits change model behaviour.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from .document_manager import IngestedFile

NO_FILES_CONTEXT = "No files have been uploaded yet."
CONTEXT_HEADER = "Available Documents:"
BLOCK_SEPARATOR = "---"

SYSTEM_PROMPT_TEMPLATE = """You are a helpful assistant that analyzes documents and answers questions based on their content. 

{context}

Please provide accurate answers based on the available documents. If information is not available in the documents, clearly state that. Always cite which file(s) you're referencing when providing information."""


def _display_date(value: datetime) -> str:
    return f"{value.month}/{value.day}/{value.year}"


def _file_block(file: IngestedFile) -> str:
    return (
        f"\nFile: {file.display_name} ({_display_date(file.uploaded_at)})\n"
        f"Summary: {file.summary}\n"
        f"{BLOCK_SEPARATOR}"
    )


def build_context(files: Iterable[IngestedFile]) -> str:
    blocks = [_file_block(file) for file in files]
    if not blocks:
        return NO_FILES_CONTEXT
    return f"{CONTEXT_HEADER}\n" + "\n".join(blocks)


def build_system_prompt(context_text: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(context=context_text)


def build_user_message(context_text: str, prompt: str) -> str:
    return f"{context_text}\n\nUser Query: {prompt}"
