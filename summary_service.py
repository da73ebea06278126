"""Short encouraging report summaries from a text-generation model."""

import logging
import os

from openai import OpenAI

SUMMARY_UNAVAILABLE = "AI Summary unavailable."
SUMMARY_EMPTY = "No summary generated."
SUMMARY_FAILED = "Could not generate summary."

DEFAULT_MODEL = 'gpt-4o-mini'


def get_client():
    """Build an OpenAI client from the environment, or None when no key is set."""
    api_key = os.environ.get('OPENAI_API_KEY', '').strip()
    if not api_key:
        logging.warning("OPENAI_API_KEY is missing; report summaries are disabled.")
        return None
    try:
        timeout = float(os.environ.get('SUMMARY_TIMEOUT_SECONDS', 20))
    except ValueError:
        timeout = 20.0
    return OpenAI(api_key=api_key, timeout=timeout)


def build_summary_prompt(student, marks, term):
    performance = ", ".join(
        f"{m.get('subjectName', '')} ({m.get('term', '')}): {m.get('score')}" for m in marks
    )
    return (
        f"Write a short, warm nursery school term summary for {student.get('name', '')} for {term}. "
        f"Performance: {performance}. Tone: Encouraging and professional."
    )


def generate_student_summary(student, marks, term, client=None):
    """Return a summary paragraph, or a fixed placeholder when generation is not possible."""
    client = client or get_client()
    if client is None:
        return SUMMARY_UNAVAILABLE

    prompt = build_summary_prompt(student, marks, term)
    model = os.environ.get('SUMMARY_MODEL', DEFAULT_MODEL)
    try:
        response = client.chat.completions.create(
            model=model,
            messages=[{'role': 'user', 'content': prompt}],
        )
        text = (response.choices[0].message.content or '').strip() if response.choices else ''
    except Exception as e:
        logging.error("Summary generation failed for %s: %s", student.get('id'), e)
        return SUMMARY_FAILED
    return text or SUMMARY_EMPTY
