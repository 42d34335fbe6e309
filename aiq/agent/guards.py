"""Heuristic guard against text-only answers that pretend a database action happened.

Keyword matching has known false positives and negatives; keep the keyword
set here so it can be tuned without touching the loop.
"""
from __future__ import annotations

DATABASE_VERBS = ("DROP", "CREATE", "DELETE", "INSERT", "UPDATE", "SELECT", "SHOW", "ALTER")

MUST_CALL_TOOL_MESSAGE = (
    "ERROR: You returned text describing database operations, but you MUST call execute_sql tool "
    "to actually execute them. Do NOT describe what you will do or claim success without actually "
    "calling the tool. The user requested database operations, so you must use execute_sql tool. "
    "Do NOT say operations succeeded unless you actually called execute_sql and received success status."
)


def requests_database_operation(user_input: str) -> bool:
    upper = user_input.upper()
    return any(verb in upper for verb in DATABASE_VERBS)


def unverified_completion_correction(user_input: str, content: str, had_success: bool) -> str | None:
    """Return the corrective system message to inject, or None to accept ``content``.

    A text-only answer is rejected while no tool has succeeded this turn and
    the user's request names a database verb. The same correction is used
    whether or not the answer claims success.
    """
    if had_success or not content or not requests_database_operation(user_input):
        return None
    return MUST_CALL_TOOL_MESSAGE


def claims_unverified_completion(user_input: str, content: str, had_success: bool) -> bool:
    return unverified_completion_correction(user_input, content, had_success) is not None
