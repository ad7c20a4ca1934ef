"""
Error formatting helpers for user-facing import messages

Converts technical errors into a short message plus an actionable suggestion,
used for session error lines and warnings shown by the review UI.
"""
import json
from dataclasses import dataclass
from typing import Optional

import httpx

from packages.common.notion_client import NotionAPIError


class AiCategorizationError(Exception):
    """AI categorization failed; `code` is NO_API_KEY, INSUFFICIENT_CREDITS or API_ERROR"""

    NO_API_KEY = "NO_API_KEY"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    API_ERROR = "API_ERROR"

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass
class FormattedError:
    message: str
    suggestion: Optional[str] = None
    details: Optional[str] = None

    def as_line(self, description: Optional[str] = None) -> str:
        text = self.message
        if self.suggestion:
            text = f"{text} - {self.suggestion}"
        if description:
            text = f"{description}: {text}"
        return text


def format_import_error(error: BaseException, transaction: Optional[str] = None) -> FormattedError:
    """
    Format import-related errors with user-friendly messages and suggestions.

    Args:
        error: Any exception raised while importing
        transaction: Description of the row being processed, if any

    Returns:
        FormattedError
    """
    if isinstance(error, AiCategorizationError):
        if error.code == AiCategorizationError.NO_API_KEY:
            return FormattedError(
                message="AI categorization unavailable",
                suggestion="Add CLAUDE_API_KEY to .env file",
                details="AI categorization requires an Anthropic API key.",
            )
        if error.code == AiCategorizationError.INSUFFICIENT_CREDITS:
            return FormattedError(
                message="AI API credits exhausted",
                suggestion="Add credits at console.anthropic.com/settings/plans",
                details=error.message,
            )
        return FormattedError(
            message="AI categorization failed",
            suggestion="This may be a temporary API issue. Try again or manually categorize the transaction.",
            details=error.message,
        )

    if isinstance(error, json.JSONDecodeError):
        return FormattedError(
            message="Invalid AI response format",
            suggestion="This is a temporary API issue. Try again or manually categorize.",
            details=str(error),
        )

    if isinstance(error, NotionAPIError):
        if error.code == "object_not_found":
            setting = error.setting or "the Notion database id"
            return FormattedError(
                message="Notion database not found",
                suggestion=f"Check {setting} in .env and verify database is shared with your integration",
                details=error.message,
            )
        if error.code == "unauthorized":
            return FormattedError(
                message="Notion API authentication failed",
                suggestion="Check NOTION_API_TOKEN in .env and verify it hasn't expired",
                details=error.message,
            )
        if error.code == "validation_error":
            return FormattedError(
                message="Notion API validation error",
                suggestion="Check that all required properties exist in your Notion database",
                details=error.message,
            )
        if error.code == "rate_limited":
            return FormattedError(
                message="Notion API rate limit exceeded",
                suggestion="Wait a moment and try again. Large imports may need to be split into smaller batches.",
                details=error.message,
            )

    if isinstance(error, httpx.ConnectError) or "ECONNREFUSED" in str(error):
        return FormattedError(
            message="Connection refused",
            suggestion="Check that the Notion API is reachable and your internet connection is working",
            details=str(error),
        )

    if isinstance(error, httpx.TimeoutException) or "ETIMEDOUT" in str(error):
        return FormattedError(
            message="Request timed out",
            suggestion="Check your internet connection and try again",
            details=str(error),
        )

    return FormattedError(
        message=str(error) or "Unknown error occurred",
        details=transaction,
    )
