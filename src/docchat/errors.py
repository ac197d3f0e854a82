"""
Error taxonomy for the document chat pipeline.
Each error carries a stable machine-readable code and the HTTP status it maps to.
"""
from __future__ import annotations


class DocChatError(Exception):
    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnsupportedFormatError(DocChatError):
    code = "UNSUPPORTED_FILE_TYPE"
    status = 400

    def __init__(self, mime_type: str, path: str = ""):
        super().__init__(f"Unsupported file type: {mime_type}")
        self.mime_type = mime_type
        self.path = path


class ExtractionError(DocChatError):
    code = "EXTRACTION_FAILED"
    status = 422

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class InvalidUploadError(DocChatError):
    code = "INVALID_FILE_TYPE"
    status = 400


class UploadTooLargeError(DocChatError):
    code = "FILE_TOO_LARGE"
    status = 413


class TokenLimitExceededError(DocChatError):
    code = "TOKEN_LIMIT_EXCEEDED"
    status = 400

    def __init__(self, estimated_tokens: int, limit: int):
        super().__init__(
            f"Request exceeds maximum token limit ({estimated_tokens} > {limit})"
        )
        self.estimated_tokens = estimated_tokens
        self.limit = limit


class RateLimitExceededError(DocChatError):
    code = "RATE_LIMIT_EXCEEDED"
    status = 429

    def __init__(self, user_id: str):
        super().__init__("Rate limit exceeded. Please try again later.")
        self.user_id = user_id


class ProviderRateLimitError(Exception):
    """Raised by a provider when the remote API throttles the request."""


class LLMCallFailedError(DocChatError):
    code = "LLM_CALL_FAILED"
    status = 502

    def __init__(self, attempts: int, last_error: BaseException | None):
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(
            f"Failed to get response from the LLM provider after {attempts} attempts: {detail}"
        )
        self.attempts = attempts
        self.last_error = last_error
        if isinstance(last_error, ProviderRateLimitError):
            self.code = "OPENAI_RATE_LIMIT"
            self.status = 429


class MissingCredentialError(DocChatError):
    code = "OPENAI_CONFIG_ERROR"
    status = 500

    def __init__(self, variable: str = "OPENAI_API_KEY"):
        super().__init__(f"{variable} is not set; the LLM provider is not configured")
        self.variable = variable
