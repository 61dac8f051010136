"""
Model-layer errors.

Fatal errors are never retried; TransientModelError is.
"""
from typing import Optional

import anthropic


class ModelError(Exception):
    """Base class for failures produced by the model layer itself"""


class ModelNotConfiguredError(ModelError):
    """No API key for the requested identity"""


class ContentPolicyError(ModelError):
    """Provider stopped generation for a non-truncation reason (safety, recitation, other)"""

    def __init__(self, finish_reason: str, operation: str = ""):
        self.finish_reason = finish_reason
        self.operation = operation
        super().__init__(f"{operation or 'model call'} blocked: finish reason {finish_reason}")


class MalformedOutputError(ModelError):
    """Output could not be decoded or failed validation"""

    def __init__(self, message: str, failure: Optional[str] = None, raw_text: str = ""):
        self.failure = failure
        self.raw_text = raw_text
        super().__init__(message)


class TransientModelError(ModelError):
    """Output unusable this time but worth another attempt (e.g. too short)"""


# Everything a call site may see after the retry policy gives up
MODEL_CALL_ERRORS = (ModelError, anthropic.APIError)
